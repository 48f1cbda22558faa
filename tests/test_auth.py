from datetime import datetime, timedelta, timezone

import jwt

from conftest import PASSWORD
from security import create_refresh_token


def test_login_returns_tokens_and_creates_cart(client, user, db, settings):
    res = client.post("/auth/login", json={"email": user["email"], "password": PASSWORD})
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "success"
    assert body["data"]["email"] == user["email"]
    assert "hashed_password" not in body["data"]
    assert "refresh_token=" in res.headers["set-cookie"]
    assert "httponly" in res.headers["set-cookie"].lower()

    claims = jwt.decode(body["accessToken"], settings.jwt_secret, algorithms=["HS256"])
    assert claims["sub"] == str(user["_id"])
    assert claims["type"] == "access"
    assert claims["is_admin"] is False
    assert db["cart"].count_documents({"user_id": user["_id"]}) == 1

    me = client.get("/users/me", headers={"Authorization": f"Bearer {body['accessToken']}"})
    assert me.status_code == 200
    assert me.json()["data"]["id"] == str(user["_id"])


def test_login_twice_keeps_one_cart(client, user, db):
    for _ in range(2):
        client.post("/auth/login", json={"email": user["email"], "password": PASSWORD})
    assert db["cart"].count_documents({"user_id": user["_id"]}) == 1


def test_login_unknown_email(client):
    res = client.post("/auth/login", json={"email": "ghost@mail.com", "password": PASSWORD})
    assert res.status_code == 404
    assert res.json()["code"] == "RESOURCE_NOT_FOUND"


def test_login_wrong_password(client, user):
    res = client.post("/auth/login", json={"email": user["email"], "password": "nope"})
    assert res.status_code == 401
    assert res.json()["code"] == "UNAUTHORIZED"


def test_login_inactive_account(client, make_user):
    inactive = make_user(email="gone@mail.com", is_active=False)
    res = client.post("/auth/login", json={"email": inactive["email"], "password": PASSWORD})
    assert res.status_code == 403


def test_missing_token_is_rejected(client):
    res = client.get("/users/me")
    assert res.status_code == 401
    body = res.json()
    assert body["code"] == "UNAUTHORIZED"
    assert body["path"] == "/users/me"
    assert body["details"] is None


def test_garbage_token_is_rejected(client):
    res = client.get("/users/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 401
    assert res.json()["message"] == "Invalid token"


def test_expired_token_is_rejected(client, user, settings):
    token = jwt.encode({
        "sub": str(user["_id"]),
        "type": "access",
        "exp": datetime.now(timezone.utc) - timedelta(minutes=1),
    }, settings.jwt_secret, algorithm="HS256")
    res = client.get("/users/me", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 401
    assert res.json()["message"] == "Token expired"


def test_refresh_token_cannot_be_used_as_access_token(client, user, settings):
    token = create_refresh_token(user, settings)
    res = client.get("/users/me", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 401


def test_token_for_deleted_user_is_rejected(client, user, user_headers, db):
    db["user"].delete_one({"_id": user["_id"]})
    assert client.get("/users/me", headers=user_headers).status_code == 401


def test_deactivated_user_is_forbidden(client, user, user_headers, db):
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"is_active": False}})
    res = client.get("/users/me", headers=user_headers)
    assert res.status_code == 403
    assert res.json()["code"] == "FORBIDDEN"


def test_refresh_issues_new_access_token(client, user, settings):
    res = client.post("/auth/refresh", json={"refresh_token": create_refresh_token(user, settings)})
    assert res.status_code == 200
    token = res.json()["accessToken"]
    assert client.get("/users/me", headers={"Authorization": f"Bearer {token}"}).status_code == 200


def test_refresh_rejects_access_token(client, user_headers):
    access = user_headers["Authorization"].split()[1]
    res = client.post("/auth/refresh", json={"refresh_token": access})
    assert res.status_code == 401


def test_refresh_for_inactive_user(client, make_user, settings):
    inactive = make_user(email="gone@mail.com", is_active=False)
    res = client.post("/auth/refresh", json={"refresh_token": create_refresh_token(inactive, settings)})
    assert res.status_code == 403


def test_logout_clears_cookie(client, user_headers):
    res = client.post("/auth/logout", headers=user_headers)
    assert res.status_code == 200
    assert "refresh_token=" in res.headers["set-cookie"]
    assert client.post("/auth/logout").status_code == 401


def test_firebase_login_creates_user(client, firebase, db):
    firebase.tokens["good"] = {"id": "fb-uid-1", "email": "fire@mail.com"}
    res = client.post("/auth/firebase", headers={"Authorization": "Bearer good"})
    assert res.status_code == 200
    stored = db["user"].find_one({"email": "fire@mail.com"})
    assert stored["provider"] == "firebase"
    assert stored["provider_id"] == "fb-uid-1"
    assert db["cart"].count_documents({"user_id": stored["_id"]}) == 1

    again = client.post("/auth/firebase", headers={"Authorization": "Bearer good"})
    assert again.status_code == 200
    assert db["user"].count_documents({"email": "fire@mail.com"}) == 1


def test_firebase_login_rejects_bad_token(client):
    assert client.post("/auth/firebase", headers={"Authorization": "Bearer bad"}).status_code == 401
    assert client.post("/auth/firebase").status_code == 401


def test_firebase_token_without_email(client, firebase):
    firebase.tokens["anon"] = {"id": "fb-uid-2", "email": None}
    res = client.post("/auth/firebase", headers={"Authorization": "Bearer anon"})
    assert res.status_code == 400


def test_google_redirects_to_consent_screen(client):
    res = client.get("/auth/google", follow_redirects=False)
    assert res.status_code == 307
    assert res.headers["location"].startswith("https://accounts.google.com/")


def test_google_callback_creates_user(client, google, db):
    google.profiles["code-1"] = {
        "id": "g-123", "email": "gina@mail.com", "first_name": "Gina", "last_name": None,
    }
    res = client.get("/auth/google/callback?code=code-1")
    assert res.status_code == 200
    assert res.json()["accessToken"]
    stored = db["user"].find_one({"email": "gina@mail.com"})
    assert stored["provider"] == "google"
    assert stored["first_name"] == "Gina"
    assert "last_name" not in stored


def test_google_callback_with_unknown_code(client):
    assert client.get("/auth/google/callback?code=nope").status_code == 401
    assert client.get("/auth/google/callback").status_code == 401
