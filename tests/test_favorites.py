def test_add_and_list_favorites(client, user_headers, book):
    res = client.post(f"/{book['_id']}/favorite", headers=user_headers)
    assert res.status_code == 201
    assert res.json()["data"]["book_id"] == str(book["_id"])

    body = client.get("/users/me/favorites", headers=user_headers).json()["data"]
    assert body["totalElements"] == 1
    assert body["content"][0]["book"]["title"] == "Dune"


def test_favorite_errors(client, user_headers, book):
    res = client.post("/not-an-id/favorite", headers=user_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "Invalid bookId"

    assert client.post("/64b7f0c2a1b2c3d4e5f60718/favorite", headers=user_headers).status_code == 404

    client.post(f"/{book['_id']}/favorite", headers=user_headers)
    assert client.post(f"/{book['_id']}/favorite", headers=user_headers).status_code == 409


def test_remove_by_favorite_id_or_book_id(client, user_headers, make_book, db):
    first, second = make_book(), make_book()
    favorite = client.post(f"/{first['_id']}/favorite", headers=user_headers).json()["data"]
    client.post(f"/{second['_id']}/favorite", headers=user_headers)

    assert client.delete(f"/{favorite['id']}/favorite", headers=user_headers).status_code == 200
    assert client.delete(f"/{second['_id']}/favorite", headers=user_headers).status_code == 200
    assert db["favorite"].count_documents({}) == 0
    assert client.delete(f"/{second['_id']}/favorite", headers=user_headers).status_code == 404


def test_cannot_remove_someone_elses_favorite(client, user_headers, make_user, auth_headers, book, db):
    favorite = client.post(f"/{book['_id']}/favorite", headers=user_headers).json()["data"]
    other = auth_headers(make_user(email="other@mail.com"))
    assert client.delete(f"/{favorite['id']}/favorite", headers=other).status_code == 404
    assert db["favorite"].count_documents({}) == 1
