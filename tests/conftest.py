import itertools
from datetime import datetime

import fakeredis
import mongomock
import pytest
from fastapi.testclient import TestClient

from config import Settings
from database import create_document
from identity import IdentityError
from main import create_app
from schemas import user_document
from security import create_access_token, hash_password

PASSWORD = "secret123"


class FakeGoogle:
    def __init__(self):
        self.profiles = {}

    def authorization_url(self):
        return "https://accounts.google.com/o/oauth2/v2/auth?client_id=test-client"

    def fetch_profile(self, code):
        if code not in self.profiles:
            raise IdentityError("Google authentication failed")
        return self.profiles[code]


class FakeFirebase:
    def __init__(self):
        self.tokens = {}

    def verify(self, token):
        if token not in self.tokens:
            raise IdentityError("Invalid or expired Firebase token")
        return self.tokens[token]


@pytest.fixture
def settings():
    return Settings(jwt_secret="test-secret", jwt_refresh_secret="test-refresh-secret")


@pytest.fixture
def db():
    return mongomock.MongoClient()["bookstore_test"]


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def google():
    return FakeGoogle()


@pytest.fixture
def firebase():
    return FakeFirebase()


@pytest.fixture
def app(settings, db, redis_client, google, firebase):
    return create_app(settings=settings, db=db, cache_client=redis_client, google=google, firebase=firebase)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def make_user(db):
    phones = itertools.count(600000000)

    def make(email="reader@mail.com", password=PASSWORD, **fields):
        fields.setdefault("first_name", "Ada")
        fields.setdefault("last_name", "Lovelace")
        fields.setdefault("birth_date", datetime(1990, 5, 17))
        fields.setdefault("phone_number", f"0{next(phones)}")
        doc = user_document(provider="local", email=email, hashed_password=hash_password(password), **fields)
        return create_document(db, "user", doc)
    return make


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user(email="admin@mail.com", is_admin=True)


@pytest.fixture
def auth_headers(settings):
    def headers(user):
        return {"Authorization": f"Bearer {create_access_token(user, settings)}"}
    return headers


@pytest.fixture
def user_headers(user, auth_headers):
    return auth_headers(user)


@pytest.fixture
def admin_headers(admin, auth_headers):
    return auth_headers(admin)


@pytest.fixture
def make_book(db):
    isbns = itertools.count(9780000000001)

    def make(**fields):
        doc = {
            "title": "Dune",
            "author": "Frank Herbert",
            "literary_genre": "science fiction",
            "publication_date": datetime(1965, 8, 1),
            "publisher": "Chilton",
            "price": 25.0,
            "isbn": str(next(isbns)),
            "summary": "Spice and sandworms.",
        }
        doc.update(fields)
        return create_document(db, "book", doc)
    return make


@pytest.fixture
def book(make_book):
    return make_book()
