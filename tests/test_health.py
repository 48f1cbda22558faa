import fakeredis
from fastapi.testclient import TestClient

from main import create_app


def test_root(client):
    assert client.get("/").json() == {"message": "Welcome on the bookstore API"}


def test_health_ok(client):
    res = client.get("/health")
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "ok"
    assert body["services"] == {"api": "up", "database": "up", "redis": "up"}
    assert body["timestamp"].endswith("Z")


def test_health_degraded_when_redis_is_down(settings, db, google, firebase):
    server = fakeredis.FakeServer()
    app = create_app(settings=settings, db=db, cache_client=fakeredis.FakeRedis(server=server),
                     google=google, firebase=firebase)
    with TestClient(app) as client:
        server.connected = False
        res = client.get("/health")
        assert res.status_code == 500
        assert res.json()["status"] == "degraded"
        assert res.json()["services"]["redis"] == "down"

        # cached reads still work without redis
        books = client.get("/books")
        assert books.status_code == 200
        assert books.json()["source"] == "database"
