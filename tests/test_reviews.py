def post_review(client, headers, book, rating=4):
    return client.post(f"/books/{book['_id']}/reviews", headers=headers, json={"rating": rating})


def test_review_requires_existing_book(client, user_headers):
    res = client.post("/books/64b7f0c2a1b2c3d4e5f60718/reviews", headers=user_headers, json={"rating": 5})
    assert res.status_code == 404


def test_rating_bounds(client, user_headers, book):
    assert post_review(client, user_headers, book, rating=6).status_code == 422
    assert post_review(client, user_headers, book, rating=0).status_code == 422


def test_reviews_include_comments_with_authors(client, user, user_headers, book):
    review = post_review(client, user_headers, book).json()["data"]
    res = client.post(f"/reviews/{review['id']}/comments", headers=user_headers, json={"comment": "Agreed!"})
    assert res.status_code == 201

    body = client.get(f"/books/{book['_id']}/reviews").json()
    assert body["data"]["totalElements"] == 1
    comments = body["data"]["content"][0]["comments"]
    assert [c["comment"] for c in comments] == ["Agreed!"]
    assert comments[0]["author"] == {"id": str(user["_id"]), "first_name": "Ada", "last_name": "Lovelace"}


def test_review_list_cache_is_invalidated_by_new_comment(client, user_headers, book):
    review = post_review(client, user_headers, book).json()["data"]
    url = f"/books/{book['_id']}/reviews"
    client.get(url)
    assert client.get(url).json()["source"] == "cache"

    client.post(f"/reviews/{review['id']}/comments", headers=user_headers, json={"comment": "Late thought"})
    body = client.get(url).json()
    assert body["source"] == "database"
    assert len(body["data"]["content"][0]["comments"]) == 1


def test_filter_reviews_by_rating(client, user_headers, book):
    post_review(client, user_headers, book, rating=5)
    post_review(client, user_headers, book, rating=2)
    content = client.get(f"/books/{book['_id']}/reviews?rating=5").json()["data"]["content"]
    assert [r["rating"] for r in content] == [5]


def test_only_author_or_admin_may_edit(client, user_headers, admin_headers, make_user, auth_headers, book):
    review = post_review(client, user_headers, book).json()["data"]
    url = f"/reviews/{review['id']}"
    stranger = auth_headers(make_user(email="stranger@mail.com"))

    assert client.patch(url, headers=stranger, json={"rating": 1}).status_code == 403
    assert client.patch(url, headers=user_headers, json={"rating": 2}).json()["data"]["rating"] == 2
    assert client.patch(url, headers=admin_headers, json={"rating": 3}).status_code == 200


def test_deleting_review_deletes_its_comments(client, user_headers, book, db):
    review = post_review(client, user_headers, book).json()["data"]
    client.post(f"/reviews/{review['id']}/comments", headers=user_headers, json={"comment": "one"})
    client.post(f"/reviews/{review['id']}/comments", headers=user_headers, json={"comment": "two"})

    assert client.delete(f"/reviews/{review['id']}", headers=user_headers).status_code == 200
    assert db["review"].count_documents({}) == 0
    assert db["comment"].count_documents({}) == 0


def test_comment_lifecycle(client, user_headers, make_user, auth_headers, book):
    review = post_review(client, user_headers, book).json()["data"]
    comment = client.post(f"/reviews/{review['id']}/comments", headers=user_headers,
                          json={"comment": "first"}).json()["data"]
    url = f"/comments/{comment['id']}"
    listing = f"/reviews/{review['id']}/comments"

    assert client.get(listing).json()["source"] == "database"
    assert client.get(listing).json()["source"] == "cache"

    stranger = auth_headers(make_user(email="stranger@mail.com"))
    assert client.patch(url, headers=stranger, json={"comment": "hijack"}).status_code == 403
    assert client.patch(url, headers=user_headers, json={"comment": "edited"}).status_code == 200

    body = client.get(listing).json()
    assert body["source"] == "database"
    assert body["data"]["content"][0]["comment"] == "edited"

    assert client.delete(url, headers=stranger).status_code == 403
    assert client.delete(url, headers=user_headers).status_code == 200
    assert client.get(listing).json()["data"]["totalElements"] == 0


def test_comment_on_unknown_review(client, user_headers):
    res = client.post("/reviews/64b7f0c2a1b2c3d4e5f60718/comments", headers=user_headers, json={"comment": "?"})
    assert res.status_code == 404
