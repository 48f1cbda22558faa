import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, get_args

import redis
from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.security import HTTPAuthorizationCredentials
from pymongo.database import Database
from pymongo.errors import PyMongoError

import cache as cache_store
import carts
import database
from cache import ResponseCache, detail_key, get_cache, list_key
from config import Settings, get_settings
from database import create_document, ensure_indexes, get_db, get_documents, oid, serialize, update_document
from errors import ApiError, ErrorCode, register_error_handlers
from identity import FirebaseVerifier, GoogleOAuth, IdentityError
from listing import (
    Filter, ListQuery, any_field_contains, boolean, bound, build_filter, contains, exact,
    iso_datetime, list_query, one_of, paginated,
)
from schemas import (
    BookCreate, BookUpdate, CartItemCreate, CartItemUpdate, CommentCreate, CommentUpdate,
    CouponCreate, CouponUpdate, LiteraryGenre, LoginRequest, OrderCreate, OrderStatus,
    OrderStatusUpdate, RefreshRequest, ReviewCreate, ReviewUpdate, UserCreate, UserUpdate,
    user_document,
)
from security import (
    REFRESH, create_access_token, decode_token, get_active_user, get_current_user,
    hash_password, issue_tokens, load_user, require_admin, security, verify_password,
)

logger = logging.getLogger(__name__)
router = APIRouter()

REFRESH_COOKIE = "refresh_token"

BOOK_FILTERS = {
    "title": Filter("title", contains),
    "author": Filter("author", contains),
    "literary_genre": Filter("literary_genre", one_of(*get_args(LiteraryGenre))),
    "publisher": Filter("publisher", contains),
    "minPrice": Filter("price", bound("$gte")),
    "maxPrice": Filter("price", bound("$lte")),
}
USER_FILTERS = {
    "keyword": Filter("$or", any_field_contains("first_name", "last_name", "email")),
    "is_active": Filter("is_active", boolean),
    "is_admin": Filter("is_admin", boolean),
    "provider": Filter("provider", one_of("local", "google", "firebase")),
}
ORDER_FILTERS = {
    "dateFrom": Filter("createdAt", bound("$gte", iso_datetime)),
    "dateTo": Filter("createdAt", bound("$lte", iso_datetime)),
    "status": Filter("status", one_of(*get_args(OrderStatus))),
}
COUPON_FILTERS = {
    "code": Filter("code", lambda raw: exact(raw).upper()),
    "is_valid": Filter("is_valid", boolean),
}
REVIEW_FILTERS = {
    "rating": Filter("rating", int),
}


# Helpers

def envelope(message: str, data: Any = None, **extra) -> Dict[str, Any]:
    body: Dict[str, Any] = {"status": "success", "message": message}
    if data is not None:
        body["data"] = data
    body.update(extra)
    return body


def serialize_user(user: dict) -> dict:
    doc = dict(user)
    doc.pop("hashed_password", None)
    return serialize(doc)


def find_or_404(db: Database, collection: str, _id, label: str) -> dict:
    doc = db[collection].find_one({"_id": _id})
    if not doc:
        raise ApiError(ErrorCode.RESOURCE_NOT_FOUND, f"{label} not found")
    return doc


def ensure_author(doc: dict, user: dict, message: str) -> None:
    if doc["user_id"] != user["_id"] and not user.get("is_admin"):
        raise ApiError(ErrorCode.FORBIDDEN, message)


def changes_of(payload) -> Dict[str, Any]:
    return payload.model_dump(exclude_unset=True, exclude_none=True)


# Health

@router.get("/")
def read_root():
    return {"message": "Welcome on the bookstore API"}


@router.get("/health")
def health(request: Request):
    report = {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "services": {"api": "up", "database": "down", "redis": "down"},
    }
    try:
        request.app.state.db.list_collection_names()
        report["services"]["database"] = "up"
    except PyMongoError as exc:
        logger.error("Health check: database unreachable: %s", exc)
    try:
        if request.app.state.cache.ping():
            report["services"]["redis"] = "up"
    except redis.RedisError as exc:
        logger.error("Health check: redis unreachable: %s", exc)

    if "down" in report["services"].values():
        report["status"] = "degraded"
        return JSONResponse(status_code=500, content=report)
    return report


# Auth

def _login_response(db: Database, settings: Settings, user: dict, response: Response, message: str) -> dict:
    carts.ensure_cart(db, user["_id"])
    tokens = issue_tokens(user, settings)
    response.set_cookie(
        REFRESH_COOKIE, tokens["refreshToken"],
        max_age=settings.jwt_refresh_expires_days * 24 * 3600,
        httponly=True, secure=True, samesite="none",
    )
    return envelope(message, serialize_user(user), **tokens)


def _external_login(db: Database, settings: Settings, profile: dict, provider: str,
                    response: Response, message: str) -> dict:
    user = db["user"].find_one({"email": profile["email"]})
    if not user:
        if not profile.get("id"):
            raise ApiError(ErrorCode.UNAUTHORIZED, "Identity provider returned no user id")
        fields = {k: v for k, v in profile.items() if v is not None and k != "id"}
        user = create_document(db, "user", user_document(provider=provider, provider_id=profile["id"], **fields))
        logger.info("Created %s user %s", provider, user["_id"])
    if not user.get("is_active", True):
        raise ApiError(ErrorCode.FORBIDDEN, "Account is deactivated")
    return _login_response(db, settings, user, response, message)


@router.post("/auth/login")
def login(payload: LoginRequest, response: Response, db: Database = Depends(get_db),
          settings: Settings = Depends(get_settings)):
    user = db["user"].find_one({"email": payload.email})
    if not user:
        raise ApiError(ErrorCode.RESOURCE_NOT_FOUND, "User not found")
    if not user.get("is_active", True):
        raise ApiError(ErrorCode.FORBIDDEN, "Account is deactivated")
    if not verify_password(payload.password, user.get("hashed_password")):
        raise ApiError(ErrorCode.UNAUTHORIZED, "Incorrect password")
    return _login_response(db, settings, user, response, "Login successful")


@router.post("/auth/refresh")
def refresh(payload: RefreshRequest, db: Database = Depends(get_db),
            settings: Settings = Depends(get_settings)):
    claims = decode_token(payload.refresh_token, settings.jwt_refresh_secret, REFRESH)
    user = load_user(db, claims["sub"])
    if not user:
        raise ApiError(ErrorCode.UNAUTHORIZED, "User not found")
    if not user.get("is_active", True):
        raise ApiError(ErrorCode.FORBIDDEN, "Account is deactivated")
    return envelope("Token refreshed", accessToken=create_access_token(user, settings))


@router.post("/auth/logout")
def logout(response: Response, user: dict = Depends(get_current_user)):
    response.delete_cookie(REFRESH_COOKIE, httponly=True, secure=True, samesite="none")
    return envelope("Logged out")


@router.post("/auth/firebase")
def firebase_login(request: Request, response: Response,
                   credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
                   db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    if credentials is None or not credentials.credentials:
        raise ApiError(ErrorCode.UNAUTHORIZED, "Firebase token required")
    try:
        profile = request.app.state.firebase.verify(credentials.credentials)
    except IdentityError as exc:
        raise ApiError(ErrorCode.UNAUTHORIZED, str(exc))
    if not profile.get("email"):
        raise ApiError(ErrorCode.INVALID_BODY, "Firebase user has no email")
    return _external_login(db, settings, profile, "firebase", response, "Firebase login successful")


@router.get("/auth/google")
def google_login(request: Request):
    try:
        url = request.app.state.google.authorization_url()
    except IdentityError as exc:
        raise ApiError(ErrorCode.INTERNAL_ERROR, str(exc))
    return RedirectResponse(url)


@router.get("/auth/google/callback")
def google_callback(request: Request, response: Response, code: Optional[str] = None,
                    db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    if not code:
        raise ApiError(ErrorCode.UNAUTHORIZED, "Missing authorization code")
    try:
        profile = request.app.state.google.fetch_profile(code)
    except IdentityError as exc:
        raise ApiError(ErrorCode.UNAUTHORIZED, str(exc))
    return _external_login(db, settings, profile, "google", response, "Google login successful")


# Users

def _check_user_conflicts(db: Database, email: Optional[str], phone_number: Optional[str],
                          exclude_id=None) -> None:
    others = {"_id": {"$ne": exclude_id}} if exclude_id is not None else {}
    if email and db["user"].find_one({"email": email, **others}):
        raise ApiError(ErrorCode.DUPLICATE_RESOURCE, "Email already exists")
    if phone_number and db["user"].find_one({"phone_number": phone_number, **others}):
        raise ApiError(ErrorCode.DUPLICATE_RESOURCE, "Phone number already exists")


@router.post("/users", status_code=201)
def create_user(payload: UserCreate, db: Database = Depends(get_db)):
    _check_user_conflicts(db, payload.email, payload.phone_number)
    fields = payload.model_dump(exclude={"password"}, exclude_none=True)
    doc = user_document(provider="local", hashed_password=hash_password(payload.password), **fields)
    user = create_document(db, "user", doc)
    return envelope("User successfully created", serialize_user(user))


@router.get("/users")
def list_users(query: ListQuery = Depends(list_query), db: Database = Depends(get_db),
               admin: dict = Depends(require_admin)):
    users, total = get_documents(db, "user", build_filter(query.filters, USER_FILTERS), query)
    return envelope("Users successfully retrieved", paginated([serialize_user(u) for u in users], query, total))


@router.delete("/users")
def delete_users(db: Database = Depends(get_db), admin: dict = Depends(require_admin)):
    deleted = db["user"].delete_many({}).deleted_count
    logger.warning("User collection reset by %s (%d deleted)", admin["_id"], deleted)
    return envelope("All users successfully deleted", {"deleted": deleted})


@router.get("/users/me")
def get_me(user: dict = Depends(get_active_user)):
    return envelope("Profile successfully retrieved", serialize_user(user))


@router.patch("/users/me")
def update_me(payload: UserUpdate, db: Database = Depends(get_db), user: dict = Depends(get_active_user)):
    changes = changes_of(payload)
    _check_user_conflicts(db, changes.get("email"), changes.get("phone_number"), exclude_id=user["_id"])
    updated = update_document(db, "user", user["_id"], changes)
    if not updated:
        raise ApiError(ErrorCode.RESOURCE_NOT_FOUND, "User not found")
    return envelope("Profile successfully updated", serialize_user(updated))


@router.patch("/users/admin/{user_id}")
def grant_admin_role(user_id: str, db: Database = Depends(get_db), admin: dict = Depends(require_admin)):
    user = find_or_404(db, "user", oid(user_id), "User")
    if user.get("is_admin"):
        raise ApiError(ErrorCode.DUPLICATE_RESOURCE, "User is already an admin")
    user = update_document(db, "user", user["_id"], {"is_admin": True})
    return envelope("Admin rights granted", {
        "id": str(user["_id"]),
        "email": user["email"],
        "is_admin": user["is_admin"],
    })


@router.delete("/users/{user_id}/deactivate")
def deactivate_user(user_id: str, db: Database = Depends(get_db), admin: dict = Depends(require_admin)):
    updated = update_document(db, "user", oid(user_id), {"is_active": False})
    if not updated:
        raise ApiError(ErrorCode.RESOURCE_NOT_FOUND, "User not found")
    return envelope("User successfully deactivated", serialize_user(updated))


# Books

@router.post("/books", status_code=201)
def create_book(payload: BookCreate, db: Database = Depends(get_db), cache: ResponseCache = Depends(get_cache),
                admin: dict = Depends(require_admin)):
    if db["book"].find_one({"isbn": payload.isbn}):
        raise ApiError(ErrorCode.DUPLICATE_RESOURCE, "A book with this ISBN already exists")
    book = create_document(db, "book", payload.model_dump())
    cache.invalidate("books")
    return envelope("Book successfully created", serialize(book))


@router.get("/books")
def list_books(request: Request, query: ListQuery = Depends(list_query), db: Database = Depends(get_db),
               cache: ResponseCache = Depends(get_cache)):
    def load():
        books, total = get_documents(db, "book", build_filter(query.filters, BOOK_FILTERS), query)
        return paginated([serialize(b) for b in books], query, total)

    data, source = cache.fetch(list_key("books", request), load)
    return envelope("Books successfully retrieved", data, source=source)


@router.get("/books/{book_id}")
def get_book(book_id: str, db: Database = Depends(get_db), cache: ResponseCache = Depends(get_cache)):
    _id = oid(book_id)

    def load():
        book = db["book"].find_one({"_id": _id})
        return serialize(book) if book else None

    data, source = cache.fetch(detail_key("books", _id), load)
    if data is None:
        raise ApiError(ErrorCode.RESOURCE_NOT_FOUND, "Book not found")
    return envelope("Book successfully retrieved", data, source=source)


@router.patch("/books/{book_id}")
def update_book(book_id: str, payload: BookUpdate, db: Database = Depends(get_db),
                cache: ResponseCache = Depends(get_cache), admin: dict = Depends(require_admin)):
    _id = oid(book_id)
    changes = changes_of(payload)
    if "isbn" in changes and db["book"].find_one({"isbn": changes["isbn"], "_id": {"$ne": _id}}):
        raise ApiError(ErrorCode.DUPLICATE_RESOURCE, "A book with this ISBN already exists")
    book = update_document(db, "book", _id, changes)
    if not book:
        raise ApiError(ErrorCode.RESOURCE_NOT_FOUND, "Book not found")
    if "price" in changes:
        carts.reprice_book(db, _id)
    cache.invalidate("books", detail_key("books", _id))
    return envelope("Book successfully updated", serialize(book))


@router.delete("/books/{book_id}")
def delete_book(book_id: str, db: Database = Depends(get_db), cache: ResponseCache = Depends(get_cache),
                admin: dict = Depends(require_admin)):
    _id = oid(book_id)
    if not db["book"].find_one_and_delete({"_id": _id}):
        raise ApiError(ErrorCode.RESOURCE_NOT_FOUND, "Book not found")
    carts.drop_book(db, _id)
    cache.invalidate("books", detail_key("books", _id))
    cache.invalidate(f"reviews:{_id}")
    return envelope("Book successfully deleted")


# Cart

@router.get("/cart")
def get_cart(query: ListQuery = Depends(list_query), db: Database = Depends(get_db),
             user: dict = Depends(get_active_user)):
    cart = carts.find_cart(db, user["_id"])
    if not cart:
        return envelope("Cart successfully retrieved", {"cart": None, "items": paginated([], query, 0)})
    items, total = get_documents(db, "cartitem", {"cart_id": cart["_id"]}, query)
    return envelope("Cart successfully retrieved", {
        "cart": serialize(carts.present(cart)),
        "items": paginated(serialize(carts.with_books(db, items)), query, total),
    })


@router.post("/cart/items", status_code=201)
def add_cart_item(payload: CartItemCreate, db: Database = Depends(get_db), user: dict = Depends(get_active_user)):
    item, cart = carts.add_item(db, user["_id"], oid(payload.book_id), payload.quantity)
    return envelope("Item added to cart", serialize(item), total_amount=carts.total_amount(cart))


@router.patch("/cart/items/{item_id}")
def update_cart_item(item_id: str, payload: CartItemUpdate, db: Database = Depends(get_db),
                     user: dict = Depends(get_active_user)):
    item, cart = carts.update_item(db, user["_id"], oid(item_id), payload.quantity)
    return envelope("Cart item successfully updated", serialize(item), total_amount=carts.total_amount(cart))


@router.delete("/cart/items/{item_id}")
def delete_cart_item(item_id: str, db: Database = Depends(get_db), user: dict = Depends(get_active_user)):
    cart = carts.remove_item(db, user["_id"], oid(item_id))
    return envelope("Item removed from cart", total_amount=carts.total_amount(cart))


@router.post("/cart/recalculate")
def recalculate_cart(db: Database = Depends(get_db), user: dict = Depends(get_active_user)):
    cart = carts.find_cart(db, user["_id"])
    if not cart:
        raise ApiError(ErrorCode.RESOURCE_NOT_FOUND, "Cart not found")
    return envelope("Cart total recalculated", serialize(carts.present(carts.repair_total(db, cart["_id"]))))


# Orders

@router.post("/orders", status_code=201)
def create_order(payload: OrderCreate, db: Database = Depends(get_db), user: dict = Depends(get_active_user)):
    coupon_id = None
    if payload.coupon_id:
        coupon_id = find_or_404(db, "coupon", oid(payload.coupon_id), "Coupon")["_id"]
    order = create_document(db, "order", {
        "user_id": user["_id"],
        "coupon_id": coupon_id,
        "total_amount": payload.total_amount,
        "status": "ordered",
    })
    return envelope("Order successfully created", serialize(order))


@router.get("/orders")
def list_orders(query: ListQuery = Depends(list_query), db: Database = Depends(get_db),
                user: dict = Depends(get_active_user)):
    filter_dict = build_filter(query.filters, ORDER_FILTERS)
    filter_dict["user_id"] = user["_id"]
    orders, total = get_documents(db, "order", filter_dict, query)
    return envelope("Orders successfully retrieved", paginated(serialize(orders), query, total))


@router.get("/orders/{order_id}")
def get_order(order_id: str, db: Database = Depends(get_db), user: dict = Depends(get_active_user)):
    order = find_or_404(db, "order", oid(order_id), "Order")
    ensure_author(order, user, "You are not allowed to view this order")
    return envelope("Order successfully retrieved", serialize(order))


@router.patch("/orders/{order_id}/status")
def update_order_status(order_id: str, payload: OrderStatusUpdate, db: Database = Depends(get_db),
                        admin: dict = Depends(require_admin)):
    order = update_document(db, "order", oid(order_id), {"status": payload.status})
    if not order:
        raise ApiError(ErrorCode.RESOURCE_NOT_FOUND, "Order not found")
    return envelope("Order status successfully updated", serialize(order))


@router.delete("/orders/{order_id}")
def delete_order(order_id: str, db: Database = Depends(get_db), admin: dict = Depends(require_admin)):
    if not db["order"].find_one_and_delete({"_id": oid(order_id)}):
        raise ApiError(ErrorCode.RESOURCE_NOT_FOUND, "Order not found")
    return envelope("Order successfully deleted")


# Coupons

@router.post("/coupons", status_code=201)
def create_coupon(payload: CouponCreate, db: Database = Depends(get_db), cache: ResponseCache = Depends(get_cache),
                  admin: dict = Depends(require_admin)):
    if db["coupon"].find_one({"code": payload.code}):
        raise ApiError(ErrorCode.DUPLICATE_RESOURCE, "Coupon code already exists")
    coupon = create_document(db, "coupon", {**payload.model_dump(), "created_by": admin["_id"]})
    cache.invalidate("coupons")
    return envelope("Coupon successfully created", serialize(coupon))


@router.get("/coupons")
def list_coupons(request: Request, query: ListQuery = Depends(list_query), db: Database = Depends(get_db),
                 cache: ResponseCache = Depends(get_cache), admin: dict = Depends(require_admin)):
    def load():
        coupons, total = get_documents(db, "coupon", build_filter(query.filters, COUPON_FILTERS), query)
        return paginated(serialize(coupons), query, total)

    data, source = cache.fetch(list_key("coupons", request), load)
    return envelope("Coupons successfully retrieved", data, source=source)


@router.patch("/coupons/{coupon_id}")
def update_coupon(coupon_id: str, payload: CouponUpdate, db: Database = Depends(get_db),
                  cache: ResponseCache = Depends(get_cache), admin: dict = Depends(require_admin)):
    _id = oid(coupon_id)
    changes = changes_of(payload)
    coupon = find_or_404(db, "coupon", _id, "Coupon")
    start = changes.get("start_at", coupon["start_at"])
    end = changes.get("end_at", coupon["end_at"])
    if ("start_at" in changes or "end_at" in changes) and end <= start:
        raise ApiError(ErrorCode.VALIDATION_ERROR, details=[{
            "field": "end_at",
            "message": "end_at must be after start_at",
            "type": "value_error",
        }])
    if "code" in changes and db["coupon"].find_one({"code": changes["code"], "_id": {"$ne": _id}}):
        raise ApiError(ErrorCode.DUPLICATE_RESOURCE, "Coupon code already exists")
    coupon = update_document(db, "coupon", _id, changes)
    if not coupon:
        raise ApiError(ErrorCode.RESOURCE_NOT_FOUND, "Coupon not found")
    cache.invalidate("coupons")
    return envelope("Coupon successfully updated", serialize(coupon))


@router.delete("/coupons/{coupon_id}")
def delete_coupon(coupon_id: str, db: Database = Depends(get_db), cache: ResponseCache = Depends(get_cache),
                  admin: dict = Depends(require_admin)):
    if not db["coupon"].find_one_and_delete({"_id": oid(coupon_id)}):
        raise ApiError(ErrorCode.RESOURCE_NOT_FOUND, "Coupon not found")
    cache.invalidate("coupons")
    return envelope("Coupon successfully deleted")


# Reviews

def _author_names(db: Database, user_ids) -> Dict[Any, dict]:
    ids = list(set(user_ids))
    if not ids:
        return {}
    users = db["user"].find({"_id": {"$in": ids}}, {"first_name": 1, "last_name": 1})
    return {u["_id"]: u for u in users}


def _with_comments(db: Database, reviews: List[dict]) -> List[dict]:
    review_ids = [r["_id"] for r in reviews]
    comments = list(db["comment"].find({"review_id": {"$in": review_ids}}).sort([("createdAt", 1), ("_id", 1)])) \
        if review_ids else []
    authors = _author_names(db, [c["user_id"] for c in comments])
    by_review: Dict[Any, List[dict]] = {}
    for comment in comments:
        by_review.setdefault(comment["review_id"], []).append(dict(comment, author=authors.get(comment["user_id"])))
    return [dict(r, comments=by_review.get(r["_id"], [])) for r in reviews]


@router.post("/books/{book_id}/reviews", status_code=201)
def create_review(book_id: str, payload: ReviewCreate, db: Database = Depends(get_db),
                  cache: ResponseCache = Depends(get_cache), user: dict = Depends(get_active_user)):
    book = find_or_404(db, "book", oid(book_id), "Book")
    review = create_document(db, "review", {
        "user_id": user["_id"],
        "book_id": book["_id"],
        "rating": payload.rating,
    })
    cache.invalidate(f"reviews:{book['_id']}")
    return envelope("Review successfully created", serialize(review))


@router.get("/books/{book_id}/reviews")
def list_book_reviews(book_id: str, request: Request, query: ListQuery = Depends(list_query),
                      db: Database = Depends(get_db), cache: ResponseCache = Depends(get_cache)):
    _id = oid(book_id)

    def load():
        filter_dict = build_filter(query.filters, REVIEW_FILTERS)
        filter_dict["book_id"] = _id
        reviews, total = get_documents(db, "review", filter_dict, query)
        return paginated(serialize(_with_comments(db, reviews)), query, total)

    data, source = cache.fetch(list_key(f"reviews:{_id}", request), load)
    return envelope("Reviews successfully retrieved", data, source=source)


@router.patch("/reviews/{review_id}")
def update_review(review_id: str, payload: ReviewUpdate, db: Database = Depends(get_db),
                  cache: ResponseCache = Depends(get_cache), user: dict = Depends(get_active_user)):
    review = find_or_404(db, "review", oid(review_id), "Review")
    ensure_author(review, user, "You are not allowed to update this review")
    updated = update_document(db, "review", review["_id"], changes_of(payload))
    if not updated:
        raise ApiError(ErrorCode.RESOURCE_NOT_FOUND, "Review not found")
    cache.invalidate(f"reviews:{review['book_id']}")
    return envelope("Review successfully updated", serialize(updated))


@router.delete("/reviews/{review_id}")
def delete_review(review_id: str, db: Database = Depends(get_db), cache: ResponseCache = Depends(get_cache),
                  user: dict = Depends(get_active_user)):
    review = find_or_404(db, "review", oid(review_id), "Review")
    ensure_author(review, user, "You are not allowed to delete this review")
    db["review"].delete_one({"_id": review["_id"]})
    db["comment"].delete_many({"review_id": review["_id"]})
    cache.invalidate(f"reviews:{review['book_id']}")
    cache.invalidate(f"comments:{review['_id']}")
    return envelope("Review successfully deleted")


# Comments

@router.post("/reviews/{review_id}/comments", status_code=201)
def create_comment(review_id: str, payload: CommentCreate, db: Database = Depends(get_db),
                   cache: ResponseCache = Depends(get_cache), user: dict = Depends(get_active_user)):
    review = find_or_404(db, "review", oid(review_id), "Review")
    comment = create_document(db, "comment", {
        "review_id": review["_id"],
        "user_id": user["_id"],
        "comment": payload.comment,
    })
    cache.invalidate(f"comments:{review['_id']}")
    cache.invalidate(f"reviews:{review['book_id']}")
    return envelope("Comment successfully created", serialize(comment))


@router.get("/reviews/{review_id}/comments")
def list_review_comments(review_id: str, request: Request, query: ListQuery = Depends(list_query),
                         db: Database = Depends(get_db), cache: ResponseCache = Depends(get_cache)):
    _id = oid(review_id)

    def load():
        comments, total = get_documents(db, "comment", {"review_id": _id}, query)
        return paginated(serialize(comments), query, total)

    data, source = cache.fetch(list_key(f"comments:{_id}", request), load)
    return envelope("Comments successfully retrieved", data, source=source)


def _invalidate_comment(db: Database, cache: ResponseCache, comment: dict) -> None:
    cache.invalidate(f"comments:{comment['review_id']}")
    review = db["review"].find_one({"_id": comment["review_id"]})
    if review:
        cache.invalidate(f"reviews:{review['book_id']}")


@router.patch("/comments/{comment_id}")
def update_comment(comment_id: str, payload: CommentUpdate, db: Database = Depends(get_db),
                   cache: ResponseCache = Depends(get_cache), user: dict = Depends(get_active_user)):
    comment = find_or_404(db, "comment", oid(comment_id), "Comment")
    ensure_author(comment, user, "You are not allowed to update this comment")
    updated = update_document(db, "comment", comment["_id"], {"comment": payload.comment})
    if not updated:
        raise ApiError(ErrorCode.RESOURCE_NOT_FOUND, "Comment not found")
    _invalidate_comment(db, cache, comment)
    return envelope("Comment updated successfully", serialize(updated))


@router.delete("/comments/{comment_id}")
def delete_comment(comment_id: str, db: Database = Depends(get_db), cache: ResponseCache = Depends(get_cache),
                   user: dict = Depends(get_active_user)):
    comment = find_or_404(db, "comment", oid(comment_id), "Comment")
    ensure_author(comment, user, "You are not allowed to delete this comment")
    db["comment"].delete_one({"_id": comment["_id"]})
    _invalidate_comment(db, cache, comment)
    return envelope("Comment successfully deleted")


# Favorites

@router.get("/users/me/favorites")
def list_my_favorites(query: ListQuery = Depends(list_query), db: Database = Depends(get_db),
                      user: dict = Depends(get_active_user)):
    favorites, total = get_documents(db, "favorite", {"user_id": user["_id"]}, query)
    return envelope("Favorites successfully retrieved",
                    paginated(serialize(carts.with_books(db, favorites)), query, total))


@router.post("/{book_id}/favorite", status_code=201)
def add_favorite(book_id: str, db: Database = Depends(get_db), user: dict = Depends(get_active_user)):
    try:
        _id = oid(book_id)
    except ApiError:
        raise ApiError(ErrorCode.INVALID_OBJECT_ID, "Invalid bookId") from None
    find_or_404(db, "book", _id, "Book")
    if db["favorite"].find_one({"user_id": user["_id"], "book_id": _id}):
        raise ApiError(ErrorCode.DUPLICATE_RESOURCE, "Book already in favorites")
    favorite = create_document(db, "favorite", {"user_id": user["_id"], "book_id": _id})
    return envelope("Book added to favorites", serialize(favorite))


@router.delete("/{favorite_id}/favorite")
def remove_favorite(favorite_id: str, db: Database = Depends(get_db), user: dict = Depends(get_active_user)):
    _id = oid(favorite_id)
    deleted = db["favorite"].find_one_and_delete({
        "user_id": user["_id"],
        "$or": [{"_id": _id}, {"book_id": _id}],
    })
    if not deleted:
        raise ApiError(ErrorCode.RESOURCE_NOT_FOUND, "Favorite not found")
    return envelope("Favorite removed")


# App

def create_app(settings: Optional[Settings] = None, db: Optional[Database] = None,
               cache_client: Optional[redis.Redis] = None, google: Optional[GoogleOAuth] = None,
               firebase: Optional[FirebaseVerifier] = None) -> FastAPI:
    """Build the API.

    Clients passed in are used as-is and left open; anything missing is
    connected from `settings` at startup and closed on shutdown. A database
    or Redis that cannot be reached at startup aborts startup.
    """
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = []
        if app.state.db is None:
            mongo = database.connect(settings)
            owned.append(mongo)
            app.state.db = mongo[settings.database_name]
            logger.info("Connected to MongoDB")
        if app.state.cache is None:
            client = cache_store.connect(settings)
            owned.append(client)
            app.state.cache = ResponseCache(client, settings.cache_ttl_seconds)
            logger.info("Connected to Redis")
        ensure_indexes(app.state.db)
        yield
        logger.info("Shutting down")
        for client in owned:
            client.close()

    app = FastAPI(title="Bookstore API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db
    app.state.cache = ResponseCache(cache_client, settings.cache_ttl_seconds) if cache_client is not None else None
    app.state.google = google or GoogleOAuth.from_settings(settings)
    app.state.firebase = firebase or FirebaseVerifier(settings.firebase_credentials)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        logger.info("%s %s %s %.0fms", request.method, request.url.path, response.status_code, duration)
        return response

    register_error_handlers(app)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
