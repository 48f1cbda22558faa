"""
Cart aggregate: one cart per user plus its items.

The cart document stores its running total as integer cents in
`total_cents`, kept equal to sum(item.quantity * book.price) by applying
each mutation's delta with a single `$inc`. Integer cents keep the sum
exact; `present` exposes it as the `total_amount` of the API.

The item write and the total write are still two operations, so a crash
between them leaves the total stale; `repair_total` recomputes it from the
items. It is also what catalogue changes (a repriced or deleted book) use to
bring the affected carts back in line.
"""

import logging
from typing import List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from database import create_document, utcnow
from errors import ApiError, ErrorCode

logger = logging.getLogger(__name__)


def to_cents(price: float) -> int:
    return int(round(price * 100))


def total_amount(cart: dict) -> float:
    return cart.get("total_cents", 0) / 100


def present(cart: dict) -> dict:
    doc = dict(cart)
    doc["total_amount"] = total_amount(doc)
    doc.pop("total_cents", None)
    return doc


def ensure_cart(db: Database, user_id: ObjectId) -> dict:
    now = utcnow()
    return db["cart"].find_one_and_update(
        {"user_id": user_id},
        {"$setOnInsert": {"total_cents": 0, "createdAt": now, "updatedAt": now}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def _apply_delta(db: Database, cart_id: ObjectId, delta_cents: int) -> dict:
    return db["cart"].find_one_and_update(
        {"_id": cart_id},
        {"$inc": {"total_cents": delta_cents}, "$set": {"updatedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


def _get_book(db: Database, book_id: ObjectId) -> dict:
    book = db["book"].find_one({"_id": book_id})
    if not book:
        raise ApiError(ErrorCode.RESOURCE_NOT_FOUND, "Book not found")
    return book


def _get_owned_item(db: Database, item_id: ObjectId, user_id: ObjectId):
    item = db["cartitem"].find_one({"_id": item_id})
    if not item:
        raise ApiError(ErrorCode.RESOURCE_NOT_FOUND, "Cart item not found")
    cart = db["cart"].find_one({"_id": item["cart_id"]})
    if not cart:
        raise ApiError(ErrorCode.RESOURCE_NOT_FOUND, "Cart not found")
    if cart["user_id"] != user_id:
        raise ApiError(ErrorCode.RESOURCE_NOT_FOUND, "Cart item not found")
    return item, cart


def add_item(db: Database, user_id: ObjectId, book_id: ObjectId, quantity: int):
    """Returns (item, cart) with the cart reflecting the new total."""
    book = _get_book(db, book_id)
    cart = ensure_cart(db, user_id)
    item = create_document(db, "cartitem", {
        "cart_id": cart["_id"],
        "book_id": book_id,
        "quantity": quantity,
    })
    cart = _apply_delta(db, cart["_id"], to_cents(book["price"]) * quantity)
    return item, cart


def update_item(db: Database, user_id: ObjectId, item_id: ObjectId, quantity: int):
    item, cart = _get_owned_item(db, item_id, user_id)
    book = _get_book(db, item["book_id"])
    delta = to_cents(book["price"]) * (quantity - item["quantity"])
    item = db["cartitem"].find_one_and_update(
        {"_id": item["_id"]},
        {"$set": {"quantity": quantity, "updatedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    cart = _apply_delta(db, cart["_id"], delta)
    return item, cart


def remove_item(db: Database, user_id: ObjectId, item_id: ObjectId) -> dict:
    item, cart = _get_owned_item(db, item_id, user_id)
    book = db["book"].find_one({"_id": item["book_id"]})
    db["cartitem"].delete_one({"_id": item["_id"]})
    if not book:
        # the item's share of the total is unknown once its book is gone
        return repair_total(db, cart["_id"])
    return _apply_delta(db, cart["_id"], -to_cents(book["price"]) * item["quantity"])


def recalculate_total(db: Database, cart_id: ObjectId) -> int:
    """Sum of the cart's items in cents, skipping items whose book no longer exists."""
    items = list(db["cartitem"].find({"cart_id": cart_id}))
    book_ids = list({item["book_id"] for item in items})
    prices = {b["_id"]: b["price"] for b in db["book"].find({"_id": {"$in": book_ids}})} if book_ids else {}
    total = 0
    for item in items:
        price = prices.get(item["book_id"])
        if price is None:
            logger.warning("Cart %s references missing book %s", cart_id, item["book_id"])
            continue
        total += to_cents(price) * item["quantity"]
    return total


def repair_total(db: Database, cart_id: ObjectId) -> dict:
    total = recalculate_total(db, cart_id)
    cart = db["cart"].find_one_and_update(
        {"_id": cart_id},
        {"$set": {"total_cents": total, "updatedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Cart %s total repaired to %s cents", cart_id, total)
    return cart


def reprice_book(db: Database, book_id: ObjectId) -> int:
    """Recompute every cart holding `book_id`; returns how many were touched."""
    cart_ids = db["cartitem"].distinct("cart_id", {"book_id": book_id})
    for cart_id in cart_ids:
        repair_total(db, cart_id)
    return len(cart_ids)


def drop_book(db: Database, book_id: ObjectId) -> int:
    """Remove a deleted book from every cart and fix their totals."""
    cart_ids = db["cartitem"].distinct("cart_id", {"book_id": book_id})
    db["cartitem"].delete_many({"book_id": book_id})
    for cart_id in cart_ids:
        repair_total(db, cart_id)
    return len(cart_ids)


def find_cart(db: Database, user_id: ObjectId) -> Optional[dict]:
    return db["cart"].find_one({"user_id": user_id})


def with_books(db: Database, docs: List[dict]) -> List[dict]:
    """Attach the referenced book as `book` to each doc carrying a `book_id`."""
    book_ids = list({d["book_id"] for d in docs})
    books = {b["_id"]: b for b in db["book"].find({"_id": {"$in": book_ids}})} if book_ids else {}
    return [dict(d, book=books.get(d["book_id"])) for d in docs]
