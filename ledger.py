"""
Inventory ledger

The only place where a book's stock and demand counters change. The four
adjustments are pure functions over a book document; ``Inventory`` persists
reservations with a compare-and-swap on the counters it read, so concurrent
writers can never drive stock below zero. Releases cannot fail a stock check
and are written as single atomic updates.
"""
import logging
from typing import Callable, Optional, Union

from bson import ObjectId
from pymongo import ReturnDocument

from database import parse_object_id, utcnow
from errors import InsufficientStock, NotFound, OutOfStock, Unexpected, ValidationError

logger = logging.getLogger(__name__)

COUNTER_FIELDS = ("stock", "times_purchased", "times_borrowed", "popularity")
MAX_ATTEMPTS = 5


def _counter(book: dict, field: str) -> int:
    return int(book.get(field) or 0)


def _field(name: str) -> dict:
    return {"$ifNull": [f"${name}", 0]}


def _floored(value: dict, amount: int) -> dict:
    return {"$max": [0, {"$subtract": [value, amount]}]}


def _check_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("Quantity must be a positive number")
    return quantity


def reserve_for_purchase(book: dict, quantity: int) -> dict:
    quantity = _check_quantity(quantity)
    stock = _counter(book, "stock")
    if stock < quantity:
        raise InsufficientStock(f"Insufficient stock for {book.get('title', 'book')}")
    return {
        **book,
        "stock": stock - quantity,
        "times_purchased": _counter(book, "times_purchased") + quantity,
        "popularity": _counter(book, "popularity") + quantity,
    }


def release_purchase(book: dict, quantity: int) -> dict:
    # counters floor at zero so a repeated release cannot go negative
    quantity = _check_quantity(quantity)
    return {
        **book,
        "stock": _counter(book, "stock") + quantity,
        "times_purchased": max(0, _counter(book, "times_purchased") - quantity),
        "popularity": max(0, _counter(book, "popularity") - quantity),
    }


def reserve_for_lending(book: dict) -> dict:
    stock = _counter(book, "stock")
    if stock <= 0:
        raise OutOfStock("Book out of stock")
    return {
        **book,
        "stock": stock - 1,
        "times_borrowed": _counter(book, "times_borrowed") + 1,
        "popularity": _counter(book, "popularity") + 1,
    }


def release_lending(book: dict) -> dict:
    # times_borrowed and popularity stay: a finished loan is still demand
    return {**book, "stock": _counter(book, "stock") + 1}


def undo_lending_reservation(book: dict) -> dict:
    """Exact inverse of reserve_for_lending, for an approval that never took effect."""
    return {
        **book,
        "stock": _counter(book, "stock") + 1,
        "times_borrowed": max(0, _counter(book, "times_borrowed") - 1),
        "popularity": max(0, _counter(book, "popularity") - 1),
    }


class Inventory:
    """Applies ledger adjustments to the ``book`` collection."""

    def __init__(self, db, max_attempts: int = MAX_ATTEMPTS):
        self.books = db["book"]
        self.max_attempts = max_attempts

    def reserve_for_purchase(self, book_id, quantity: int) -> dict:
        return self._apply(book_id, lambda book: reserve_for_purchase(book, quantity))

    def release_purchase(self, book_id, quantity: int) -> Optional[dict]:
        quantity = _check_quantity(quantity)
        return self._give_back(book_id, [{"$set": {
            "stock": {"$add": [_field("stock"), quantity]},
            "times_purchased": _floored(_field("times_purchased"), quantity),
            "popularity": _floored(_field("popularity"), quantity),
            "updated_at": utcnow(),
        }}])

    def reserve_for_lending(self, book_id) -> dict:
        return self._apply(book_id, reserve_for_lending)

    def release_lending(self, book_id) -> Optional[dict]:
        return self._give_back(book_id, {"$inc": {"stock": 1}, "$set": {"updated_at": utcnow()}})

    def undo_lending_reservation(self, book_id) -> Optional[dict]:
        return self._give_back(book_id, [{"$set": {
            "stock": {"$add": [_field("stock"), 1]},
            "times_borrowed": _floored(_field("times_borrowed"), 1),
            "popularity": _floored(_field("popularity"), 1),
            "updated_at": utcnow(),
        }}])

    def _load(self, book_id: ObjectId) -> Optional[dict]:
        return self.books.find_one({"_id": book_id})

    def _give_back(self, book_id, update: Union[dict, list]) -> Optional[dict]:
        oid = parse_object_id(book_id, "book id")
        book = self.books.find_one_and_update({"_id": oid}, update, return_document=ReturnDocument.AFTER)
        if book is None:
            logger.info("Book %s no longer exists, skipping inventory release", oid)
        return book

    def _apply(self, book_id, adjust: Callable[[dict], dict]) -> dict:
        oid = parse_object_id(book_id, "book id")
        for attempt in range(1, self.max_attempts + 1):
            book = self._load(oid)
            if book is None:
                raise NotFound("Book not found")

            updated = adjust(book)
            guard = {"_id": oid}
            for field in COUNTER_FIELDS:
                guard[field] = book[field] if field in book else {"$exists": False}
            changes = {field: _counter(updated, field) for field in COUNTER_FIELDS}
            changes["updated_at"] = utcnow()

            result = self.books.update_one(guard, {"$set": changes})
            if result.matched_count:
                return {**updated, **changes}
            logger.warning("Stock of book %s changed concurrently (attempt %d/%d)", oid, attempt, self.max_attempts)

        raise Unexpected("Book inventory is busy, please retry")
