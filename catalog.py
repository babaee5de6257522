"""
Catalog

Read-side book queries (search, genre filter, sorting, genre facets,
recommendations) plus the admin write paths and reviews. Nothing here touches
the stock counters except an explicit admin PUT.
"""
import logging
import re
from typing import List, Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from access import AuthUser
from database import create_document, parse_object_id, populate, utcnow
from errors import Conflict, NotFound, ValidationError
from schemas import Book, Review

logger = logging.getLogger(__name__)

MAX_COVER_BYTES = 12 * 1024 * 1024
RECOMMENDATION_LIMIT = 6

SORT_OPTIONS = {
    "price": [("price", ASCENDING)],
    "popularity": [("popularity", DESCENDING)],
}

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/=\s]+$")


def contains(text: str) -> dict:
    return {"$regex": re.escape(text), "$options": "i"}


def validate_cover_image(cover_image) -> Optional[str]:
    """Accept a raw base64 string or a data URL; return the trimmed value."""
    if cover_image is None:
        return None
    if not isinstance(cover_image, str):
        raise ValidationError("cover_image must be a base64 encoded string")
    trimmed = cover_image.strip()
    if not trimmed:
        return ""

    prefix, _, payload = trimmed.partition(",")
    data = payload if payload else prefix
    if not _BASE64_RE.match(data):
        raise ValidationError("cover_image must be a valid base64 string")

    data = re.sub(r"\s+", "", data)
    size = len(data) * 3 // 4 - (len(data) - len(data.rstrip("=")))
    if size > MAX_COVER_BYTES:
        raise ValidationError(f"cover_image exceeds {MAX_COVER_BYTES // (1024 * 1024)}MB limit")
    return trimmed


def average_rating(reviews: List[dict]) -> float:
    if not reviews:
        return 0
    return round(sum(r["rating"] for r in reviews) / len(reviews), 2)


# ---------------- queries ----------------

def list_books(db, search: Optional[str] = None, genre: Optional[str] = None,
               sort: Optional[str] = None) -> List[dict]:
    query = {}
    if search:
        query["$or"] = [{"title": contains(search)}, {"author": contains(search)}]
    if genre:
        query["genre"] = genre
    cursor = db["book"].find(query)
    if sort in SORT_OPTIONS:
        cursor = cursor.sort(SORT_OPTIONS[sort])
    return list(cursor)


def list_genres(db) -> List[str]:
    return sorted(g for g in db["book"].distinct("genre") if g)


def get_book(db, book_id) -> dict:
    oid = parse_object_id(book_id, "book id")
    book = db["book"].find_one({"_id": oid})
    if not book:
        raise NotFound("Book not found")
    populate(db, book.get("reviews", []), "user_id", "user", ["name"], "user")
    return book


def recommendations(db, book_id, limit: int = RECOMMENDATION_LIMIT) -> List[dict]:
    current = get_book(db, book_id)
    cursor = db["book"].find({"_id": {"$ne": current["_id"]}, "genre": current["genre"]})
    return list(cursor.sort("popularity", DESCENDING).limit(limit))


def search_titles(db, query: Optional[str], limit: int = 8) -> List[dict]:
    filt = {}
    if query:
        filt["$or"] = [{"title": contains(query)}, {"author": contains(query)}]
    cursor = db["book"].find(filt).sort([("popularity", DESCENDING), ("times_purchased", DESCENDING)])
    return list(cursor.limit(limit))


def by_genre(db, genre: Optional[str], limit: int = 5) -> List[dict]:
    filt = {}
    if genre:
        filt["genre"] = {"$regex": f"^{re.escape(genre)}$", "$options": "i"}
    return list(db["book"].find(filt).sort("popularity", DESCENDING).limit(limit))


def find_book(db, book_id: Optional[str] = None, title: Optional[str] = None) -> Optional[dict]:
    """Look a book up by id first, then by a case-insensitive title fragment."""
    book = None
    if book_id and ObjectId.is_valid(book_id):
        book = db["book"].find_one({"_id": ObjectId(book_id)})
    if book is None and title:
        book = db["book"].find_one({"title": contains(title)})
    return book


# ---------------- admin writes ----------------

def create_book(db, data: dict) -> dict:
    data = dict(data)
    if "cover_image" in data:
        data["cover_image"] = validate_cover_image(data["cover_image"]) or ""
    book_id = create_document("book", Book(**data), database=db)
    logger.info("Book %s created: %s", book_id, data.get("title"))
    return db["book"].find_one({"_id": ObjectId(book_id)})


def replace_book(db, book_id, data: dict) -> dict:
    """Admin override: every supplied field, stock counters included, wins."""
    oid = parse_object_id(book_id, "book id")
    changes = dict(data)
    if "cover_image" in changes:
        changes["cover_image"] = validate_cover_image(changes["cover_image"]) or ""
    changes["updated_at"] = utcnow()
    book = db["book"].find_one_and_update({"_id": oid}, {"$set": changes}, return_document=ReturnDocument.AFTER)
    if not book:
        raise NotFound("Book not found")
    logger.info("Book %s replaced", oid)
    return book


def delete_book(db, book_id) -> dict:
    oid = parse_object_id(book_id, "book id")
    book = db["book"].find_one_and_delete({"_id": oid})
    if not book:
        raise NotFound("Book not found")
    logger.info("Book %s deleted", oid)
    return book


# ---------------- reviews ----------------

def add_review(db, book_id, user: AuthUser, rating: int, comment: str = "") -> dict:
    oid = parse_object_id(book_id, "book id")
    review = Review(user_id=user.id, rating=rating, comment=comment or "", created_at=utcnow())

    # one review per user: the push only lands when no review by this user exists
    result = db["book"].update_one(
        {"_id": oid, "reviews.user_id": {"$ne": user.id}},
        {"$push": {"reviews": review.model_dump()}},
    )
    if not result.matched_count:
        if db["book"].find_one({"_id": oid}, {"_id": 1}) is None:
            raise NotFound("Book not found")
        raise Conflict("You have already reviewed this book")

    book = db["book"].find_one({"_id": oid})
    rating_value = average_rating(book.get("reviews", []))
    db["book"].update_one({"_id": oid}, {"$set": {"average_rating": rating_value, "updated_at": utcnow()}})
    book["average_rating"] = rating_value
    return book
