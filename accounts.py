"""
Accounts

User records, profile edits, admin user management and wishlists. Password
hashing and token issuing stay with the HTTP layer; this module only ever
stores the hash it is given and never returns it.
"""
import logging
from typing import List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from access import AuthUser, require
from database import create_document, parse_object_id, utcnow
from errors import Conflict, NotFound, ValidationError
from schemas import Preferences, User

logger = logging.getLogger(__name__)

ROLES = ("user", "admin")
PUBLIC_PROJECTION = {"password_hash": 0}


def public_user(user: dict) -> dict:
    return {k: v for k, v in user.items() if k != "password_hash"}


def find_by_email(db, email: str) -> Optional[dict]:
    return db["user"].find_one({"email": email.strip().lower()})


def create_user(db, name: str, email: str, password_hash: str, preferences: Optional[dict] = None) -> dict:
    email = email.strip().lower()
    if find_by_email(db, email):
        raise Conflict("Email already in use")
    user = User(
        name=name,
        email=email,
        password_hash=password_hash,
        preferences=Preferences(**(preferences or {})),
    )
    try:
        user_id = create_document("user", user, database=db)
    except DuplicateKeyError:
        raise Conflict("Email already in use")
    logger.info("User %s registered", user_id)
    return db["user"].find_one({"_id": ObjectId(user_id)}, PUBLIC_PROJECTION)


def get_user(db, user_id) -> dict:
    oid = parse_object_id(user_id, "user id")
    user = db["user"].find_one({"_id": oid}, PUBLIC_PROJECTION)
    if not user:
        raise NotFound("User not found")
    return user


def _profile_changes(name: Optional[str] = None, preferences: Optional[dict] = None) -> dict:
    changes = {}
    if name is not None:
        if not name.strip():
            raise ValidationError("Name cannot be empty")
        changes["name"] = name.strip()
    if preferences is not None:
        changes["preferences"] = Preferences(**preferences).model_dump()
    return changes


def update_profile(db, user: AuthUser, name: Optional[str] = None, preferences: Optional[dict] = None) -> dict:
    changes = _profile_changes(name, preferences)
    changes["updated_at"] = utcnow()
    updated = db["user"].find_one_and_update(
        {"_id": ObjectId(user.id)},
        {"$set": changes},
        projection=PUBLIC_PROJECTION,
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise NotFound("User not found")
    return updated


# ---------------- admin ----------------

def list_users(db, admin: AuthUser) -> List[dict]:
    require(admin, None, "manage", "Admin access required")
    return list(db["user"].find({}, PUBLIC_PROJECTION).sort("created_at", -1))


def admin_update_user(db, admin: AuthUser, user_id, name: Optional[str] = None,
                      role: Optional[str] = None, preferences: Optional[dict] = None) -> dict:
    require(admin, None, "manage", "Admin access required")
    changes = _profile_changes(name, preferences)
    if role is not None:
        if role not in ROLES:
            raise ValidationError("Invalid role value")
        changes["role"] = role
    oid = parse_object_id(user_id, "user id")
    changes["updated_at"] = utcnow()
    updated = db["user"].find_one_and_update(
        {"_id": oid},
        {"$set": changes},
        projection=PUBLIC_PROJECTION,
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise NotFound("User not found")
    logger.info("User %s updated by admin %s", oid, admin.id)
    return updated


def delete_user(db, admin: AuthUser, user_id) -> dict:
    require(admin, None, "manage", "Admin access required")
    oid = parse_object_id(user_id, "user id")
    if str(oid) == admin.id:
        raise ValidationError("Admins cannot delete their own account")
    deleted = db["user"].find_one_and_delete({"_id": oid}, projection=PUBLIC_PROJECTION)
    if not deleted:
        raise NotFound("User not found")
    logger.info("User %s deleted by admin %s", oid, admin.id)
    return deleted


# ---------------- wishlist ----------------

def wishlist(db, user: AuthUser) -> List[dict]:
    doc = db["user"].find_one({"_id": ObjectId(user.id)}, {"wishlist": 1})
    if not doc:
        raise NotFound("User not found")
    ids = [ObjectId(i) for i in doc.get("wishlist", []) if ObjectId.is_valid(i)]
    books = {b["_id"]: b for b in db["book"].find({"_id": {"$in": ids}})}
    # keep the order the reader added them in; drop books deleted since
    return [books[i] for i in ids if i in books]


def add_to_wishlist(db, user: AuthUser, book_id) -> bool:
    """Add a book; returns False when it was already listed."""
    if not book_id:
        raise ValidationError("bookId is required")
    oid = parse_object_id(book_id, "bookId")
    if db["book"].find_one({"_id": oid}, {"_id": 1}) is None:
        raise NotFound("Book not found")
    doc = db["user"].find_one({"_id": ObjectId(user.id)}, {"wishlist": 1})
    if not doc:
        raise NotFound("User not found")
    if str(oid) in doc.get("wishlist", []):
        return False
    db["user"].update_one(
        {"_id": ObjectId(user.id)},
        {"$addToSet": {"wishlist": str(oid)}, "$set": {"updated_at": utcnow()}},
    )
    return True


def remove_from_wishlist(db, user: AuthUser, book_id: str) -> None:
    oid = parse_object_id(book_id, "bookId")
    db["user"].update_one(
        {"_id": ObjectId(user.id)},
        {"$pull": {"wishlist": str(oid)}, "$set": {"updated_at": utcnow()}},
    )
