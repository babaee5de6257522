"""
Lending state machine

    requested --approve--> borrowed --return--> returned
    requested --cancel---> cancelled

"approved" is a legacy active state: it is never produced by approve, but a
loan found in it is treated exactly like "borrowed" for return, delete and
reminders. Stock moves only on approve (one unit out) and on return or on
deleting an active loan (one unit back).
"""
import logging
from datetime import timedelta
from typing import List, Optional

from bson import ObjectId
from pymongo import ReturnDocument

from access import AuthUser, require
from database import create_document, parse_object_id, populate, utcnow
from errors import AlreadyProcessed, NotFound, OutOfStock, TerminalState, ValidationError
from ledger import Inventory
from schemas import Lending

logger = logging.getLogger(__name__)

LENDING_DAYS = 14

REQUESTED = "requested"
APPROVED = "approved"
BORROWED = "borrowed"
RETURNED = "returned"
CANCELLED = "cancelled"

LENDING_STATUSES = (REQUESTED, APPROVED, BORROWED, RETURNED, CANCELLED)
ACTIVE_STATUSES = (BORROWED, APPROVED)
OPEN_STATUSES = (REQUESTED, APPROVED, BORROWED)

# action -> (allowed sources, target, rejection)
TRANSITIONS = {
    "approve": ((REQUESTED,), BORROWED, (AlreadyProcessed, "Lending already processed")),
    "return": (ACTIVE_STATUSES, RETURNED, (TerminalState, "Lending not currently active")),
    "cancel": ((REQUESTED,), CANCELLED, (TerminalState, "Only requested lendings can be cancelled")),
}


def next_status(current: str, action: str) -> str:
    """Return the status ``action`` leads to from ``current`` or raise the rejection."""
    try:
        sources, target, (error, message) = TRANSITIONS[action]
    except KeyError:
        raise ValidationError(f"Unknown lending action: {action}")
    if current not in sources:
        raise error(message)
    return target


class LendingService:
    def __init__(self, db, inventory: Optional[Inventory] = None):
        self.db = db
        self.lendings = db["lending"]
        self.inventory = inventory or Inventory(db)

    def _get(self, lending_id) -> dict:
        oid = parse_object_id(lending_id, "lending id")
        lending = self.lendings.find_one({"_id": oid})
        if not lending:
            raise NotFound("Lending record not found")
        return lending

    def _with_book(self, lendings: List[dict], fields=("title", "author", "cover_image")) -> List[dict]:
        return populate(self.db, lendings, "book_id", "book", list(fields), "book")

    # ---------------- queries ----------------

    def find_open(self, user_id: str, book_id: str) -> Optional[dict]:
        return self.lendings.find_one({
            "user_id": user_id,
            "book_id": book_id,
            "status": {"$in": list(OPEN_STATUSES)},
        })

    def list_for_user(self, user: AuthUser) -> List[dict]:
        lendings = list(self.lendings.find({"user_id": user.id}).sort("created_at", -1))
        return self._with_book(lendings)

    def list_all(self, admin: AuthUser) -> List[dict]:
        require(admin, None, "list_all", "Admin access required")
        lendings = list(self.lendings.find({}).sort("created_at", -1))
        self._with_book(lendings, ("title", "author"))
        return populate(self.db, lendings, "user_id", "user", ["name", "email"], "user")

    def get(self, lending_id, actor: AuthUser) -> dict:
        lending = self._get(lending_id)
        require(actor, lending, "view", "Not authorized to view this lending")
        self._with_book([lending])
        populate(self.db, [lending], "user_id", "user", ["name", "email"], "user")
        return lending

    # ---------------- transitions ----------------

    def create(self, user: AuthUser, book_id) -> dict:
        if not book_id:
            raise ValidationError("bookId is required")
        oid = parse_object_id(book_id, "bookId")
        book = self.db["book"].find_one({"_id": oid}, {"title": 1, "stock": 1})
        if not book:
            raise NotFound("Book not found")
        if (book.get("stock") or 0) <= 0:
            raise OutOfStock("Book is currently unavailable for lending")

        lending = Lending(
            user_id=user.id,
            book_id=str(oid),
            due_date=utcnow() + timedelta(days=LENDING_DAYS),
        )
        lending_id = create_document("lending", lending, database=self.db)
        logger.info("Lending %s requested by %s for %s", lending_id, user.id, book.get("title"))
        return self.lendings.find_one({"_id": ObjectId(lending_id)})

    def approve(self, lending_id, admin: AuthUser) -> dict:
        require(admin, None, "approve", "Admin access required")
        lending = self._get(lending_id)
        target = next_status(lending["status"], "approve")

        self.inventory.reserve_for_lending(lending["book_id"])
        updated = self.lendings.find_one_and_update(
            {"_id": lending["_id"], "status": REQUESTED},
            {"$set": {"status": target, "approved_by": admin.id, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            # another approval won the race after our reservation
            self.inventory.undo_lending_reservation(lending["book_id"])
            raise AlreadyProcessed("Lending already processed")

        logger.info("Lending %s approved by %s", lending["_id"], admin.id)
        return updated

    def return_(self, lending_id, actor: AuthUser) -> dict:
        lending = self._get(lending_id)
        require(actor, lending, "return", "Not permitted to close this lending")
        target = next_status(lending["status"], "return")

        now = utcnow()
        updated = self.lendings.find_one_and_update(
            {"_id": lending["_id"], "status": {"$in": list(ACTIVE_STATUSES)}},
            {"$set": {"status": target, "returned_at": now, "reminder_sent": False, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise TerminalState("Lending not currently active")

        self.inventory.release_lending(lending["book_id"])
        logger.info("Lending %s returned", lending["_id"])
        return updated

    def cancel(self, lending_id, actor: AuthUser) -> dict:
        lending = self._get(lending_id)
        require(actor, lending, "cancel", "Not permitted to cancel this lending")
        target = next_status(lending["status"], "cancel")

        updated = self.lendings.find_one_and_update(
            {"_id": lending["_id"], "status": REQUESTED},
            {
                "$set": {"status": target, "reminder_sent": False, "updated_at": utcnow()},
                "$unset": {"returned_at": ""},
            },
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise TerminalState("Only requested lendings can be cancelled")
        logger.info("Lending %s cancelled", lending["_id"])
        return updated

    def delete(self, lending_id, admin: AuthUser) -> dict:
        require(admin, None, "delete", "Admin access required")
        oid = parse_object_id(lending_id, "lending id")
        deleted = self.lendings.find_one_and_delete({"_id": oid})
        if deleted is None:
            raise NotFound("Lending record not found")
        if deleted["status"] in ACTIVE_STATUSES:
            # deleting an active loan counts as its return
            self.inventory.release_lending(deleted["book_id"])
        logger.info("Lending %s deleted (was %s)", oid, deleted["status"])
        return deleted
