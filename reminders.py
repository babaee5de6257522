"""
Lending reminders

A periodic scan flags borrowed loans that fall due within the next day and
logs a reminder for each. The flag is written conditionally, so overlapping
scans remind a borrower once.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from bson import ObjectId
from pymongo.errors import PyMongoError

from database import utcnow
from lendings import BORROWED

logger = logging.getLogger(__name__)

REMINDER_INTERVAL_SECONDS = 60 * 60
REMINDER_WINDOW = timedelta(hours=24)


def scan_due_lendings(db, now: Optional[datetime] = None) -> int:
    """Flag loans due within REMINDER_WINDOW; returns how many were reminded."""
    now = now or utcnow()
    due = db["lending"].find({
        "status": BORROWED,
        "reminder_sent": False,
        "due_date": {"$gte": now, "$lte": now + REMINDER_WINDOW},
    })

    reminded = 0
    for lending in due:
        result = db["lending"].update_one(
            {"_id": lending["_id"], "reminder_sent": False},
            {"$set": {"reminder_sent": True, "updated_at": utcnow()}},
        )
        if not result.modified_count:
            continue
        reminded += 1
        user = _lookup(db, "user", lending.get("user_id"), {"name": 1, "email": 1})
        book = _lookup(db, "book", lending.get("book_id"), {"title": 1})
        logger.info("Reminder: %s (%s) should return book %s by %s",
                    user.get("name", "unknown user"), user.get("email", "-"),
                    book.get("title", "unknown book"), lending["due_date"].isoformat())
    return reminded


def _lookup(db, collection_name: str, ref, projection) -> dict:
    if not ref or not ObjectId.is_valid(str(ref)):
        return {}
    return db[collection_name].find_one({"_id": ObjectId(str(ref))}, projection) or {}


async def run_reminder_loop(db, interval: float = REMINDER_INTERVAL_SECONDS) -> None:
    logger.info("Lending reminder job started (every %ss)", interval)
    while True:
        await asyncio.sleep(interval)
        try:
            count = await asyncio.to_thread(scan_due_lendings, db)
        except PyMongoError:
            logger.exception("Failed to process lending reminders")
            continue
        if count:
            logger.info("Sent %d lending reminders", count)
