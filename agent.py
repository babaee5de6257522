"""
Chat agent

The oracle reads a catalog snapshot and answers with a JSON plan naming one
action from a closed vocabulary. The plan is untrusted: the action must be a
known name, parameters are kept only as short plain strings, and every
mutation goes through the same services the HTTP routes use.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import PyMongoError

import accounts
import catalog
from access import AuthUser
from ai import TextOracle
from database import utcnow
from errors import BookstoreError, OutOfStock, Unexpected
from lendings import LendingService

logger = logging.getLogger(__name__)

ACTIONS = ("none", "search_books", "recommend_books", "add_to_wishlist", "request_lending")
MAX_PARAM_LENGTH = 200
SUMMARY_CHARS = 220
SNAPSHOT_SIZE = 5
LOW_STOCK_BELOW = 5

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)


@dataclass
class Plan:
    action: str = "none"
    params: Dict[str, str] = field(default_factory=dict)
    reply: str = ""


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text or "").strip()


def parse_plan(text: str) -> Plan:
    """Turn raw oracle output into a Plan; anything unusable becomes a plain reply."""
    raw = (text or "").strip()
    try:
        data = json.loads(strip_code_fences(raw))
    except ValueError:
        return Plan(reply=raw)
    if not isinstance(data, dict):
        return Plan(reply=raw)

    action = data.get("action")
    if action not in ACTIONS:
        action = "none"

    params = {}
    if isinstance(data.get("params"), dict):
        for key, value in data["params"].items():
            if isinstance(key, str) and isinstance(value, str) and value.strip():
                params[key] = value.strip()[:MAX_PARAM_LENGTH]

    reply = data.get("reply")
    return Plan(action=action, params=params, reply=reply.strip() if isinstance(reply, str) else "")


def summarize_book(book: dict) -> dict:
    summary = book.get("summary") or ""
    if len(summary) > SUMMARY_CHARS:
        summary = summary[:SUMMARY_CHARS] + "…"
    return {
        "id": str(book["_id"]),
        "title": book.get("title"),
        "author": book.get("author"),
        "price": book.get("price"),
        "genre": book.get("genre"),
        "average_rating": book.get("average_rating", 0),
        "stock": book.get("stock", 0),
        "popularity": book.get("popularity") or 0,
        "times_borrowed": book.get("times_borrowed") or 0,
        "times_purchased": book.get("times_purchased") or 0,
        "summary": summary,
    }


def build_catalog_snapshot(db) -> dict:
    books = db["book"]
    popular = books.find({}).sort("popularity", DESCENDING).limit(SNAPSHOT_SIZE)
    recent = books.find({}).sort("created_at", DESCENDING).limit(SNAPSHOT_SIZE)
    low_stock = books.find({"stock": {"$gt": 0, "$lt": LOW_STOCK_BELOW}}).sort("stock", ASCENDING).limit(SNAPSHOT_SIZE)

    genres: Dict[str, dict] = {}
    for book in books.find({}, {"genre": 1, "average_rating": 1, "price": 1, "times_borrowed": 1, "times_purchased": 1}):
        g = genres.setdefault(book.get("genre"), {"books": 0, "rating": 0.0, "price": 0.0, "borrowed": 0, "purchased": 0})
        g["books"] += 1
        g["rating"] += book.get("average_rating") or 0
        g["price"] += book.get("price") or 0
        g["borrowed"] += book.get("times_borrowed") or 0
        g["purchased"] += book.get("times_purchased") or 0
    ranked = sorted(genres.items(), key=lambda kv: (kv[1]["purchased"], kv[1]["borrowed"], kv[1]["books"]), reverse=True)

    return {
        "generated_at": utcnow().isoformat(),
        "popular_books": [summarize_book(b) for b in popular],
        "recent_arrivals": [summarize_book(b) for b in recent],
        "low_stock_highlights": [{"id": str(b["_id"]), "title": b.get("title"), "stock": b.get("stock")} for b in low_stock],
        "top_genres": [
            {
                "genre": genre,
                "books": g["books"],
                "average_rating": round(g["rating"] / g["books"], 2),
                "average_price": round(g["price"] / g["books"], 2),
                "total_borrowed": g["borrowed"],
                "total_purchased": g["purchased"],
            }
            for genre, g in ranked[:SNAPSHOT_SIZE]
        ],
    }


def build_prompt(message: str, user: Optional[AuthUser], snapshot: Optional[dict]) -> str:
    if snapshot:
        catalog_section = f"Catalog snapshot (JSON):\n{json.dumps(snapshot, indent=2)}"
    else:
        catalog_section = "Catalog snapshot is currently unavailable."
    if user:
        user_section = "Signed-in user context: " + json.dumps(
            {"id": user.id, "name": user.name, "email": user.email, "role": user.role})
    else:
        user_section = "The user is browsing anonymously."

    return f'''You are "Chapter & Chill Companion", a proactive assistant for an online bookstore.
You can talk casually, but when you want to take an action you must choose one of the allowed actions.
You have access to real catalog data. Prefer citing the provided data or take an action to fetch more when unsure.
Always respond with JSON matching this shape exactly:
{{
  "action": "none" | "search_books" | "recommend_books" | "add_to_wishlist" | "request_lending",
  "params": {{"<name>": "<string value>"}},
  "reply": "<string>"
}}

Catalog context:
{catalog_section}

User context:
{user_section}

Guidelines:
- Use action "none" when a conversational reply is enough.
- Use "search_books" when the user wants titles by keyword. Include a "query" param.
- Use "recommend_books" for genre or mood suggestions. Optionally send a "genre" param.
- Use "add_to_wishlist" only when the user clearly wants a book saved; include "title".
- Use "request_lending" only when the user wants to borrow a book; include "title".
- Never guess book titles; ask for clarification if unsure.
- Whenever you reference books, ground your answer in the catalog snapshot or data returned by actions.
- The "reply" should sound natural and reference what you plan to do.

User message:
"""{message}"""'''


class ChatAgent:
    def __init__(self, db, oracle: TextOracle, lendings: Optional[LendingService] = None):
        self.db = db
        self.oracle = oracle
        self.lendings = lendings or LendingService(db)
        self.handlers: Dict[str, Callable[[Plan, Optional[AuthUser]], dict]] = {
            "none": self.reply_only,
            "search_books": self.search_books,
            "recommend_books": self.recommend_books,
            "add_to_wishlist": self.add_to_wishlist,
            "request_lending": self.request_lending,
        }

    def run(self, message: str, user: Optional[AuthUser] = None) -> dict:
        snapshot = None
        try:
            snapshot = build_catalog_snapshot(self.db)
        except PyMongoError:
            logger.exception("Failed to build catalog snapshot for agent prompt")

        # the oracle is called before any mutation; if it fails nothing has changed
        try:
            raw = self.oracle.complete(build_prompt(message, user, snapshot))
        except Exception as e:
            logger.exception("Chat oracle failed")
            raise Unexpected("Failed to process chat request", error=str(e)[:200])
        plan = parse_plan(raw)
        handler = self.handlers[plan.action]
        try:
            outcome = handler(plan, user)
        except (BookstoreError, PyMongoError) as e:
            logger.exception("Agent action %s failed", plan.action)
            return {
                "reply": "Something went wrong while completing that request. Please try again in a moment.",
                "action": plan.action,
                "data": {"error": getattr(e, "message", str(e))},
                "requires_auth": False,
            }
        return {
            "reply": outcome.get("reply", ""),
            "action": outcome.get("action", plan.action),
            "data": outcome.get("data"),
            "requires_auth": outcome.get("requires_auth", False),
        }

    # ---------------- handlers ----------------

    def reply_only(self, plan: Plan, user: Optional[AuthUser]) -> dict:
        return {"action": "none", "reply": plan.reply}

    def search_books(self, plan: Plan, user: Optional[AuthUser]) -> dict:
        query = plan.params.get("query")
        books = catalog.search_titles(self.db, query)
        if plan.reply:
            reply = plan.reply
        elif not query:
            reply = ("Here are some of the most popular books in the store right now:" if books
                     else "The catalog looks empty at the moment.")
        else:
            reply = (f'Here are some matches for "{query}":' if books
                     else f'I could not find any books that match "{query}".')
        return {"action": "search_books", "reply": reply, "data": {"books": [summarize_book(b) for b in books]}}

    def recommend_books(self, plan: Plan, user: Optional[AuthUser]) -> dict:
        genre = plan.params.get("genre")
        books = catalog.by_genre(self.db, genre)
        reply = plan.reply or (f"Here are a few {genre or 'popular'} picks you might enjoy:" if books
                               else "I could not find any recommendations right now.")
        return {"action": "recommend_books", "reply": reply, "data": {"books": [summarize_book(b) for b in books]}}

    def add_to_wishlist(self, plan: Plan, user: Optional[AuthUser]) -> dict:
        if user is None:
            return {"action": "add_to_wishlist", "reply": "Please sign in so I can update your wishlist.",
                    "requires_auth": True}
        book = catalog.find_book(self.db, plan.params.get("book_id") or plan.params.get("bookId"),
                                 plan.params.get("title"))
        if not book:
            return {"action": "add_to_wishlist",
                    "reply": "I couldn't locate that book. Could you share the exact title?"}

        added = accounts.add_to_wishlist(self.db, user, str(book["_id"]))
        return {
            "action": "add_to_wishlist",
            "reply": plan.reply or f"{book['title']} is on your wishlist now!",
            "data": {"book": summarize_book(book), "already_listed": not added},
        }

    def request_lending(self, plan: Plan, user: Optional[AuthUser]) -> dict:
        if user is None:
            return {"action": "request_lending", "reply": "Please sign in so I can request that lending for you.",
                    "requires_auth": True}
        book = catalog.find_book(self.db, plan.params.get("book_id") or plan.params.get("bookId"),
                                 plan.params.get("title"))
        if not book:
            return {"action": "request_lending",
                    "reply": "I couldn't find that book in the catalog to request a lending."}

        existing = self.lendings.find_open(user.id, str(book["_id"]))
        if existing:
            return {
                "action": "request_lending",
                "reply": plan.reply or "You already have an active request for this title.",
                "data": {"lending_id": str(existing["_id"]), "status": existing["status"]},
            }
        try:
            lending = self.lendings.create(user, str(book["_id"]))
        except OutOfStock:
            return {"action": "request_lending", "reply": f"{book['title']} is currently unavailable for lending."}
        return {
            "action": "request_lending",
            "reply": plan.reply or f"All set! I requested a lending for {book['title']}.",
            "data": {"lending_id": str(lending["_id"]), "due_date": lending["due_date"]},
        }
