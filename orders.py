"""
Order state machine

    processing -> shipped | completed | cancelled
    shipped    -> completed | cancelled
    completed, cancelled: terminal

Checkout reserves stock for every line; every path into "cancelled" and every
deletion of a processing/shipped order gives that stock back exactly once.
"""
import logging
import uuid
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from access import AuthUser, require
from database import create_document, parse_object_id, populate, utcnow
from errors import (
    BookstoreError,
    Conflict,
    InsufficientStock,
    NotFound,
    TerminalState,
    ValidationError,
)
from ledger import Inventory
from schemas import Order, OrderItem

logger = logging.getLogger(__name__)

PROCESSING = "processing"
SHIPPED = "shipped"
COMPLETED = "completed"
CANCELLED = "cancelled"

ORDER_STATUSES = (PROCESSING, SHIPPED, COMPLETED, CANCELLED)
PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded")

# statuses in which the order still holds its reserved stock
HOLDING_STATUSES = (PROCESSING, SHIPPED)

TRANSITIONS = {
    PROCESSING: {SHIPPED, COMPLETED, CANCELLED},
    SHIPPED: {COMPLETED, CANCELLED},
    COMPLETED: set(),
    CANCELLED: set(),
}

CODE_ATTEMPTS = 5


def check_transition(current: str, target: str) -> None:
    """Raise TerminalState unless ``current -> target`` is allowed. Staying put is always allowed."""
    if target not in ORDER_STATUSES:
        raise ValidationError("Invalid status value")
    if target == current:
        return
    if target in TRANSITIONS.get(current, set()):
        return
    if current == CANCELLED:
        raise TerminalState("Cancelled orders cannot be reopened")
    if current == COMPLETED and target == CANCELLED:
        raise TerminalState("Completed orders cannot be cancelled")
    if current == COMPLETED:
        raise TerminalState("Completed orders cannot change status")
    raise TerminalState(f"Cannot move order from {current} to {target}")


def new_confirmation_code() -> str:
    return uuid.uuid4().hex[:8].upper()


def subtotal_of(items: Iterable[dict]) -> float:
    return round(sum(item["quantity"] * item["price"] for item in items), 2)


class OrderService:
    def __init__(self, db, inventory: Optional[Inventory] = None):
        self.db = db
        self.orders = db["order"]
        self.inventory = inventory or Inventory(db)

    def _get(self, order_id) -> dict:
        oid = parse_object_id(order_id, "order id")
        order = self.orders.find_one({"_id": oid})
        if not order:
            raise NotFound("Order not found")
        return order

    def restore_inventory(self, order: dict) -> None:
        for item in order.get("items", []):
            book_id = item.get("book_id")
            if not book_id or not ObjectId.is_valid(str(book_id)):
                continue
            self.inventory.release_purchase(book_id, item["quantity"])
        logger.info("Inventory restored for order %s", order.get("_id"))

    # ---------------- queries ----------------

    def list_for_user(self, user: AuthUser) -> List[dict]:
        return list(self.orders.find({"user_id": user.id}).sort("created_at", -1))

    def list_all(self, admin: AuthUser) -> List[dict]:
        require(admin, None, "list_all", "Admin access required")
        orders = list(self.orders.find({}).sort("created_at", -1))
        return populate(self.db, orders, "user_id", "user", ["name", "email"], "user")

    def get(self, order_id, actor: AuthUser) -> dict:
        order = self._get(order_id)
        require(actor, order, "view", "Not authorized to view this order")
        populate(self.db, order["items"], "book_id", "book", ["title", "author"], "book")
        return order

    # ---------------- checkout ----------------

    def _validate_cart(self, items) -> "OrderedDict[str, Tuple[int, dict]]":
        if not isinstance(items, list) or not items:
            raise ValidationError("Cart items are required")

        wanted: "OrderedDict[str, int]" = OrderedDict()
        for item in items:
            book_id = item.get("book_id")
            quantity = item.get("quantity")
            if not isinstance(book_id, str) or not ObjectId.is_valid(book_id):
                raise ValidationError(f"Invalid bookId: {book_id}")
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
                raise ValidationError("Quantity must be a positive number")
            wanted[book_id] = wanted.get(book_id, 0) + quantity

        validated: "OrderedDict[str, Tuple[int, dict]]" = OrderedDict()
        for book_id, quantity in wanted.items():
            book = self.db["book"].find_one({"_id": ObjectId(book_id)})
            if not book:
                raise NotFound(f"Book {book_id} not found")
            if (book.get("stock") or 0) < quantity:
                raise InsufficientStock(f"Insufficient stock for {book['title']}")
            validated[book_id] = (quantity, book)
        return validated

    def create(self, user: AuthUser, items: List[Dict]) -> dict:
        """Check out a cart of ``{"book_id", "quantity"}`` lines.

        Every line is validated before any stock moves. If a reservation still
        fails (another buyer got there first) the lines already reserved are
        released before the error is raised, so a rejected checkout leaves
        inventory untouched.
        """
        validated = self._validate_cart(items)
        code = self._unique_code()

        reserved: List[Tuple[str, int]] = []
        order_items: List[dict] = []
        try:
            for book_id, (quantity, _) in validated.items():
                book = self.inventory.reserve_for_purchase(book_id, quantity)
                reserved.append((book_id, quantity))
                order_items.append(OrderItem(
                    book_id=book_id,
                    title=book["title"],
                    quantity=quantity,
                    price=book["price"],
                ).model_dump())

            order = Order(
                user_id=user.id,
                items=order_items,
                subtotal=subtotal_of(order_items),
                payment_status="paid",
                status=PROCESSING,
                confirmation_code=code,
            )
            order_id = create_document("order", order, database=self.db)
        except (BookstoreError, PyMongoError):
            for book_id, quantity in reserved:
                self.inventory.release_purchase(book_id, quantity)
            raise

        logger.info("Order %s created for %s (%d lines, subtotal %.2f)",
                    order_id, user.id, len(order_items), order.subtotal)
        return self.orders.find_one({"_id": ObjectId(order_id)})

    def _unique_code(self) -> str:
        for _ in range(CODE_ATTEMPTS):
            code = new_confirmation_code()
            if not self.orders.find_one({"confirmation_code": code}, {"_id": 1}):
                return code
        raise Conflict("Could not allocate a confirmation code, please retry")

    # ---------------- transitions ----------------

    def cancel(self, order_id, actor: AuthUser) -> dict:
        order = self._get(order_id)
        require(actor, order, "cancel", "Not authorized to cancel this order")

        if order["status"] == CANCELLED:
            raise TerminalState("Order already cancelled")
        if order["status"] == SHIPPED:
            raise TerminalState("Shipped orders cannot be cancelled")
        if order["status"] == COMPLETED:
            raise TerminalState("Completed orders cannot be cancelled")

        changes = {"status": CANCELLED, "updated_at": utcnow()}
        if order.get("payment_status") == "paid":
            changes["payment_status"] = "refunded"
        updated = self._swap_status(order, changes)
        self.restore_inventory(order)
        logger.info("Order %s cancelled by %s", order["_id"], actor.id)
        return updated

    def update_status(self, order_id, admin: AuthUser, status: Optional[str] = None,
                      payment_status: Optional[str] = None) -> dict:
        require(admin, None, "update_status", "Admin access required")
        if not status and not payment_status:
            raise ValidationError("status or paymentStatus is required")
        if status is not None and not isinstance(status, str):
            raise ValidationError("status must be a string")
        if payment_status is not None and not isinstance(payment_status, str):
            raise ValidationError("paymentStatus must be a string")

        order = self._get(order_id)
        if status and status not in ORDER_STATUSES:
            raise ValidationError("Invalid status value")
        if payment_status and payment_status not in PAYMENT_STATUSES:
            raise ValidationError("Invalid payment status value")

        previous = order["status"]
        if status:
            check_transition(previous, status)

        changes = {"updated_at": utcnow()}
        if status:
            changes["status"] = status
        if payment_status:
            changes["payment_status"] = payment_status
        updated = self._swap_status(order, changes)

        if status == CANCELLED and previous != CANCELLED:
            self.restore_inventory(order)
        logger.info("Order %s updated: status %s -> %s, payment %s",
                    order["_id"], previous, updated["status"], updated.get("payment_status"))
        return updated

    def delete(self, order_id, admin: AuthUser) -> dict:
        require(admin, None, "delete", "Admin access required")
        oid = parse_object_id(order_id, "order id")
        deleted = self.orders.find_one_and_delete({"_id": oid})
        if deleted is None:
            raise NotFound("Order not found")
        if deleted["status"] in HOLDING_STATUSES:
            self.restore_inventory(deleted)
        logger.info("Order %s deleted (was %s)", oid, deleted["status"])
        return deleted

    def _swap_status(self, order: dict, changes: dict) -> dict:
        # the write only lands if nobody moved the order since we read it
        updated = self.orders.find_one_and_update(
            {"_id": order["_id"], "status": order["status"]},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise Conflict("Order was modified concurrently, please retry")
        return updated
