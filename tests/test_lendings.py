from datetime import timedelta

import pytest
from bson import ObjectId

from database import utcnow
from errors import AlreadyProcessed, Forbidden, NotFound, OutOfStock, TerminalState, ValidationError
from ledger import Inventory
from lendings import (
    ACTIVE_STATUSES,
    BORROWED,
    CANCELLED,
    LENDING_DAYS,
    REQUESTED,
    RETURNED,
    LendingService,
    next_status,
)


@pytest.fixture
def service(db):
    return LendingService(db)


def stock_of(db, book):
    return db["book"].find_one({"_id": book["_id"]})["stock"]


@pytest.mark.parametrize("current,action,expected", [
    (REQUESTED, "approve", BORROWED),
    (BORROWED, "return", RETURNED),
    ("approved", "return", RETURNED),
    (REQUESTED, "cancel", CANCELLED),
])
def test_next_status_allowed(current, action, expected):
    assert next_status(current, action) == expected


@pytest.mark.parametrize("current,action,error", [
    (BORROWED, "approve", AlreadyProcessed),
    (RETURNED, "approve", AlreadyProcessed),
    (REQUESTED, "return", TerminalState),
    (RETURNED, "return", TerminalState),
    (BORROWED, "cancel", TerminalState),
    (CANCELLED, "cancel", TerminalState),
])
def test_next_status_rejected(current, action, error):
    with pytest.raises(error):
        next_status(current, action)


def test_create_request_does_not_touch_stock(db, service, reader, make_book):
    book = make_book(stock=1)
    lending = service.create(reader, str(book["_id"]))

    assert lending["status"] == REQUESTED
    assert lending["user_id"] == reader.id
    assert lending["book_id"] == str(book["_id"])
    assert lending["reminder_sent"] is False
    due_in = lending["due_date"] - utcnow()
    assert timedelta(days=LENDING_DAYS - 1) < due_in <= timedelta(days=LENDING_DAYS)
    assert stock_of(db, book) == 1


def test_create_validations(service, reader, make_book):
    with pytest.raises(ValidationError, match="bookId is required"):
        service.create(reader, None)
    with pytest.raises(ValidationError):
        service.create(reader, "not-an-id")
    with pytest.raises(NotFound):
        service.create(reader, str(ObjectId()))
    with pytest.raises(OutOfStock):
        service.create(reader, str(make_book(stock=0)["_id"]))


def test_approve_borrows_one_copy(db, service, reader, admin, make_book):
    book = make_book(stock=1)
    lending = service.create(reader, str(book["_id"]))

    approved = service.approve(str(lending["_id"]), admin)

    stored = db["book"].find_one({"_id": book["_id"]})
    assert approved["status"] == BORROWED
    assert approved["approved_by"] == admin.id
    assert stored["stock"] == 0
    assert stored["times_borrowed"] == 1
    assert stored["popularity"] == 1


def test_two_requests_for_last_copy(db, service, reader, other_reader, admin, make_book):
    book = make_book(stock=1)
    first = service.create(reader, str(book["_id"]))
    second = service.create(other_reader, str(book["_id"]))

    service.approve(str(first["_id"]), admin)
    with pytest.raises(OutOfStock):
        service.approve(str(second["_id"]), admin)

    assert stock_of(db, book) == 0
    assert db["lending"].find_one({"_id": second["_id"]})["status"] == REQUESTED


def test_approve_twice_moves_stock_once(db, service, reader, admin, make_book):
    book = make_book(stock=2)
    lending = service.create(reader, str(book["_id"]))
    service.approve(str(lending["_id"]), admin)

    with pytest.raises(AlreadyProcessed):
        service.approve(str(lending["_id"]), admin)
    assert stock_of(db, book) == 1


def test_lost_approval_race_undoes_reservation(db, service, reader, admin, make_book, monkeypatch):
    book = make_book(stock=2)
    lending = service.create(reader, str(book["_id"]))
    stale = dict(lending)
    # another admin approves after we read the request
    db["lending"].update_one({"_id": lending["_id"]}, {"$set": {"status": BORROWED}})
    monkeypatch.setattr(service, "_get", lambda lending_id: stale)

    with pytest.raises(AlreadyProcessed):
        service.approve(str(lending["_id"]), admin)

    stored = db["book"].find_one({"_id": book["_id"]})
    assert stored["stock"] == 2
    assert stored["times_borrowed"] == 0
    assert stored["popularity"] == 0


def test_only_admin_approves(service, reader, make_book):
    lending = service.create(reader, str(make_book()["_id"]))
    with pytest.raises(Forbidden):
        service.approve(str(lending["_id"]), reader)


def test_return_gives_copy_back_once(db, service, reader, admin, make_book):
    book = make_book(stock=1)
    lending = service.create(reader, str(book["_id"]))
    service.approve(str(lending["_id"]), admin)

    returned = service.return_(str(lending["_id"]), reader)
    assert returned["status"] == RETURNED
    assert returned["returned_at"] is not None

    with pytest.raises(TerminalState):
        service.return_(str(lending["_id"]), reader)

    stored = db["book"].find_one({"_id": book["_id"]})
    assert stored["stock"] == 1
    assert stored["times_borrowed"] == 1


def test_return_of_requested_lending_rejected(service, reader, make_book):
    lending = service.create(reader, str(make_book()["_id"]))
    with pytest.raises(TerminalState, match="not currently active"):
        service.return_(str(lending["_id"]), reader)


def test_legacy_approved_lending_can_be_returned(db, service, reader, make_book):
    book = make_book(stock=0)
    lending_id = db["lending"].insert_one({
        "user_id": reader.id, "book_id": str(book["_id"]), "status": "approved",
        "due_date": utcnow(), "reminder_sent": False,
    }).inserted_id

    assert service.return_(str(lending_id), reader)["status"] == RETURNED
    assert stock_of(db, book) == 1


def test_other_user_cannot_return_or_view(service, reader, other_reader, admin, make_book):
    lending = service.create(reader, str(make_book()["_id"]))
    service.approve(str(lending["_id"]), admin)

    with pytest.raises(Forbidden):
        service.return_(str(lending["_id"]), other_reader)
    with pytest.raises(Forbidden):
        service.get(str(lending["_id"]), other_reader)
    assert service.get(str(lending["_id"]), admin)["user"]["name"] == "Ada Reader"


def test_cancel_requested_never_moves_stock(db, service, reader, make_book):
    book = make_book(stock=1)
    lending = service.create(reader, str(book["_id"]))

    assert service.cancel(str(lending["_id"]), reader)["status"] == CANCELLED
    assert stock_of(db, book) == 1


def test_cancel_borrowed_rejected(db, service, reader, admin, make_book):
    book = make_book(stock=1)
    lending = service.create(reader, str(book["_id"]))
    service.approve(str(lending["_id"]), admin)

    with pytest.raises(TerminalState):
        service.cancel(str(lending["_id"]), reader)
    assert stock_of(db, book) == 0


def test_delete_active_lending_releases_copy(db, service, reader, admin, make_book):
    book = make_book(stock=1)
    lending = service.create(reader, str(book["_id"]))
    service.approve(str(lending["_id"]), admin)

    deleted = service.delete(str(lending["_id"]), admin)
    assert deleted["status"] in ACTIVE_STATUSES
    assert stock_of(db, book) == 1
    with pytest.raises(NotFound):
        service.delete(str(lending["_id"]), admin)


def test_delete_requested_lending_leaves_stock(db, service, reader, admin, make_book):
    book = make_book(stock=1)
    lending = service.create(reader, str(book["_id"]))
    service.delete(str(lending["_id"]), admin)
    assert stock_of(db, book) == 1


def test_listing(service, reader, other_reader, admin, make_book):
    book = make_book(title="Emma")
    service.create(reader, str(book["_id"]))
    service.create(other_reader, str(book["_id"]))

    mine = service.list_for_user(reader)
    assert len(mine) == 1
    assert mine[0]["book"]["title"] == "Emma"

    everyone = service.list_all(admin)
    assert {lending["user"]["email"] for lending in everyone} == {"ada@bookstore.io", "ben@bookstore.io"}
    with pytest.raises(Forbidden):
        service.list_all(reader)


def test_return_and_delete_give_back_while_book_is_busy(db, service, reader, admin, make_book, monkeypatch):
    book = make_book(stock=2)
    returned = service.create(reader, str(book["_id"]))
    deleted = service.create(reader, str(book["_id"]))
    service.approve(str(returned["_id"]), admin)
    service.approve(str(deleted["_id"]), admin)
    original_load = Inventory._load

    def busy_load(self, oid):
        snapshot = original_load(self, oid)
        db["book"].update_one({"_id": oid}, {"$inc": {"popularity": 1}})
        return snapshot

    monkeypatch.setattr(Inventory, "_load", busy_load)

    assert service.return_(str(returned["_id"]), reader)["status"] == RETURNED
    service.delete(str(deleted["_id"]), admin)
    assert stock_of(db, book) == 2
