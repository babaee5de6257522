import pytest
from bson import ObjectId

import ledger
from errors import InsufficientStock, NotFound, OutOfStock, Unexpected, ValidationError
from ledger import Inventory


def counters(book):
    return {field: book.get(field, 0) for field in ledger.COUNTER_FIELDS}


def test_reserve_for_purchase_moves_stock_into_demand():
    book = {"title": "Dune", "stock": 3, "times_purchased": 1, "popularity": 4, "times_borrowed": 2}
    updated = ledger.reserve_for_purchase(book, 2)
    assert counters(updated) == {"stock": 1, "times_purchased": 3, "times_borrowed": 2, "popularity": 6}
    assert book["stock"] == 3


def test_reserve_for_purchase_rejects_more_than_stock():
    with pytest.raises(InsufficientStock, match="Insufficient stock for Dune"):
        ledger.reserve_for_purchase({"title": "Dune", "stock": 1}, 2)


@pytest.mark.parametrize("quantity", [0, -1, True, 1.5, "2"])
def test_quantity_must_be_positive_integer(quantity):
    with pytest.raises(ValidationError):
        ledger.reserve_for_purchase({"title": "Dune", "stock": 10}, quantity)


def test_release_purchase_undoes_reserve():
    book = {"title": "Dune", "stock": 5, "times_purchased": 0, "popularity": 0, "times_borrowed": 0}
    assert counters(ledger.release_purchase(ledger.reserve_for_purchase(book, 3), 3)) == counters(book)


def test_release_purchase_floors_demand_at_zero():
    updated = ledger.release_purchase({"stock": 0, "times_purchased": 1, "popularity": 0}, 3)
    assert updated["stock"] == 3
    assert updated["times_purchased"] == 0
    assert updated["popularity"] == 0


def test_lending_reserve_and_release_are_asymmetric():
    book = {"stock": 1, "times_borrowed": 0, "popularity": 0}
    borrowed = ledger.reserve_for_lending(book)
    assert counters(borrowed) == {"stock": 0, "times_purchased": 0, "times_borrowed": 1, "popularity": 1}

    returned = ledger.release_lending(borrowed)
    assert returned["stock"] == 1
    assert returned["times_borrowed"] == 1
    assert returned["popularity"] == 1


def test_reserve_for_lending_out_of_stock():
    with pytest.raises(OutOfStock):
        ledger.reserve_for_lending({"stock": 0})


def test_undo_lending_reservation_is_exact_inverse():
    book = {"stock": 2, "times_borrowed": 4, "popularity": 7, "times_purchased": 0}
    assert counters(ledger.undo_lending_reservation(ledger.reserve_for_lending(book))) == counters(book)


# ---------------- persisted ----------------

def test_inventory_persists_adjustment(db, make_book):
    book = make_book(stock=2)
    result = Inventory(db).reserve_for_purchase(book["_id"], 2)

    stored = db["book"].find_one({"_id": book["_id"]})
    assert result["stock"] == 0
    assert stored["stock"] == 0
    assert stored["times_purchased"] == 2
    assert stored["popularity"] == 2


def test_inventory_failed_reserve_leaves_book_untouched(db, make_book):
    book = make_book(stock=1)
    with pytest.raises(InsufficientStock):
        Inventory(db).reserve_for_purchase(book["_id"], 2)
    assert counters(db["book"].find_one({"_id": book["_id"]})) == counters(book)


def test_inventory_handles_documents_without_counters(db):
    book_id = db["book"].insert_one({"title": "Old import", "stock": 1}).inserted_id
    Inventory(db).reserve_for_lending(book_id)
    stored = db["book"].find_one({"_id": book_id})
    assert stored["stock"] == 0
    assert stored["times_borrowed"] == 1
    assert stored["popularity"] == 1


def test_inventory_missing_book(db):
    inventory = Inventory(db)
    with pytest.raises(NotFound):
        inventory.reserve_for_lending(ObjectId())
    assert inventory.release_purchase(ObjectId(), 1) is None


def test_inventory_retries_after_concurrent_write(db, make_book, monkeypatch):
    book = make_book(stock=2)
    original_load = Inventory._load
    raced = []

    def racing_load(self, oid):
        snapshot = original_load(self, oid)
        if not raced:
            raced.append(oid)
            # a competing buyer takes one copy between our read and our write
            db["book"].update_one({"_id": oid}, {"$inc": {"stock": -1, "times_purchased": 1, "popularity": 1}})
        return snapshot

    monkeypatch.setattr(Inventory, "_load", racing_load)
    Inventory(db).reserve_for_purchase(book["_id"], 1)

    stored = db["book"].find_one({"_id": book["_id"]})
    assert stored["stock"] == 0
    assert stored["times_purchased"] == 2


def test_inventory_never_oversells_under_contention(db, make_book, monkeypatch):
    book = make_book(stock=1)
    original_load = Inventory._load

    def racing_load(self, oid):
        snapshot = original_load(self, oid)
        db["book"].update_one({"_id": oid, "stock": {"$gt": 0}}, {"$inc": {"stock": -1}})
        return snapshot

    monkeypatch.setattr(Inventory, "_load", racing_load)
    with pytest.raises(InsufficientStock):
        Inventory(db).reserve_for_purchase(book["_id"], 1)
    assert db["book"].find_one({"_id": book["_id"]})["stock"] == 0


def test_inventory_gives_up_after_max_attempts(db, make_book, monkeypatch):
    book = make_book(stock=10)
    original_load = Inventory._load

    def racing_load(self, oid):
        snapshot = original_load(self, oid)
        db["book"].update_one({"_id": oid}, {"$inc": {"popularity": 1}})
        return snapshot

    monkeypatch.setattr(Inventory, "_load", racing_load)
    with pytest.raises(Unexpected):
        Inventory(db, max_attempts=2).reserve_for_purchase(book["_id"], 1)
    assert db["book"].find_one({"_id": book["_id"]})["stock"] == 10


def test_releases_fill_in_missing_counters(db):
    book_id = db["book"].insert_one({"title": "Old import", "stock": 0}).inserted_id
    inventory = Inventory(db)

    inventory.release_purchase(book_id, 2)
    stored = db["book"].find_one({"_id": book_id})
    assert stored["stock"] == 2
    assert stored["times_purchased"] == 0
    assert stored["popularity"] == 0

    inventory.undo_lending_reservation(book_id)
    stored = db["book"].find_one({"_id": book_id})
    assert stored["stock"] == 3
    assert stored["times_borrowed"] == 0


def test_releases_do_not_depend_on_a_fresh_read(db, make_book, monkeypatch):
    book = make_book(stock=0, times_purchased=2, popularity=2)
    original_load = Inventory._load

    def busy_load(self, oid):
        snapshot = original_load(self, oid)
        db["book"].update_one({"_id": oid}, {"$inc": {"popularity": 1}})
        return snapshot

    monkeypatch.setattr(Inventory, "_load", busy_load)
    inventory = Inventory(db, max_attempts=2)
    inventory.release_purchase(book["_id"], 2)
    inventory.release_lending(book["_id"])

    stored = db["book"].find_one({"_id": book["_id"]})
    assert stored["stock"] == 3
    assert stored["times_purchased"] == 0
    assert stored["popularity"] == 0
