import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from access import AuthUser
from ai import get_oracle
from database import create_document, get_db
from schemas import Book, User


class FakeOracle:
    """Scripted stand-in for Gemini: hands out the queued replies in order."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.prompts = []

    def queue(self, *replies):
        self.replies.extend(replies)

    def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        reply = self.replies.pop(0) if self.replies else ""
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def db():
    client = mongomock.MongoClient(tz_aware=True)
    return client["bookstore_test"]


@pytest.fixture
def make_user(db):
    def _make(name="Reader", email=None, role="user"):
        email = email or f"{ObjectId()}@bookstore.io"
        user_id = create_document("user", User(name=name, email=email, password_hash="x", role=role), database=db)
        return AuthUser(id=user_id, email=email, name=name, role=role)
    return _make


@pytest.fixture
def reader(make_user):
    return make_user(name="Ada Reader", email="ada@bookstore.io")


@pytest.fixture
def other_reader(make_user):
    return make_user(name="Ben Reader", email="ben@bookstore.io")


@pytest.fixture
def admin(make_user):
    return make_user(name="Clara Admin", email="clara@bookstore.io", role="admin")


@pytest.fixture
def make_book(db):
    def _make(**overrides):
        data = {"title": "Dune", "author": "Frank Herbert", "genre": "Science Fiction", "price": 10.0, "stock": 3}
        data.update(overrides)
        book_id = create_document("book", Book(**data), database=db)
        return db["book"].find_one({"_id": ObjectId(book_id)})
    return _make


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def client(db, oracle):
    from main import app
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_oracle] = lambda: oracle
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_header():
    from main import create_token

    def _header(user: AuthUser) -> dict:
        return {"Authorization": f"Bearer {create_token({'id': user.id, 'email': user.email})}"}
    return _header
