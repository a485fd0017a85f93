import os
import tempfile

os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="school-sales-uploads-")
os.environ["JWT_SECRET"] = "test-secret"
os.environ["REMINDER_SCHEDULER_ENABLED"] = "false"
os.environ.pop("FIREBASE_SERVICE_ACCOUNT_PATH", None)

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from database import create_document, ensure_indexes, get_db, utcnow
from main import app
from notifications import get_messenger
from security import create_access_token, hash_password
from users import empty_order_summary

PASSWORD = "secret123"
PASSWORD_HASH = hash_password(PASSWORD)


class FakeMessenger:
    """Records pushes; tokens starting with ``bad`` fail."""

    def __init__(self):
        self.sent = []

    def send(self, token, title, body, data=None):
        if token.startswith("bad"):
            raise ValueError("invalid registration token")
        self.sent.append({"token": token, "title": title, "body": body, "data": data})
        return f"msg-{len(self.sent)}"


@pytest.fixture
def db():
    database = mongomock.MongoClient()["school_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def client(db, messenger):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_messenger] = lambda: messenger
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(db, username, role="USER", zone="", status="active", **extra):
    doc = {
        "username": username,
        "email": f"{username}@gmail.com",
        "password": PASSWORD_HASH,
        "role": role,
        "assignedZone": zone,
        "status": status,
        "orders": empty_order_summary(),
        **extra,
    }
    return ObjectId(create_document(db, "users", doc))


def token_for(user_id, username, role="USER", zone=""):
    claims = {"sub": str(user_id), "username": username, "role": role, "assignedZone": zone}
    return {"Authorization": f"Bearer {create_access_token(claims)}"}


@pytest.fixture
def admin(db):
    user_id = make_user(db, "admin", role="ADMIN")
    return {"id": user_id, "headers": token_for(user_id, "admin", "ADMIN")}


@pytest.fixture
def agent(db):
    user_id = make_user(db, "agent", zone="NORTHZONE")
    return {"id": user_id, "headers": token_for(user_id, "agent", "USER", "NORTHZONE")}


@pytest.fixture
def other_agent(db):
    user_id = make_user(db, "other", zone="SOUTHZONE")
    return {"id": user_id, "headers": token_for(user_id, "other", "USER", "SOUTHZONE")}


def make_school(db, name="Green Valley School", zone="NORTHZONE"):
    return ObjectId(create_document(db, "schools", {
        "schoolName": name,
        "address": "12 Main Road",
        "contactPersonName": "R. Sharma",
        "contactNumber": "9999999999",
        "educationLimit": "10th",
        "scheduleVisitDate": utcnow(),
        "zone": zone,
    }))


def make_category(db, name="Mathematics"):
    return ObjectId(create_document(db, "categories", {"name": name}))


def make_book(db, category_id, name="Algebra I", price=100, stock=10):
    return ObjectId(create_document(db, "books", {
        "name": name,
        "class": "8",
        "price": price,
        "stock": stock,
        "category": category_id,
    }))


@pytest.fixture
def school(db):
    return make_school(db)


@pytest.fixture
def category(db):
    return make_category(db)


@pytest.fixture
def book(db, category):
    return make_book(db, category)


def order_payload(school_id, lines, total=1000, **extra):
    """``lines`` is a list of (category_id, book_id, quantity, price)."""
    groups = {}
    for category_id, book_id, quantity, price in lines:
        groups.setdefault(str(category_id), []).append(
            {"bookId": str(book_id), "quantity": quantity, "price": price}
        )
    return {
        "schoolId": str(school_id),
        "orderType": "New",
        "totalPayment": total,
        "orderItems": [{"categoryId": c, "books": b} for c, b in groups.items()],
        **extra,
    }
