import os

os.environ.pop("DATABASE_URL", None)
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ["PUSH_ENABLED"] = "false"

import mongomock
import pytest
from fastapi.testclient import TestClient

import auth
import database
from database import create_document
from main import app
from schemas import Product, User


@pytest.fixture(autouse=True)
def db(monkeypatch):
    test_db = mongomock.MongoClient()["melodymix_test"]
    monkeypatch.setattr(database, "db", test_db)
    return test_db


@pytest.fixture
def client():
    return TestClient(app)


def _make_user(email, role="user", password="secret123", push_token=""):
    user = User(
        name=email.split("@")[0],
        email=email,
        password_hash=auth.hash_password(password),
        dob="1995-04-12T00:00:00",
        gender="female",
        phone="5550100",
        address="12 Harmony Street",
        push_token=push_token,
        role=role,
    )
    user_id = create_document("user", user)
    token = auth.create_token({"id": user_id, "role": role})
    return {"id": user_id, "email": email, "password": password, "headers": {"Authorization": f"Bearer {token}"}}


@pytest.fixture
def make_user():
    return _make_user


@pytest.fixture
def admin():
    return _make_user("admin@melodymix.com", role="admin")


@pytest.fixture
def user():
    return _make_user("listener@melodymix.com")


@pytest.fixture
def make_product():
    def _make(name="Drumsticks", price=100.0, stock=10):
        product = Product(
            name=name,
            description=f"{name} for testing",
            price=price,
            image="https://img.example/p.png",
            stock=stock,
        )
        return create_document("product", product)
    return _make


@pytest.fixture
def stock_of(db):
    from bson import ObjectId

    def _stock(product_id):
        return db["product"].find_one({"_id": ObjectId(product_id)})["stock"]
    return _stock
