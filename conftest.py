import mongomock
import pytest
from fastapi.testclient import TestClient

import admin
from auth_provider import AuthProvider
from catalog import seed_categories
from database import create_document, ensure_indexes, get_db
from main import app, get_profiles, get_storage
from profiles import ProfileManager
from schemas import Product
from storage import ObjectStorage


@pytest.fixture
def database():
    # a fresh in-memory database per test
    db = mongomock.MongoClient()["marketplace_test"]
    ensure_indexes(db)
    seed_categories(db)
    return db


@pytest.fixture
def object_storage(tmp_path):
    return ObjectStorage(root=str(tmp_path / "storage"), public_url="http://testserver/storage")


@pytest.fixture
def auth(database):
    return AuthProvider(database)


@pytest.fixture
def profiles(database, auth):
    manager = ProfileManager(database, auth)
    yield manager
    manager.close()


@pytest.fixture
def client(database, object_storage, profiles):
    app.dependency_overrides[get_db] = lambda: database
    app.dependency_overrides[get_storage] = lambda: object_storage
    app.dependency_overrides[get_profiles] = lambda: profiles
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_product(database):
    def _make(seller_id, title="Denim Jacket", price=30.0, **extra):
        product = Product(seller_id=seller_id, title=title, description=f"{title}, gently used", price=price, **extra)
        return create_document(database, "product", product)
    return _make


@pytest.fixture
def category_id(database):
    return str(database["category"].find_one({"name": "Tops"})["_id"])


def _sign_up(client, email, role="buyer", full_name="Test User"):
    res = client.post("/api/auth/signup", json={
        "email": email,
        "password": "secret123",
        "full_name": full_name,
        "role": role,
    })
    assert res.status_code == 200, res.text
    body = res.json()
    return {"Authorization": f"Bearer {body['access_token']}"}, body["user"]


@pytest.fixture
def buyer(client):
    return _sign_up(client, "buyer@example.com", "buyer", "Bea Buyer")


@pytest.fixture
def seller(client):
    return _sign_up(client, "seller@example.com", "seller", "Sam Seller")


@pytest.fixture
def other_seller(client):
    return _sign_up(client, "other@example.com", "seller", "Olive Other")


@pytest.fixture
def admin_user(client, database, profiles):
    headers, user = _sign_up(client, "admin@example.com", "buyer", "Ada Admin")
    admin.update_user_role(database, user["id"], "admin")
    profiles.invalidate(user["id"])
    return headers, {**user, "role": "admin"}
