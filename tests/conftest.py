import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import catalog
import main
from config import Settings
from database import Store, now_utc
from schemas import ProductCreateRequest
from security import create_token, hash_password

PASSWORD = "secret123"
TEST_SETTINGS = Settings(app_env="test", jwt_secret="test-secret", log_level="WARNING")


@pytest.fixture(scope="session")
def password_hash():
    return hash_password(PASSWORD)


@pytest.fixture
def store():
    return Store("mongodb://localhost:27017", "store_test", client=mongomock.MongoClient())


@pytest.fixture
def db(store):
    return store.db


@pytest.fixture
def client(store):
    main.app.state.settings = TEST_SETTINGS
    main.app.state.store = store
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def make_user(db, password_hash):
    def _make(email="shopper@example.com", role="user", name="Shopper"):
        doc = {
            "name": name,
            "email": email,
            "password_hash": password_hash,
            "phone": None,
            "address": None,
            "wishlist": [],
            "cart": [],
            "role": role,
            "is_email_verified": False,
            "last_login": None,
            "deleted_at": None,
            "created_at": now_utc(),
            "updated_at": now_utc(),
        }
        doc["_id"] = db["user"].insert_one(doc).inserted_id
        return doc

    return _make


def auth(user):
    return {"Authorization": f"Bearer {create_token(user, TEST_SETTINGS)}"}


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user(email="admin@example.com", role="admin", name="Admin")


@pytest.fixture
def user_headers(user):
    return auth(user)


@pytest.fixture
def admin_headers(admin):
    return auth(admin)


def product_payload(**overrides):
    data = {
        "name": "Classic Tee",
        "description": "Everyday cotton tee",
        "category": "men",
        "sub_category": "t-shirts",
        "brand": "Northline",
        "base_price": 20.0,
        "material": "Cotton",
        "tags": ["basics"],
        "color_variants": [
            {
                "color": {"name": "Red", "hex_code": "#FF0000"},
                "images": [{"url": "https://img.example.com/red.jpg", "alt": "Red tee"}],
                "sizes": [{"name": "M", "quantity": 5}, {"name": "L", "quantity": 2}],
            },
            {
                "color": {"name": "Blue", "hex_code": "#0000FF"},
                "images": [{"url": "https://img.example.com/blue.jpg"}],
                "sizes": [{"name": "S", "quantity": 3}],
            },
        ],
    }
    data.update(overrides)
    return data


@pytest.fixture
def make_product(db, admin):
    def _make(**overrides):
        doc = catalog.create_product(db, ProductCreateRequest(**product_payload(**overrides)), admin)
        return str(doc["_id"])

    return _make


@pytest.fixture
def product_id(make_product):
    return make_product()


def stock(db, product_id, color, size):
    product = db["product"].find_one({"_id": ObjectId(product_id)})
    for variant in product["color_variants"]:
        if variant["color"]["name"] == color:
            for entry in variant["sizes"]:
                if entry["name"] == size:
                    return entry["quantity"]
    raise AssertionError(f"no stock entry for {color}/{size}")
