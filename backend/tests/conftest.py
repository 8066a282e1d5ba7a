from datetime import datetime, timedelta

import bcrypt
import mongomock
import pytest
import requests
import resend
from bson import ObjectId
from flask_jwt_extended import create_access_token

from app import create_app

ADMIN_EMAIL = "admin@peachflask.test"
PAYFAST_PASSPHRASE = "jt7NOE43FZPn"


class FakeResponse:
    def __init__(self, ok=True, text=""):
        self.ok = ok
        self.text = text
        self.status_code = 200 if ok else 400


@pytest.fixture
def outbox(monkeypatch):
    """Captures outgoing Resend emails and WhatsApp Cloud API calls."""
    captured = {"emails": [], "whatsapp": []}

    def fake_email_send(payload):
        captured["emails"].append(payload)
        return {"id": f"email-{len(captured['emails'])}"}

    def fake_post(url, json=None, headers=None, timeout=None):
        captured["whatsapp"].append({"url": url, "json": json, "headers": headers})
        return FakeResponse()

    monkeypatch.setattr(resend.Emails, "send", fake_email_send)
    monkeypatch.setattr(requests, "post", fake_post)
    return captured


@pytest.fixture
def database():
    return mongomock.MongoClient().peachflask


@pytest.fixture
def app(database, outbox, tmp_path):
    test_config = {
        "TESTING": True,
        "JWT_SECRET_KEY": "peach-flask-test-secret-key-0123456789abcdef",
        "DEFAULT_ADMIN_EMAIL": ADMIN_EMAIL,
        "RESEND_API_KEY": "re_test_key",
        "EMAIL_FROM": "Peach Flask <orders@peachflask.test>",
        "WHATSAPP_ACCESS_TOKEN": "whatsapp-token",
        "WHATSAPP_PHONE_NUMBER_ID": "1234567890",
        "FRONTEND_URL": "https://shop.peachflask.test",
        "TRACKING_BASE_URL": "https://track.peachflask.test",
        "PRODUCT_UPLOAD_FOLDER": str(tmp_path / "uploads"),
        "PAYFAST": {
            "url": "https://sandbox.payfast.co.za/eng/process",
            "merchant_id": "10000100",
            "merchant_key": "46f0cd694581a",
            "passphrase": PAYFAST_PASSPHRASE,
            "return_url": "https://shop.peachflask.test/checkout/success",
            "cancel_url": "https://shop.peachflask.test/checkout/cancel",
            "notify_url": "https://api.peachflask.test/api/orders/payfast/notify",
        },
    }
    return create_app(test_config, database=database)


@pytest.fixture
def client(app):
    return app.test_client()


def insert_user(database, email, *, role="user", password="secret123", **overrides):
    document = {
        "name": overrides.pop("name", email.split("@")[0].title()),
        "email": email,
        "phone": overrides.pop("phone", ""),
        "password": bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()),
        "role": role,
        "verification_method": overrides.pop("verification_method", "email"),
        "is_verified": overrides.pop("is_verified", True),
        "created_at": datetime.utcnow(),
    }
    document.update(overrides)
    document["_id"] = database.users.insert_one(document).inserted_id
    return document


def patch_collection(monkeypatch, database, name, method, replacement_factory):
    """Swaps one method of ``database[name]`` for the app under test.

    ``replacement_factory`` receives the original bound method and returns the
    replacement; the database keeps handing out the patched collection.
    """
    collection = database[name]
    original = getattr(collection, method)
    monkeypatch.setattr(collection, method, replacement_factory(original))
    monkeypatch.setattr(type(database), name, property(lambda self: collection), raising=False)
    return collection


def bearer(app, email):
    with app.app_context():
        token = create_access_token(identity=email)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user(database):
    return insert_user(database, "shopper@example.com", phone="+27820000000")


@pytest.fixture
def user_headers(app, user):
    return bearer(app, user["email"])


@pytest.fixture
def admin(database):
    return insert_user(database, ADMIN_EMAIL, role="admin")


@pytest.fixture
def admin_headers(app, admin):
    return bearer(app, admin["email"])


@pytest.fixture
def category(database):
    document = {
        "name": "Dried Fruit",
        "slug": "dried-fruit",
        "description": "Sun dried peaches and apricots",
        "is_active": True,
        "created_at": datetime.utcnow(),
    }
    document["_id"] = database.categories.insert_one(document).inserted_id
    return document


def insert_product(database, name, *, stock=10, price=100.0, sale_price=None, **overrides):
    option = {
        "_id": ObjectId(),
        "type": "packet",
        "weight": 0,
        "price": price,
        "sale_price": sale_price,
    }
    document = {
        "name": name,
        "slug": name.lower().replace(" ", "-"),
        "description": f"{name} from the orchard",
        "stock": stock,
        "category_ids": overrides.pop("category_ids", []),
        "images": [{"public_id": "", "url": f"https://cdn.peachflask.test/{name}.jpg"}],
        "price_options": [option],
        "ratings": 0.0,
        "num_of_reviews": 0,
        "created_at": datetime.utcnow(),
        "updated_at": datetime.utcnow(),
    }
    document.update(overrides)
    document["_id"] = database.products.insert_one(document).inserted_id
    return document


@pytest.fixture
def product(database, category):
    return insert_product(
        database, "Peach Slices", stock=5, price=100.0, category_ids=[category["_id"]]
    )


def insert_coupon(database, code="SAVE10", **overrides):
    now = datetime.utcnow()
    document = {
        "code": code,
        "discount_type": "percentage",
        "discount_value": 10,
        "min_purchase": 0,
        "max_purchase": None,
        "total_coupons": 5,
        "used_coupons": 0,
        "max_uses_per_user": 1,
        "start_at": now - timedelta(days=1),
        "expires_at": now + timedelta(days=30),
        "is_active": True,
        "eligible_users": [],
        "eligible_products": [],
        "used_by": [],
        "created_at": now,
        "updated_at": now,
    }
    document.update(overrides)
    document["_id"] = database.coupons.insert_one(document).inserted_id
    return document


def shipping_address(**overrides):
    address = {
        "fullName": "Thandi Mokoena",
        "address": "12 Orchard Lane",
        "city": "Cape Town",
        "postalCode": "8001",
        "country": "South Africa",
        "email": "thandi@example.com",
        "phone": "+27821111111",
    }
    address.update(overrides)
    return address


def order_payload(product_document, quantity=1, **overrides):
    payload = {
        "items": [
            {
                "productId": str(product_document["_id"]),
                "priceOptionId": str(product_document["price_options"][0]["_id"]),
                "quantity": quantity,
            }
        ],
        "shippingAddress": shipping_address(),
        "paymentMethod": "COD",
    }
    payload.update(overrides)
    return payload
