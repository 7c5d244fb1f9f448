import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import main
from cache import MemoryCache
from config import Settings
from database import ensure_indexes
from gateway import NotificationGateway
from mail import MailService

PASSWORD = "secret123"


class RecordingMail(MailService):
    """Keeps every message instead of handing it to Resend."""

    def __init__(self):
        super().__init__(None)
        self.outbox = []

    def _send(self, payload):
        self.outbox.append(payload)
        return {"success": True}


@pytest.fixture
def settings():
    return Settings(app_env="test", jwt_secret="test-secret", bcrypt_rounds=4, gemini_api_key=None)


@pytest.fixture
def mongo():
    database = mongomock.MongoClient()["storefront_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def services(mongo, settings):
    return main.build_services(
        mongo,
        settings,
        cache=MemoryCache(),
        gateway=NotificationGateway(),
        mail=RecordingMail(),
    )


@pytest.fixture
def client(services):
    previous = main.app.state.services
    main.app.state.services = services
    with TestClient(main.app) as c:
        yield c
    main.app.state.services = previous


@pytest.fixture
def make_user(services):
    """Register a user straight through the service; returns (id, auth headers)."""
    counter = {"n": 0}

    def _make(role="user", name=None, email=None):
        counter["n"] += 1
        email = email or f"{role}{counter['n']}@example.com"
        result = services.auth.register(name or f"Test {role.title()}", email, PASSWORD)
        user_id = result["user"]["id"]
        if role != "user":
            services.db["user"].update_one({"_id": ObjectId(user_id)}, {"$set": {"role": role}})
        token = services.auth.make_token(user_id, email, role)
        return user_id, {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def make_product(services):
    def _make(seller_id=None, **overrides):
        data = {
            "title": "Wireless Mouse",
            "description": "Ergonomic wireless mouse",
            "price": 25.0,
            "category_id": str(ObjectId()),
            "stock": 10,
        }
        data.update(overrides)
        return services.products.create(data, seller_id)

    return _make


@pytest.fixture
def shipping_address():
    return {
        "full_name": "Ada Buyer",
        "address_line": "1 Main Street",
        "city": "Springfield",
        "state": "IL",
        "postal_code": "62701",
        "country": "US",
        "phone": "555-0100",
    }
