from datetime import datetime, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient
from jose import jwt

from config import Settings
from errors import UpstreamFailure
from main import create_app

TEST_SECRET = "test-secret"


class FakeGateway:
    """Payment gateway double: coupons by code, records created intents"""

    def __init__(self, coupons=None):
        self.coupons = coupons or {}
        self.intents = []
        self.fail = False

    def retrieve_coupon(self, code):
        if self.fail:
            raise UpstreamFailure("Payment gateway unavailable")
        return self.coupons.get(code)

    def create_charge_intent(self, amount_cents, metadata):
        intent = {"id": f"pi_{len(self.intents) + 1}", "client_secret": f"secret_{len(self.intents) + 1}"}
        self.intents.append({"amount": amount_cents, "metadata": metadata, **intent})
        return intent


def make_token(email, secret=TEST_SECRET, **claims):
    return jwt.encode({"email": email, **claims}, secret, algorithm="HS256")


def auth_header(email):
    return {"Authorization": f"Bearer {make_token(email)}"}


@pytest.fixture()
def db():
    return mongomock.MongoClient()["discovery_test"]


@pytest.fixture()
def gateway():
    return FakeGateway(
        coupons={
            "SAVE20": {"valid": True, "percent_off": 20},
            "EXPIRED": {"valid": False, "percent_off": 50},
        }
    )


@pytest.fixture()
def settings():
    return Settings(JWT_SECRET=TEST_SECRET, LOG_JSON=False, LOG_LEVEL="WARNING")


@pytest.fixture()
def client(settings, db, gateway):
    app = create_app(settings=settings, db=db, gateway=gateway)
    return TestClient(app)


@pytest.fixture()
def admin_email(db):
    email = "admin@x.com"
    db["users"].insert_one(
        {"email": email, "role": "admin", "isSubscribed": False, "createdAt": datetime.now(timezone.utc)}
    )
    return email


@pytest.fixture()
def user_email(db):
    email = "a@x.com"
    db["users"].insert_one(
        {"email": email, "role": "user", "isSubscribed": False, "createdAt": datetime.now(timezone.utc)}
    )
    return email
