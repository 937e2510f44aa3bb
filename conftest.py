# conftest.py

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"

import hashlib
import hmac
import json
import time
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

import models  # noqa: F401
from db import Base, SessionLocal, engine, init_db
from main import app
from models import Profile, Subscription, utcnow

WEBHOOK_SECRET = "whsec_test"


@pytest.fixture(autouse=True)
def fresh_db():
    Base.metadata.drop_all(bind=engine)
    init_db()
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    return TestClient(app)


def signed_in_client(email, password="secret123", name="Test User"):
    c = TestClient(app)
    resp = c.post("/auth/signup", json={"email": email, "password": password, "name": name})
    assert resp.status_code == 201, resp.text
    user_id = resp.json()["id"]
    resp = c.post("/auth/signin", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    c.headers.update({"Authorization": f"Bearer {resp.json()['access_token']}"})
    c.user_id = user_id
    return c


@pytest.fixture
def make_user():
    return signed_in_client


@pytest.fixture
def subscribe():
    """Give a user a running monthly subscription."""
    def _subscribe(db, user_id, days=30):
        db.add(Subscription(
            user_id=user_id,
            plan_type="monthly",
            status="active",
            start_date=utcnow(),
            end_date=utcnow() + timedelta(days=days),
            price=2000.0,
        ))
        profile = db.get(Profile, user_id)
        profile.user_type = "car_owner"
        db.commit()
    return _subscribe


def stripe_signature(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def post_event(client):
    """POST a correctly signed Stripe event to the webhook."""
    def _post(event: dict, signature: str = None):
        payload = json.dumps(event)
        return client.post(
            "/api/webhooks/stripe",
            content=payload,
            headers={
                "content-type": "application/json",
                "stripe-signature": signature or stripe_signature(payload),
            },
        )
    return _post
