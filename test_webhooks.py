# test_webhooks.py

import json

import pytest

import payments
from conftest import stripe_signature
from models import Profile, ProcessedEvent, Subscription, User


@pytest.fixture
def user_id(db):
    u = User(email="owner@example.com", hashed_pw="x")
    db.add(u)
    db.commit()
    db.add(Profile(id=u.id, name="Owner", vehicle_type="car", user_type="common_user"))
    db.commit()
    return u.id


def _subscriptions(db, user_id):
    db.expire_all()
    return db.query(Subscription).filter_by(user_id=user_id).all()


def checkout_event(user_id, event_id="evt_checkout", created=1700000000, plan="monthly"):
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "created": created,
        "data": {"object": {
            "id": "cs_test",
            "mode": "subscription",
            "client_reference_id": str(user_id),
            "subscription": "sub_123",
            "metadata": {"userId": str(user_id), "planType": plan, "planPrice": "2000"},
        }},
    }


def subscription_object(user_id, status="active"):
    return {
        "id": "sub_123",
        "object": "subscription",
        "status": status,
        "current_period_start": 1735689600,   # 2025-01-01
        "current_period_end": 1743465600,     # 2025-04-01
        "metadata": {"userId": str(user_id), "planType": "quarterly", "planPrice": "5000"},
        "items": {"data": [{"price": {
            "unit_amount": 1786,
            "recurring": {"interval": "month", "interval_count": 3},
        }}]},
    }


def subscription_event(user_id, status="active", event_id="evt_sub", created=1700000100,
                       event_type="customer.subscription.updated"):
    return {
        "id": event_id,
        "type": event_type,
        "created": created,
        "data": {"object": subscription_object(user_id, status)},
    }


def invoice_event(event_type, event_id="evt_inv", created=1700000200):
    return {
        "id": event_id,
        "type": event_type,
        "created": created,
        "data": {"object": {"id": "in_1", "object": "invoice", "subscription": "sub_123"}},
    }


# ─── signature handling ──────────────────────────────────────────────────────

def test_invalid_signature_is_rejected_without_writes(post_event, db, user_id):
    event = checkout_event(user_id)
    bad = stripe_signature(json.dumps(event), secret="whsec_wrong")

    resp = post_event(event, signature=bad)

    assert resp.status_code == 400
    assert _subscriptions(db, user_id) == []
    assert db.get(Profile, user_id).user_type == "common_user"
    assert db.query(ProcessedEvent).count() == 0


def test_missing_signature_is_rejected(client, db, user_id):
    resp = client.post("/api/webhooks/stripe", content=json.dumps(checkout_event(user_id)))
    assert resp.status_code == 400
    assert _subscriptions(db, user_id) == []


def test_tampered_body_is_rejected(client, db, user_id):
    payload = json.dumps(checkout_event(user_id))
    signature = stripe_signature(payload)
    tampered = payload.replace('"monthly"', '"yearly"')

    resp = client.post("/api/webhooks/stripe", content=tampered,
                       headers={"stripe-signature": signature})

    assert resp.status_code == 400
    assert _subscriptions(db, user_id) == []


def test_missing_secret_is_server_error(post_event, user_id, monkeypatch):
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET")
    resp = post_event(checkout_event(user_id))
    assert resp.status_code == 500


# ─── checkout.session.completed ──────────────────────────────────────────────

def test_checkout_creates_active_subscription(post_event, db, user_id):
    resp = post_event(checkout_event(user_id))

    assert resp.status_code == 200
    assert resp.json() == {"received": True, "eventType": "checkout.session.completed"}
    subs = _subscriptions(db, user_id)
    assert len(subs) == 1
    assert subs[0].status == "active"
    assert subs[0].plan_type == "monthly"
    assert subs[0].price == 2000.0
    assert db.get(Profile, user_id).user_type == "car_owner"


def test_checkout_for_existing_row_updates_it(post_event, db, user_id):
    post_event(checkout_event(user_id, event_id="evt_a", created=1700000000))
    resp = post_event(checkout_event(user_id, event_id="evt_b", created=1700000500, plan="yearly"))

    assert resp.status_code == 200
    subs = _subscriptions(db, user_id)
    assert len(subs) == 1
    assert subs[0].plan_type == "yearly"


def test_checkout_creates_missing_profile(post_event, db):
    u = User(email="noprofile@example.com", hashed_pw="x")
    db.add(u)
    db.commit()

    resp = post_event(checkout_event(u.id))

    assert resp.status_code == 200
    db.expire_all()
    assert db.get(Profile, u.id).user_type == "car_owner"


def test_checkout_without_user_is_client_error(post_event, db):
    event = checkout_event(1)
    obj = event["data"]["object"]
    obj["client_reference_id"] = None
    obj["metadata"].pop("userId")

    resp = post_event(event)

    assert resp.status_code == 400
    assert db.query(Subscription).count() == 0


def test_checkout_for_unknown_user_writes_nothing(post_event, db):
    resp = post_event(checkout_event(9999))

    assert resp.status_code == 400
    assert db.query(Subscription).count() == 0
    assert db.get(Profile, 9999) is None
    assert db.query(ProcessedEvent).count() == 0


def test_subscription_event_for_unknown_user_is_rejected(post_event, db):
    resp = post_event(subscription_event(9999))

    assert resp.status_code == 400
    assert db.query(Subscription).count() == 0


def test_payment_mode_checkout_is_ignored(post_event, db, user_id):
    event = checkout_event(user_id)
    event["data"]["object"]["mode"] = "payment"

    resp = post_event(event)

    assert resp.status_code == 200
    assert _subscriptions(db, user_id) == []


# ─── customer.subscription.* ─────────────────────────────────────────────────

def test_subscription_updated_active_upserts(post_event, db, user_id):
    resp = post_event(subscription_event(user_id))

    assert resp.status_code == 200
    sub = _subscriptions(db, user_id)[0]
    assert sub.status == "active"
    assert sub.plan_type == "quarterly"
    assert sub.end_date.year == 2025 and sub.end_date.month == 4


def test_subscription_deleted_marks_expired(post_event, db, user_id):
    post_event(checkout_event(user_id))
    resp = post_event(subscription_event(
        user_id, status="canceled", event_id="evt_del", created=1700000900,
        event_type="customer.subscription.deleted",
    ))

    assert resp.status_code == 200
    assert _subscriptions(db, user_id)[0].status == "expired"


def test_out_of_order_event_does_not_roll_back_state(post_event, db, user_id):
    post_event(subscription_event(user_id, status="canceled", event_id="evt_new", created=1700009999))
    post_event(checkout_event(user_id, event_id="evt_old", created=1700000000))
    # the expiry had no row to touch, so the older checkout still creates one
    assert _subscriptions(db, user_id)[0].status == "active"

    post_event(subscription_event(user_id, status="canceled", event_id="evt_newer", created=1700020000))
    post_event(subscription_event(user_id, status="active", event_id="evt_stale", created=1700010000))

    assert _subscriptions(db, user_id)[0].status == "expired"


def test_subscription_without_user_metadata_is_ignored(post_event, db, user_id):
    event = subscription_event(user_id)
    event["data"]["object"]["metadata"] = {}

    resp = post_event(event)

    assert resp.status_code == 200
    assert _subscriptions(db, user_id) == []


# ─── invoice.* ───────────────────────────────────────────────────────────────

def test_payment_succeeded_refreshes_period(post_event, db, user_id, monkeypatch):
    fetched = []
    def fake_retrieve(sub_id):
        fetched.append(sub_id)
        return subscription_object(user_id)
    monkeypatch.setattr(payments, "retrieve_subscription", fake_retrieve)

    resp = post_event(invoice_event("invoice.payment_succeeded"))

    assert resp.status_code == 200
    assert fetched == ["sub_123"]
    sub = _subscriptions(db, user_id)[0]
    assert sub.status == "active"
    assert sub.price == 5000.0


def test_payment_failed_marks_expired(post_event, db, user_id, monkeypatch):
    post_event(checkout_event(user_id))
    monkeypatch.setattr(payments, "retrieve_subscription", lambda sub_id: subscription_object(user_id))

    resp = post_event(invoice_event("invoice.payment_failed"))

    assert resp.status_code == 200
    assert _subscriptions(db, user_id)[0].status == "expired"


def test_processing_error_propagates_as_server_error(post_event, db, user_id, monkeypatch):
    post_event(checkout_event(user_id))
    def unavailable(sub_id):
        raise RuntimeError("stripe unavailable")
    monkeypatch.setattr(payments, "retrieve_subscription", unavailable)

    resp = post_event(invoice_event("invoice.payment_failed"))

    assert resp.status_code == 500
    assert _subscriptions(db, user_id)[0].status == "active"
    assert db.get(ProcessedEvent, "evt_inv") is None


# ─── delivery bookkeeping ────────────────────────────────────────────────────

def test_redelivered_event_is_acknowledged_once(post_event, db, user_id):
    event = checkout_event(user_id)
    first = post_event(event)
    second = post_event(event)

    assert first.status_code == 200 and "duplicate" not in first.json()
    assert second.status_code == 200 and second.json()["duplicate"] is True
    assert len(_subscriptions(db, user_id)) == 1


def test_unhandled_event_is_acknowledged(post_event):
    resp = post_event({"id": "evt_x", "type": "customer.created", "created": 1,
                       "data": {"object": {}}})
    assert resp.status_code == 200
    assert resp.json()["eventType"] == "customer.created"


def test_webhook_probe_reports_secret(client):
    resp = client.get("/api/webhooks/stripe/test")
    assert resp.status_code == 200
    assert resp.json()["webhookSecret"] == "Set"
