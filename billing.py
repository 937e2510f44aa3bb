# billing.py

"""
Subscription state driven by Stripe webhook events.

Every event type funnels into the same two writes against the
`subscriptions` row of a user:

* apply_subscription_state: INSERT ... ON CONFLICT (user_id) DO UPDATE,
  status "active" with fresh period bounds.
* expire_subscription: status "expired".

Both carry the event's `created` timestamp and only touch the row when it
is not older than the last event applied to it (`last_event_at`), so
retries and out-of-order deliveries cannot roll the state back.
process_event wraps a whole event in one transaction together with the
processed-event record, so a failure leaves nothing half written.
"""

import calendar
import logging
import time
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import or_, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

import payments
from models import Profile, ProcessedEvent, Subscription, User, utcnow

logger = logging.getLogger("sharewheel.billing")

PLAN_MONTHS = {
    "monthly":   1,
    "quarterly": 3,
    "yearly":    12,
}
ACTIVE_PROCESSOR_STATUSES = ("active", "trialing")


class BillingError(ValueError):
    """An event that cannot be applied as sent."""

class MissingUserError(BillingError):
    pass


# ─── Plan periods ────────────────────────────────────────────────────────────

def add_months(dt: datetime, months: int) -> datetime:
    """Calendar month arithmetic; the day is clamped to the target month."""
    month_index = dt.month - 1 + months
    year  = dt.year + month_index // 12
    month = month_index % 12 + 1
    day   = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)

def compute_end_date(plan_type: str, start: datetime) -> datetime:
    if plan_type not in PLAN_MONTHS:
        raise BillingError(f"Invalid plan type: {plan_type}")
    return add_months(start, PLAN_MONTHS[plan_type])


# ─── Writes ──────────────────────────────────────────────────────────────────

def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"No upsert support for dialect {dialect!r}")

def _not_stale(event_created: int):
    col = Subscription.__table__.c.last_event_at
    return or_(col.is_(None), col <= event_created)

def apply_subscription_state(db: Session, user_id: int, *, plan_type: str,
                             start_date: datetime, end_date: datetime,
                             price: float, event_created: int,
                             stripe_subscription_id: Optional[str] = None) -> bool:
    """
    Upsert the user's subscription as active. Returns False when the row
    already reflects a newer event and nothing was written.
    """
    values = {
        "user_id": user_id,
        "plan_type": plan_type,
        "status": "active",
        "start_date": start_date,
        "end_date": end_date,
        "price": price,
        "last_event_at": event_created,
        "updated_at": utcnow(),
    }
    if stripe_subscription_id:
        values["stripe_subscription_id"] = stripe_subscription_id

    insert = _insert_for(db)
    stmt = insert(Subscription.__table__).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id"],
        set_={k: stmt.excluded[k] for k in values if k != "user_id"},
        where=_not_stale(event_created),
    )
    applied = db.execute(stmt).rowcount > 0
    if applied:
        logger.info("Subscription for user %s active (%s) until %s",
                    user_id, plan_type, end_date.isoformat())
    else:
        logger.info("Skipped stale activation for user %s (event at %s)",
                    user_id, event_created)
    return applied

def expire_subscription(db: Session, user_id: int, event_created: int) -> bool:
    stmt = (
        update(Subscription)
        .where(Subscription.user_id == user_id, _not_stale(event_created))
        .values(status="expired", last_event_at=event_created, updated_at=utcnow())
    )
    applied = db.execute(stmt).rowcount > 0
    if applied:
        logger.info("Subscription for user %s expired", user_id)
    else:
        logger.info("No subscription to expire for user %s (or event is stale)", user_id)
    return applied

def mark_car_owner(db: Session, user_id: int) -> None:
    profile = db.get(Profile, user_id)
    if profile is None:
        logger.warning("Profile %s not found, creating a basic one", user_id)
        db.add(Profile(id=user_id, user_type="car_owner"))
    else:
        profile.user_type = "car_owner"


# ─── Stripe payload helpers ──────────────────────────────────────────────────

def _to_user_id(raw) -> Optional[int]:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None

def _from_epoch(ts) -> Optional[datetime]:
    if not ts:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).replace(tzinfo=None)

def _first_item(sub: dict) -> dict:
    items = (sub.get("items") or {}).get("data") or []
    return items[0] if items else {}

def period_bounds(sub: dict):
    # newer API versions moved the period onto the subscription items
    item = _first_item(sub)
    start = _from_epoch(sub.get("current_period_start") or item.get("current_period_start"))
    end   = _from_epoch(sub.get("current_period_end") or item.get("current_period_end"))
    now = utcnow()
    return start or now, end or now

def plan_type_of(sub: dict) -> str:
    plan_type = (sub.get("metadata") or {}).get("planType")
    if plan_type in PLAN_MONTHS:
        return plan_type
    recurring = ((_first_item(sub).get("price") or {}).get("recurring")) or {}
    interval = recurring.get("interval")
    if interval == "year":
        return "yearly"
    if interval == "month" and recurring.get("interval_count") == 3:
        return "quarterly"
    return "monthly"

def price_of(sub: dict) -> float:
    plan_price = (sub.get("metadata") or {}).get("planPrice")
    if plan_price:
        try:
            return float(plan_price)
        except ValueError:
            pass
    unit_amount = (_first_item(sub).get("price") or {}).get("unit_amount") or 0
    return unit_amount / 100

def invoice_subscription_id(invoice: dict) -> Optional[str]:
    sub = invoice.get("subscription")
    if isinstance(sub, dict):
        return sub.get("id")
    if sub:
        return sub
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")

def _event_created(event: dict) -> int:
    return int(event.get("created") or time.time())


# ─── Event handlers ──────────────────────────────────────────────────────────

def _require_user(db: Session, user_id: int) -> None:
    # retrying cannot make an unknown user appear
    if db.get(User, user_id) is None:
        raise MissingUserError(f"User {user_id} does not exist")

def _activate_from_processor(db: Session, user_id: int, sub: dict, event_created: int):
    _require_user(db, user_id)
    start, end = period_bounds(sub)
    apply_subscription_state(
        db, user_id,
        plan_type=plan_type_of(sub),
        start_date=start,
        end_date=end,
        price=price_of(sub),
        event_created=event_created,
        stripe_subscription_id=sub.get("id"),
    )

def handle_checkout_completed(db: Session, event: dict) -> None:
    session = event["data"]["object"]
    if session.get("mode") != "subscription":
        logger.info("Checkout session %s is not a subscription, skipping", session.get("id"))
        return

    metadata = session.get("metadata") or {}
    user_id = _to_user_id(session.get("client_reference_id") or metadata.get("userId"))
    if user_id is None:
        raise MissingUserError("No user ID found in session")
    _require_user(db, user_id)

    plan_type = metadata.get("planType") or "monthly"
    try:
        price = float(metadata.get("planPrice") or 0)
    except ValueError:
        raise BillingError(f"Invalid plan price: {metadata.get('planPrice')}")

    start = utcnow()
    end = compute_end_date(plan_type, start)
    sub_id = session.get("subscription")
    if isinstance(sub_id, dict):
        sub_id = sub_id.get("id")

    applied = apply_subscription_state(
        db, user_id,
        plan_type=plan_type,
        start_date=start,
        end_date=end,
        price=price,
        event_created=_event_created(event),
        stripe_subscription_id=sub_id,
    )
    if applied:
        mark_car_owner(db, user_id)

def handle_subscription_changed(db: Session, event: dict) -> None:
    sub = event["data"]["object"]
    user_id = _to_user_id((sub.get("metadata") or {}).get("userId"))
    if user_id is None:
        logger.info("Subscription %s carries no user id, ignoring", sub.get("id"))
        return

    if sub.get("status") in ACTIVE_PROCESSOR_STATUSES:
        _activate_from_processor(db, user_id, sub, _event_created(event))
    else:
        expire_subscription(db, user_id, _event_created(event))

def handle_payment_succeeded(db: Session, event: dict) -> None:
    sub_id = invoice_subscription_id(event["data"]["object"])
    if not sub_id:
        return
    sub = payments.retrieve_subscription(sub_id)
    user_id = _to_user_id((sub.get("metadata") or {}).get("userId"))
    if user_id is None:
        logger.info("Subscription %s carries no user id, ignoring", sub_id)
        return
    _activate_from_processor(db, user_id, sub, _event_created(event))

def handle_payment_failed(db: Session, event: dict) -> None:
    sub_id = invoice_subscription_id(event["data"]["object"])
    if not sub_id:
        return
    sub = payments.retrieve_subscription(sub_id)
    user_id = _to_user_id((sub.get("metadata") or {}).get("userId"))
    if user_id is None:
        logger.info("Subscription %s carries no user id, ignoring", sub_id)
        return
    expire_subscription(db, user_id, _event_created(event))


EVENT_HANDLERS = {
    "checkout.session.completed":     handle_checkout_completed,
    "customer.subscription.updated":  handle_subscription_changed,
    "customer.subscription.deleted":  handle_subscription_changed,
    "invoice.payment_succeeded":      handle_payment_succeeded,
    "invoice.payment_failed":         handle_payment_failed,
}


def process_event(db: Session, event: dict) -> bool:
    """
    Apply one verified Stripe event in a single transaction.

    Returns False when the event id was already processed. Any error rolls
    the whole event back and propagates.
    """
    event_id = event.get("id")
    event_type = event["type"]
    if event_id and db.get(ProcessedEvent, event_id) is not None:
        logger.info("Event %s (%s) already processed", event_id, event_type)
        return False

    handler = EVENT_HANDLERS.get(event_type)
    try:
        if handler is None:
            logger.info("Unhandled event type: %s", event_type)
        else:
            handler(db, event)
        if event_id:
            db.add(ProcessedEvent(
                event_id=event_id,
                event_type=event_type,
                created=event.get("created"),
            ))
        db.commit()
    except Exception:
        db.rollback()
        raise
    return True
