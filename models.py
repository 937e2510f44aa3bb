# models.py

from sqlalchemy import (
    Column, Integer, String, Float, Boolean, DateTime, ForeignKey,
    JSON, Text, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from typing import Optional
from db import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


USER_TYPES    = ("common_user", "car_owner")
VEHICLE_TYPES = ("car", "bike", "none")
GENDERS       = ("male", "female", "other")
REQUEST_STATUSES = ("pending", "accepted", "rejected")
WEEKDAYS = (
    "monday", "tuesday", "wednesday", "thursday",
    "friday", "saturday", "sunday",
)


class User(Base):
    __tablename__ = "users"
    id        = Column(Integer, primary_key=True, index=True)
    email     = Column(String, unique=True, index=True, nullable=False)
    hashed_pw = Column(String, nullable=False)

    # one-to-one relationships keyed by the auth identity
    profile = relationship(
        "Profile",
        uselist=False,
        back_populates="user",
        cascade="all, delete-orphan"
    )
    subscription = relationship(
        "Subscription",
        uselist=False,
        back_populates="user",
        cascade="all, delete-orphan"
    )
    routes = relationship(
        "Route",
        back_populates="owner",
        cascade="all, delete-orphan"
    )

class Profile(Base):
    __tablename__ = "profiles"
    id                = Column(Integer, ForeignKey("users.id"), primary_key=True)
    name              = Column(String, default="")
    email             = Column(String, nullable=True)
    phone             = Column(String, nullable=True)
    company_email     = Column(String, nullable=True)
    home_address      = Column(String, nullable=True)
    office_address    = Column(String, nullable=True)
    vehicle_type      = Column(String, nullable=True)     # "car", "bike", "none"
    office_in_time    = Column(String, nullable=True)     # "HH:MM"
    office_out_time   = Column(String, nullable=True)
    gender            = Column(String, nullable=True)
    user_type         = Column(String, nullable=False, default="common_user")
    profile_completed = Column(Boolean, nullable=False, default=False)

    user = relationship("User", back_populates="profile")

class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"
    id          = Column(Integer, primary_key=True, index=True)
    name        = Column(String, unique=True, nullable=False)   # "monthly", "quarterly", "yearly"
    description = Column(String, nullable=False)
    price_pkr   = Column(Float, nullable=False)
    months      = Column(Integer, nullable=False)

class Subscription(Base):
    __tablename__ = "subscriptions"
    id              = Column(Integer, primary_key=True, index=True)
    user_id         = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True, index=True)
    plan_type       = Column(String, nullable=False)
    status          = Column(String, nullable=False, default="active")   # "active" | "expired"
    start_date      = Column(DateTime, nullable=False)
    end_date        = Column(DateTime, nullable=False)
    price           = Column(Float, nullable=False, default=0.0)
    stripe_subscription_id = Column(String, nullable=True, index=True)
    last_event_at   = Column(Integer, nullable=True)   # Stripe event "created", epoch seconds
    updated_at      = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="subscription")

    def is_current(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.status == "active" and self.end_date > now

class ProcessedEvent(Base):
    __tablename__ = "stripe_events"
    event_id    = Column(String, primary_key=True)
    event_type  = Column(String, nullable=False, index=True)
    created     = Column(Integer, nullable=True)
    received_at = Column(DateTime, default=utcnow)

class Route(Base):
    __tablename__ = "car_owner_routes"
    id              = Column(Integer, primary_key=True, index=True)
    owner_id        = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    pickup_address  = Column(String, nullable=False)
    dropoff_address = Column(String, nullable=False)
    pickup_lat      = Column(Float, nullable=False)
    pickup_lng      = Column(Float, nullable=False)
    dropoff_lat     = Column(Float, nullable=False)
    dropoff_lng     = Column(Float, nullable=False)
    departure_time  = Column(String, nullable=False)    # "HH:MM"
    return_time     = Column(String, nullable=True)
    active_days     = Column(JSON, nullable=False, default=list)
    seats_available = Column(Integer, nullable=False)
    price_per_ride  = Column(Float, nullable=False)
    price_per_month = Column(Float, nullable=True)
    description     = Column(Text, nullable=True)
    is_active       = Column(Boolean, nullable=False, default=True, index=True)
    created_at      = Column(DateTime, default=utcnow)

    owner    = relationship("User", back_populates="routes")
    requests = relationship(
        "RouteRequest",
        back_populates="route",
        cascade="all, delete-orphan"
    )

class RouteRequest(Base):
    __tablename__ = "route_requests"
    id              = Column(Integer, primary_key=True, index=True)
    requester_id    = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    route_id        = Column(Integer, ForeignKey("car_owner_routes.id"), nullable=False)
    requested_seats = Column(Integer, nullable=False, default=1)
    message         = Column(Text, nullable=True)
    status          = Column(String, nullable=False, default="pending")
    created_at      = Column(DateTime, default=utcnow)

    route     = relationship("Route", back_populates="requests")
    requester = relationship("User")

    __table_args__ = (
        UniqueConstraint("requester_id", "route_id", name="uq_route_request_requester_route"),
        Index("ix_route_requests_route_status", "route_id", "status"),
    )
