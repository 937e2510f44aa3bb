# carpool.py

import logging
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from auth import get_current_user
from db import get_db
from matching import Point, find_matching_routes, route_distances
from models import (
    Profile, Route, RouteRequest, User,
    WEEKDAYS
)

logger = logging.getLogger("sharewheel.carpool")

router = APIRouter(prefix="/api", tags=["carpool"])


# ─── Pydantic Schemas ────────────────────────────────────────────────────────

class RouteIn(BaseModel):
    pickup_address: str = Field(..., min_length=1)
    dropoff_address: str = Field(..., min_length=1)
    pickup_lat: float = Field(..., ge=-90, le=90)
    pickup_lng: float = Field(..., ge=-180, le=180)
    dropoff_lat: float = Field(..., ge=-90, le=90)
    dropoff_lng: float = Field(..., ge=-180, le=180)
    departure_time: str = Field(..., min_length=1)
    return_time: Optional[str] = None
    active_days: List[str]
    seats_available: int
    price_per_ride: float = Field(..., ge=0)
    price_per_month: Optional[float] = Field(None, ge=0)
    description: Optional[str] = None

class RouteUpdate(BaseModel):
    pickup_address: Optional[str] = None
    dropoff_address: Optional[str] = None
    pickup_lat: Optional[float] = Field(None, ge=-90, le=90)
    pickup_lng: Optional[float] = Field(None, ge=-180, le=180)
    dropoff_lat: Optional[float] = Field(None, ge=-90, le=90)
    dropoff_lng: Optional[float] = Field(None, ge=-180, le=180)
    departure_time: Optional[str] = None
    return_time: Optional[str] = None
    active_days: Optional[List[str]] = None
    seats_available: Optional[int] = None
    price_per_ride: Optional[float] = Field(None, ge=0)
    price_per_month: Optional[float] = Field(None, ge=0)
    description: Optional[str] = None
    is_active: Optional[bool] = None

class RouteOut(BaseModel):
    id: int
    owner_id: int
    pickup_address: str
    dropoff_address: str
    pickup_lat: float
    pickup_lng: float
    dropoff_lat: float
    dropoff_lng: float
    departure_time: str
    return_time: Optional[str]
    active_days: List[str]
    seats_available: int
    price_per_ride: float
    price_per_month: Optional[float]
    description: Optional[str]
    is_active: bool

    class Config:
        from_attributes = True

class SearchIn(BaseModel):
    pickup_lat: float = Field(..., ge=-90, le=90)
    pickup_lng: float = Field(..., ge=-180, le=180)
    dropoff_lat: float = Field(..., ge=-90, le=90)
    dropoff_lng: float = Field(..., ge=-180, le=180)

class RequestIn(BaseModel):
    requested_seats: int = 1
    message: Optional[str] = None

class RequestOut(BaseModel):
    id: int
    requester_id: int
    route_id: int
    requested_seats: int
    message: Optional[str]
    status: str
    created_at: datetime

    class Config:
        from_attributes = True

class StatusIn(BaseModel):
    status: str


# ─── Helpers ─────────────────────────────────────────────────────────────────

def _clean_days(days: List[str]) -> List[str]:
    cleaned = [d.strip().lower() for d in days]
    if not cleaned:
        raise HTTPException(400, "Please select at least one active day")
    unknown = [d for d in cleaned if d not in WEEKDAYS]
    if unknown:
        raise HTTPException(400, f"Unknown weekday(s): {', '.join(unknown)}")
    # keep week order, drop repeats
    return [d for d in WEEKDAYS if d in cleaned]

def _check_seats(seats: int):
    if seats < 1:
        raise HTTPException(400, "seats_available must be at least 1")

def _owned_route(db: Session, route_id: int, user: User) -> Route:
    route = db.get(Route, route_id)
    if route is None:
        raise HTTPException(404, "Route not found")
    if route.owner_id != user.id:
        raise HTTPException(403, "You do not own this route")
    return route

def _route_summary(route: Optional[Route]) -> dict:
    if route is None:
        return {"pickup_address": "Unknown", "dropoff_address": "Unknown",
                "departure_time": "", "price_per_ride": 0, "seats_available": 0}
    return {
        "id": route.id,
        "pickup_address": route.pickup_address,
        "dropoff_address": route.dropoff_address,
        "departure_time": route.departure_time,
        "price_per_ride": route.price_per_ride,
        "seats_available": route.seats_available,
    }

def _accepted_seats(db: Session, route_id: int, exclude_request_id: int = None) -> int:
    q = db.query(func.coalesce(func.sum(RouteRequest.requested_seats), 0))\
          .filter(RouteRequest.route_id == route_id,
                  RouteRequest.status == "accepted")
    if exclude_request_id is not None:
        q = q.filter(RouteRequest.id != exclude_request_id)
    return q.scalar()


# ─── ROUTES ──────────────────────────────────────────────────────────────────

@router.post("/routes", response_model=RouteOut, status_code=201)
def create_route(
    route_in: RouteIn,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Register a new route. Only drivers with a current subscription may publish."""
    sub = current_user.subscription
    if sub is None or not sub.is_current():
        raise HTTPException(
            403,
            detail="You need an active subscription to register routes. Please subscribe first."
        )

    days = _clean_days(route_in.active_days)
    _check_seats(route_in.seats_available)

    data = route_in.model_dump()
    data["active_days"] = days
    route = Route(owner_id=current_user.id, is_active=True, **data)
    db.add(route)
    db.commit()
    db.refresh(route)
    logger.info("Route %s registered by user %s", route.id, current_user.id)
    return route


@router.get("/routes/mine", response_model=List[RouteOut])
def my_routes(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return db.query(Route)\
             .filter_by(owner_id=current_user.id)\
             .order_by(Route.created_at.desc(), Route.id.desc())\
             .all()


@router.patch("/routes/{route_id}", response_model=RouteOut)
def update_route(
    route_id: int,
    changes: RouteUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Edit a route or toggle it active/inactive."""
    route = _owned_route(db, route_id, current_user)
    data = changes.model_dump(exclude_unset=True)
    if "active_days" in data:
        data["active_days"] = _clean_days(data["active_days"] or [])
    if "seats_available" in data:
        _check_seats(data["seats_available"] or 0)
        taken = _accepted_seats(db, route.id)
        if data["seats_available"] < taken:
            raise HTTPException(
                409,
                f"{taken} seat(s) are already taken by accepted requests"
            )

    for key, value in data.items():
        if value is None and key not in ("return_time", "price_per_month", "description"):
            continue
        setattr(route, key, value)

    db.commit()
    db.refresh(route)
    return route


@router.delete("/routes/{route_id}", status_code=204)
def delete_route(
    route_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    route = _owned_route(db, route_id, current_user)
    db.delete(route)
    db.commit()
    logger.info("Route %s deleted by user %s", route_id, current_user.id)


@router.post("/routes/search")
def search_routes(
    search: SearchIn,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Active routes of other drivers whose pickup and drop-off both lie within
    3 km of the rider's points, in route order.
    """
    pickup  = Point(search.pickup_lat, search.pickup_lng)
    dropoff = Point(search.dropoff_lat, search.dropoff_lng)

    try:
        candidates = db.query(Route)\
                       .filter(Route.is_active.is_(True),
                               Route.owner_id != current_user.id)\
                       .order_by(Route.id)\
                       .all()
        matches = find_matching_routes(pickup, dropoff, candidates)

        owner_ids = {r.owner_id for r in matches}
        profiles = {}
        if owner_ids:
            for p in db.query(Profile).filter(Profile.id.in_(owner_ids)):
                profiles[p.id] = p
    except SQLAlchemyError as e:
        logger.error("Error fetching routes: %s", e)
        raise HTTPException(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to fetch routes. Please try again."
        )

    results = []
    for route in matches:
        pickup_km, dropoff_km = route_distances(pickup, dropoff, route)
        owner = profiles.get(route.owner_id)
        item = RouteOut.model_validate(route).model_dump()
        item["pickup_distance_km"]  = round(pickup_km, 3)
        item["dropoff_distance_km"] = round(dropoff_km, 3)
        item["owner"] = None if owner is None else {
            "name": owner.name,
            "phone": owner.phone,
            "vehicle_type": owner.vehicle_type,
        }
        results.append(item)

    logger.info("Search by user %s: %d of %d routes matched",
                current_user.id, len(results), len(candidates))
    return {"matches": results}


# ─── ROUTE REQUESTS ──────────────────────────────────────────────────────────

@router.post("/routes/{route_id}/requests", response_model=RequestOut, status_code=201)
def create_request(
    route_id: int,
    req_in: RequestIn,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Ask to join a route."""
    route = db.get(Route, route_id)
    if route is None:
        raise HTTPException(404, "Route not found")
    if route.owner_id == current_user.id:
        raise HTTPException(400, "You cannot request your own route")
    if not route.is_active:
        raise HTTPException(400, "This route is not active")
    if req_in.requested_seats < 1:
        raise HTTPException(400, "Request at least one seat")
    if req_in.requested_seats > route.seats_available:
        raise HTTPException(400, f"Only {route.seats_available} seat(s) available")

    existing = db.query(RouteRequest)\
                 .filter_by(requester_id=current_user.id, route_id=route.id)\
                 .first()
    if existing:
        raise HTTPException(409, "You have already sent a request for this route")

    req = RouteRequest(
        requester_id    = current_user.id,
        route_id        = route.id,
        requested_seats = req_in.requested_seats,
        message         = req_in.message or None,
        status          = "pending",
    )
    db.add(req)
    try:
        db.commit()
    except IntegrityError:
        # a concurrent submission won the unique constraint
        db.rollback()
        raise HTTPException(409, "You have already sent a request for this route")
    db.refresh(req)
    return req


@router.get("/requests/incoming")
def incoming_requests(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Requests for the caller's routes, newest first."""
    rows = db.query(RouteRequest)\
             .join(Route, RouteRequest.route_id == Route.id)\
             .filter(Route.owner_id == current_user.id)\
             .order_by(RouteRequest.created_at.desc(), RouteRequest.id.desc())\
             .all()

    requester_ids = {r.requester_id for r in rows}
    profiles = {}
    if requester_ids:
        for p in db.query(Profile).filter(Profile.id.in_(requester_ids)):
            profiles[p.id] = p

    out = []
    for r in rows:
        item = RequestOut.model_validate(r).model_dump()
        item["route"] = _route_summary(r.route)
        p = profiles.get(r.requester_id)
        item["requester"] = {"name": "Unknown"} if p is None else {
            "name": p.name, "phone": p.phone, "email": p.email,
        }
        out.append(item)
    return {"requests": out}


@router.get("/requests/mine", response_model=List[RequestOut])
def my_requests(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return db.query(RouteRequest)\
             .filter_by(requester_id=current_user.id)\
             .order_by(RouteRequest.created_at.desc(), RouteRequest.id.desc())\
             .all()


@router.patch("/requests/{request_id}", response_model=RequestOut)
def update_request_status(
    request_id: int,
    body: StatusIn,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Accept or reject a request; only the route owner may do this."""
    if body.status not in ("accepted", "rejected"):
        raise HTTPException(400, "Status must be 'accepted' or 'rejected'")

    req = db.get(RouteRequest, request_id)
    if req is None:
        raise HTTPException(404, "Request not found")
    route = req.route
    if route is None or route.owner_id != current_user.id:
        raise HTTPException(403, "Only the route owner can update this request")

    if body.status == "accepted" and req.status != "accepted":
        taken = _accepted_seats(db, route.id, exclude_request_id=req.id)
        if taken + req.requested_seats > route.seats_available:
            raise HTTPException(
                409,
                f"Not enough seats: {route.seats_available - taken} seat(s) left"
            )

    req.status = body.status
    db.commit()
    db.refresh(req)
    logger.info("Request %s %s by user %s", req.id, body.status, current_user.id)
    return req


# ─── SCHEDULE ────────────────────────────────────────────────────────────────

@router.get("/schedule")
def my_schedule(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> Dict[str, list]:
    """The caller's active routes laid out by weekday."""
    routes = db.query(Route)\
               .filter(Route.owner_id == current_user.id,
                       Route.is_active.is_(True))\
               .order_by(Route.departure_time, Route.id)\
               .all()
    schedule = {day: [] for day in WEEKDAYS}
    for route in routes:
        for day in route.active_days or []:
            if day in schedule:
                schedule[day].append(_route_summary(route))
    return schedule
