#!/usr/bin/env python3
# main.py

import os
import logging
from typing import List, Optional
from datetime import datetime, timedelta
from urllib.parse import urlencode

import stripe
from fastapi import (
    FastAPI, Depends, HTTPException, Request, Response, status
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

import billing
import payments
from db import init_db, get_db
from auth import (
    UserCreate, create_access_token, create_reset_token, decode_token,
    verify_password, get_current_user, has_valid_session,
    ACCESS_TOKEN_EXPIRE_MINUTES, SESSION_COOKIE, hash_password
)
from carpool import router as carpool_router
from costs import monthly_costs
from geocoding import GeocodingError, geocode, reverse_geocode
from models import (
    User, Profile, SubscriptionPlan, Route, RouteRequest,
    GENDERS, VEHICLE_TYPES, utcnow
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("sharewheel.api")

app = FastAPI(title="ShareWheel API")

# ─── Startup & Health ────────────────────────────────────────────────────────

@app.on_event("startup")
def on_startup():
    init_db()

@app.get("/")
def root():
    return {"message": "ShareWheel carpool API", "status": "ok"}

@app.get("/health")
async def health():
    return {"status": "ok"}


# ─── Session gate ────────────────────────────────────────────────────────────

PUBLIC_PATHS = {
    "/",
    "/health",
    "/plans",
    "/token",
    "/auth/signin",
    "/auth/signup",
    "/auth/forgot-password",
    "/auth/reset-password",
    "/api/webhooks/stripe",
    "/api/webhooks/stripe/test",
    "/docs",
    "/redoc",
    "/openapi.json",
}

def is_public_path(path: str) -> bool:
    if path in PUBLIC_PATHS:
        return True
    return path.startswith("/static/") or path == "/favicon.ico"

@app.middleware("http")
async def session_gate(request: Request, call_next):
    path = request.url.path
    signed_in = has_valid_session(request)

    # signed-in users have no business on the sign-in/sign-up pages
    if signed_in and path in PUBLIC_PATHS and path.startswith("/auth"):
        return RedirectResponse("/dashboard", status_code=status.HTTP_303_SEE_OTHER)

    if is_public_path(path) or signed_in:
        return await call_next(request)

    if path.startswith("/api/"):
        return JSONResponse({"detail": "Unauthorized"}, status_code=401)
    target = "/auth/signin?" + urlencode({"redirectedFrom": path})
    return RedirectResponse(target, status_code=status.HTTP_303_SEE_OTHER)


# ─── CORS ────────────────────────────────────────────────────────────────────

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        o.strip() for o in os.getenv("ALLOW_ORIGINS", "*").split(",") if o.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(carpool_router)


# ─── Pydantic Schemas ────────────────────────────────────────────────────────

class PlanOut(BaseModel):
    id: int
    name: str
    description: str
    price_pkr: float
    months: int

    class Config:
        from_attributes = True

class SubscriptionOut(BaseModel):
    plan_type: str
    status: str
    start_date: datetime
    end_date: datetime
    price: float

    class Config:
        from_attributes = True

class ProfileOut(BaseModel):
    id: int
    name: Optional[str]
    email: Optional[str]
    phone: Optional[str]
    company_email: Optional[str]
    home_address: Optional[str]
    office_address: Optional[str]
    vehicle_type: Optional[str]
    office_in_time: Optional[str]
    office_out_time: Optional[str]
    gender: Optional[str]
    user_type: str
    profile_completed: bool

    class Config:
        from_attributes = True

class ProfileIn(BaseModel):
    name: str = Field(..., min_length=2)
    email: Optional[str] = None
    phone: Optional[str] = None
    company_email: Optional[str] = None
    home_address: Optional[str] = None
    office_address: Optional[str] = None
    vehicle_type: str = "none"
    office_in_time: Optional[str] = None
    office_out_time: Optional[str] = None
    gender: Optional[str] = None

class SignInIn(BaseModel):
    email: str
    password: str

class ForgotPasswordIn(BaseModel):
    email: str

class ResetPasswordIn(BaseModel):
    token: str
    password: str = Field(..., min_length=6)

class CheckoutIn(BaseModel):
    plan_type: Optional[str] = Field(None, alias="planType")
    plan_price: Optional[float] = Field(None, alias="planPrice")

    class Config:
        populate_by_name = True


# ─── AUTH ROUTES ─────────────────────────────────────────────────────────────

def _session_response(response: Response, user: User) -> dict:
    token = create_access_token(
        data={"sub": user.email},
        expires_delta=timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    response.set_cookie(
        SESSION_COOKIE, token,
        max_age=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        httponly=True,
        samesite="lax",
    )
    return {"access_token": token, "token_type": "bearer"}

@app.post("/auth/signup", status_code=201)
def signup(
    user_in: UserCreate,
    db: Session = Depends(get_db)
):
    email = user_in.email.strip().lower()
    # ensure email isn't taken
    if db.query(User).filter_by(email=email).first():
        raise HTTPException(400, "Email already registered")

    user = User(
        email     = email,
        hashed_pw = hash_password(user_in.password)
    )
    db.add(user)
    db.commit()
    db.refresh(user)

    # every account starts out as a rider
    db.add(Profile(id=user.id, name=user_in.name, email=email, user_type="common_user"))
    db.commit()

    return {"msg": "User created", "id": user.id}


def _authenticate(db: Session, email: str, password: str) -> User:
    user = db.query(User).filter_by(email=email.strip().lower()).first()
    if not user or not verify_password(password, user.hashed_pw):
        logger.info("Failed sign-in for %s", email)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user

@app.post("/auth/signin")
def signin(
    creds: SignInIn,
    response: Response,
    db: Session = Depends(get_db)
):
    user = _authenticate(db, creds.email, creds.password)
    return _session_response(response, user)


@app.post("/token")
def login_for_access_token(
    response: Response,
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db)
):
    """OAuth2 password flow for API clients; `username` carries the email."""
    user = _authenticate(db, form_data.username, form_data.password)
    return _session_response(response, user)


@app.post("/auth/signout")
def signout(response: Response):
    response.delete_cookie(SESSION_COOKIE)
    return {"msg": "Signed out"}


@app.post("/auth/forgot-password")
def forgot_password(
    body: ForgotPasswordIn,
    db: Session = Depends(get_db)
):
    """Issue a reset token. The answer is the same whether or not the email exists."""
    user = db.query(User)\
             .filter_by(email=body.email.strip().lower())\
             .first()
    if user:
        create_reset_token(user.email)
        logger.info("Password reset token issued for user %s", user.id)
    return {"msg": "If the email is registered, a reset link has been sent"}


@app.post("/auth/reset-password")
def reset_password(
    body: ResetPasswordIn,
    db: Session = Depends(get_db)
):
    payload = decode_token(body.token, purpose="reset")
    if payload is None:
        raise HTTPException(400, "Invalid or expired reset token")
    user = db.query(User).filter_by(email=payload["sub"]).first()
    if user is None:
        raise HTTPException(400, "Invalid or expired reset token")
    user.hashed_pw = hash_password(body.password)
    db.commit()
    return {"msg": "Password updated"}


# ─── PROFILE & DASHBOARD ─────────────────────────────────────────────────────

def _profile_for(db: Session, user: User) -> Profile:
    profile = user.profile
    if profile is None:
        profile = Profile(id=user.id, email=user.email, user_type="common_user")
        db.add(profile)
        db.commit()
        db.refresh(profile)
    return profile

@app.get("/api/profile", response_model=ProfileOut)
def read_profile(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return _profile_for(db, current_user)


@app.put("/api/profile", response_model=ProfileOut)
def save_profile(
    profile_in: ProfileIn,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    if profile_in.vehicle_type not in VEHICLE_TYPES:
        raise HTTPException(400, f"vehicle_type must be one of {', '.join(VEHICLE_TYPES)}")
    if profile_in.gender is not None and profile_in.gender not in GENDERS:
        raise HTTPException(400, f"gender must be one of {', '.join(GENDERS)}")

    profile = _profile_for(db, current_user)
    for key, value in profile_in.model_dump().items():
        setattr(profile, key, value)
    profile.profile_completed = True
    db.commit()
    db.refresh(profile)
    return profile


@app.get("/dashboard")
def dashboard(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Profile, subscription and carpool counts for the signed-in user."""
    profile = _profile_for(db, current_user)
    sub = current_user.subscription
    routes = db.query(Route).filter_by(owner_id=current_user.id).count()
    pending = db.query(RouteRequest)\
                .join(Route, RouteRequest.route_id == Route.id)\
                .filter(Route.owner_id == current_user.id,
                        RouteRequest.status == "pending")\
                .count()
    return {
        "email": current_user.email,
        "profile": ProfileOut.model_validate(profile).model_dump(),
        "subscription": None if sub is None else SubscriptionOut.model_validate(sub).model_dump(),
        "subscription_active": bool(sub and sub.is_current()),
        "routes": routes,
        "pending_requests": pending,
    }


# ─── SUBSCRIPTION MANAGEMENT ─────────────────────────────────────────────────

@app.get("/plans", response_model=List[PlanOut])
def list_plans(db: Session = Depends(get_db)):
    """List all available subscription plans."""
    return db.query(SubscriptionPlan).order_by(SubscriptionPlan.months).all()


@app.get("/api/subscription")
def read_subscription(current_user: User = Depends(get_current_user)):
    """Get the current user's subscription and whether it is still running."""
    sub = current_user.subscription
    return {
        "subscription": None if sub is None else SubscriptionOut.model_validate(sub).model_dump(),
        "is_active": bool(sub and sub.is_current()),
    }


@app.post("/api/create-checkout-session")
def create_checkout_session(
    req: CheckoutIn,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Start a hosted Stripe checkout for one of the subscription plans."""
    if not req.plan_type or not req.plan_price:
        raise HTTPException(400, "Plan type and price are required")
    if req.plan_type not in billing.PLAN_MONTHS:
        raise HTTPException(400, "Invalid plan type")

    profile = _profile_for(db, current_user)
    if profile.vehicle_type not in ("car", "bike"):
        raise HTTPException(
            400,
            "You need to own a car or bike to subscribe. Please update your profile first."
        )

    base_url = os.getenv("APP_BASE_URL") or str(request.base_url)
    try:
        return payments.create_checkout_session(
            current_user.id, req.plan_type, req.plan_price, base_url
        )
    except stripe.StripeError as e:
        logger.error("Error creating checkout session: %s", e)
        raise HTTPException(502, f"Failed to create checkout session: {e}")
    except RuntimeError as e:
        logger.error("Error creating checkout session: %s", e)
        raise HTTPException(500, "Payments are not configured")


# ─── STRIPE WEBHOOK ──────────────────────────────────────────────────────────

@app.post("/api/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db)
):
    logger.info("Webhook received")
    secret = os.getenv("STRIPE_WEBHOOK_SECRET")
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET is not set")
        raise HTTPException(500, "Webhook secret not configured")

    body = await request.body()
    signature = request.headers.get("stripe-signature")
    if not signature:
        logger.error("No stripe-signature header found")
        raise HTTPException(400, "No signature found")

    try:
        event = payments.verify_webhook(body, signature, secret)
    except payments.WebhookVerificationError as e:
        logger.error("Webhook signature verification failed: %s", e)
        raise HTTPException(400, f"Webhook Error: {e}")
    logger.info("Webhook signature verified. Event type: %s", event["type"])

    try:
        processed = billing.process_event(db, event)
    except billing.BillingError as e:
        logger.error("Rejected %s event: %s", event["type"], e)
        raise HTTPException(400, str(e))
    except Exception as e:
        logger.exception("Error processing %s event", event["type"])
        raise HTTPException(500, f"Webhook handler failed: {e}")

    result = {"received": True, "eventType": event["type"]}
    if not processed:
        result["duplicate"] = True
    return result


@app.get("/api/webhooks/stripe/test")
def webhook_check():
    """Reachability probe for the webhook endpoint."""
    return {
        "message": "Webhook endpoint is accessible",
        "timestamp": utcnow().isoformat(),
        "webhookSecret": "Set" if os.getenv("STRIPE_WEBHOOK_SECRET") else "Not set",
    }


# ─── GEOCODING & CALCULATOR ──────────────────────────────────────────────────

@app.get("/api/geocode")
def geocode_address(q: str, current_user: User = Depends(get_current_user)):
    try:
        result = geocode(q)
    except GeocodingError as e:
        raise HTTPException(502, str(e))
    if result is None:
        raise HTTPException(404, "No location found for that address")
    return result


@app.get("/api/reverse-geocode")
def reverse_geocode_point(
    lat: float,
    lng: float,
    current_user: User = Depends(get_current_user)
):
    try:
        result = reverse_geocode(lat, lng)
    except GeocodingError as e:
        raise HTTPException(502, str(e))
    if result is None:
        raise HTTPException(404, "No address found for those coordinates")
    return result


@app.get("/api/calculator")
def cost_calculator(
    distance_km: float,
    people: int = 4,
    petrol_price: float = 280,
    current_user: User = Depends(get_current_user)
):
    try:
        return monthly_costs(distance_km, people, petrol_price)
    except ValueError as e:
        raise HTTPException(400, str(e))
