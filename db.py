# db.py

import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from typing import Generator
from dotenv import load_dotenv

load_dotenv()

# local SQLite file unless DATABASE_URL points elsewhere
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "sqlite:///./sharewheel.db"
)

# SQLite connections are shared across FastAPI worker threads
connect_args = {}
engine_kwargs = {}
if DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False}
    # in-memory databases live and die with a single connection
    if DATABASE_URL in ("sqlite://", "sqlite:///:memory:"):
        engine_kwargs["poolclass"] = StaticPool

# engine
engine = create_engine(
    DATABASE_URL,
    connect_args=connect_args,
    echo=os.getenv("SQL_ECHO", "0") == "1",
    **engine_kwargs,
)

# session factory, one session per request
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

# declarative base shared by models.py
Base = declarative_base()

PLAN_CATALOG = [
    {
        "name": "monthly",
        "description": "Perfect for trying out our platform",
        "price_pkr": 2000.0,
        "months": 1,
    },
    {
        "name": "quarterly",
        "description": "Best value for regular car owners",
        "price_pkr": 5000.0,
        "months": 3,
    },
    {
        "name": "yearly",
        "description": "Maximum savings for committed car owners",
        "price_pkr": 18000.0,
        "months": 12,
    },
]

def seed_plans(db) -> int:
    """Insert any catalog plan that is not in the table yet; returns how many were added."""
    from models import SubscriptionPlan
    existing = {name for (name,) in db.query(SubscriptionPlan.name)}
    missing = [SubscriptionPlan(**plan) for plan in PLAN_CATALOG
               if plan["name"] not in existing]
    if missing:
        db.add_all(missing)
        db.commit()
    return len(missing)

def init_db() -> None:
    import models   # noqa: F401  (registers the tables on Base.metadata)
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        seed_plans(db)

def get_db() -> Generator:
    """Per-request session for `Depends(get_db)`, closed after the response."""
    with SessionLocal() as db:
        yield db
