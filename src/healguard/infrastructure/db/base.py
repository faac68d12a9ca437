# src/healguard/infrastructure/db/base.py
"""
Database engine setup and session management.

The engine uses a custom JSON serializer so Decimal, datetime and Enum values inside
JSON columns (metric snapshots, action payloads, audit metadata) are stored without
"not JSON serializable" errors.
"""

import json
from datetime import datetime, date
from decimal import Decimal
from enum import Enum

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from healguard.config import settings
from healguard.infrastructure.db.models.base import Base  # noqa: F401 (re-export)


# --- Custom JSON Serializer ---
def _custom_json_serializer(obj):
    """
    Handles non-serializable types for JSON conversion.
    """
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    raise TypeError(f"Object of type {obj.__class__.__name__} is not JSON serializable")


def _normalize_url(url: str) -> str:
    url = (url or "").strip()
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+psycopg://", 1)
    return url


def build_engine(url: str):
    url = _normalize_url(url)
    return create_engine(
        url,
        # SQLite connections are shared across the request threadpool.
        connect_args={"check_same_thread": False} if url.startswith("sqlite") else {},
        pool_pre_ping=not url.startswith("sqlite"),
        json_serializer=lambda obj: json.dumps(obj, default=_custom_json_serializer)
    )


# --- Database Engine Creation ---
engine = build_engine(settings.DATABASE_URL)


# --- Session Management ---
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


# --- Dependency for FastAPI ---
def get_session():
    """
    A dependency function for FastAPI to provide a DB session to endpoints.
    Routers commit explicitly; the session is always closed afterward.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
