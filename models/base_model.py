#!/usr/bin/env python3
"""
Shared SQLAlchemy base for the school administration API.

- UUID primary key (String(36)) with defaults
- created_at / updated_at timestamps
- save() that uses the DBStorage instance in models/__init__.py
- to_dict() that formats timestamps, removes SA internals and secrets

Notes:
- Timestamps are stamped by the application clock (naive UTC, microsecond
  precision) rather than the DB server. SQLite's CURRENT_TIMESTAMP only has
  second precision, and refresh token eviction orders sessions by created_at.
"""

from __future__ import annotations

from datetime import datetime, timezone
import uuid

# Importing 'models' gives access to the global 'storage' instance (DBStorage)
import models

from sqlalchemy import Column, String, DateTime
from sqlalchemy.orm import declarative_base

TIME_FMT = "%Y-%m-%dT%H:%M:%S.%f"

# Never serialized by to_dict()
SENSITIVE_FIELDS = {"password", "password_hash", "token_hash"}

# Declarative base for all models
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC now; every timestamp column in the schema uses this convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _uuid_str() -> str:
    """Return a canonical UUIDv4 string (36 chars, with hyphens)."""
    return str(uuid.uuid4())


class BaseModel:
    """
    Base mixin for all persistent models.

    - id, created_at, updated_at
    - save() wired to DBStorage
    - to_dict() with __class__ and timestamp formatting
    """

    id = Column(String(36), primary_key=True, default=_uuid_str, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    def __init__(self, *args, **kwargs):
        """
        Allow attribute initialization via kwargs without requiring a session here.
        If you pass created_at/updated_at explicitly (e.g., in tests), they will be set.
        """
        for key, value in kwargs.items():
            if key != "__class__":
                setattr(self, key, value)
        # Ensure an id exists if caller passed none
        if getattr(self, "id", None) is None:
            self.id = _uuid_str()

    def __str__(self) -> str:
        """Human-friendly representation including id and fields."""
        return f"[{self.__class__.__name__}] ({self.id})"

    def save(self):
        """Update updated_at and persist the instance using DBStorage."""
        self.updated_at = utcnow()
        models.storage.new(self)
        models.storage.save()

    def to_dict(self) -> dict:
        """
        Return a dictionary of fields suitable for logs and fixtures:
        - Adds __class__
        - Formats datetime values to TIME_FMT
        - Removes SQLAlchemy internal state and credential material
        """
        d = {
            k: v
            for k, v in self.__dict__.items()
            if k != "_sa_instance_state" and k not in SENSITIVE_FIELDS
        }
        for key, value in d.items():
            if isinstance(value, datetime):
                d[key] = value.strftime(TIME_FMT)
        d["__class__"] = self.__class__.__name__
        return d
