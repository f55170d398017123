"""Declarative base shared by the chronicle tables."""

from __future__ import annotations

from sqlalchemy import Column, DateTime
from sqlalchemy.orm import declarative_base

from chronicle.base import utcnow

Base = declarative_base()


class TimestampMixin:
    """``created_at`` / ``updated_at`` columns maintained by the ORM."""

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
