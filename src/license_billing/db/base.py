"""
Declarative base and shared column types
"""
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

from ..timeutils import as_utc

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def isoformat_or_none(value):
    value = as_utc(value)
    return value.isoformat() if value else None


def float_or_none(value):
    return float(value) if value is not None else None
