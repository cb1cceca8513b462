"""Persistence layer for Huddle."""

from huddle.persistence.database import Database, SCHEMA_VERSION

__all__ = ["Database", "SCHEMA_VERSION"]
