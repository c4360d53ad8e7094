"""Database-agnostic type definitions for SQLAlchemy models.

This module provides type definitions that work with both SQLite and PostgreSQL.
"""
from sqlalchemy import Uuid

# Native UUID on PostgreSQL, CHAR(32) on SQLite
UUIDType = Uuid
