"""Database-agnostic type definitions for SQLAlchemy models.

This module provides type definitions that work with both SQLite and PostgreSQL.
"""
from sqlalchemy import JSON, Numeric, Uuid

# JSONB is PostgreSQL-specific, JSON works with both SQLite and PostgreSQL
JSONType = JSON

# Native UUID on PostgreSQL, CHAR(32) on SQLite
UUIDType = Uuid

# All money columns: 12 digits, 2 decimal places
MoneyType = Numeric(12, 2)

# Percentages such as commission rates and fee rates
RateType = Numeric(7, 2)
