"""Database-agnostic type definitions for SQLAlchemy models.

This module provides type definitions that work with both SQLite and PostgreSQL.
"""
from sqlalchemy import JSON, Numeric

# Use JSON instead of JSONB for cross-database compatibility
# JSONB is PostgreSQL-specific, JSON works with both SQLite and PostgreSQL
JSONType = JSON

# Money columns: two fraction digits, returned as Decimal
MoneyType = Numeric(12, 2, asdecimal=True)

# Percentages such as 21.00 or 70.00
PercentType = Numeric(7, 4, asdecimal=True)

# Coordinates with ~1cm precision
CoordinateType = Numeric(10, 7, asdecimal=True)
