"""
SQLAlchemy Base Configuration

This module provides the SQLAlchemy declarative base shared by the
persisted progress tables.
"""

from sqlalchemy import MetaData
from sqlalchemy.orm import declarative_base

# Constraint naming convention
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "pk": "pk_%(table_name)s"
}

metadata = MetaData(naming_convention=convention)

Base = declarative_base(metadata=metadata)
