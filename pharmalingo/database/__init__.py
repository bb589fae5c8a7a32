"""
Database package for persisted learner progress.
"""

from pharmalingo.database.base import Base, metadata
from pharmalingo.database.models import ProgressRecord

__all__ = ['Base', 'metadata', 'ProgressRecord']
