"""
Persisted progress table: one JSON document per learner.
"""

import datetime

from sqlalchemy import Column, DateTime, Integer, JSON, String

from pharmalingo.database.base import Base


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class ProgressRecord(Base):
    """Serialized ``UserProgress`` snapshot for one learner"""

    __tablename__ = "user_progress"

    user_id = Column(String(128), primary_key=True)
    data = Column(JSON, nullable=False)
    schema_version = Column(Integer, nullable=False, default=2)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    def __repr__(self) -> str:
        return f"<ProgressRecord user_id={self.user_id!r} updated_at={self.updated_at}>"
