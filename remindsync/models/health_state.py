from sqlalchemy import Column, String, DateTime, JSON
from sqlalchemy.sql import func
from remindsync.db.database import Base


class HealthStateRow(Base):
    """Persisted fallback/health flags, one row per key."""
    __tablename__ = "health_state"

    key = Column(String, primary_key=True)
    value = Column(JSON, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
