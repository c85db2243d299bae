from sqlalchemy import Column, Integer, String, DateTime, Text, JSON
from remindsync.db.database import Base


class ErrorLogRow(Base):
    """Operational event."""
    __tablename__ = "error_log"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String, nullable=False, index=True)
    message = Column(Text, nullable=False)
    category = Column(String, nullable=False, index=True)
    severity = Column(String, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    details = Column(JSON, default=dict)
