from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, JSON
from remindsync.db.database import Base


class ReminderRow(Base):
    """Local copy of a reminder."""
    __tablename__ = "reminders"

    id = Column(Integer, primary_key=True, index=True)
    remote_id = Column(String, nullable=True, index=True)  # UUID of the remote row once it exists
    title = Column(Text, nullable=False)
    category = Column(String, nullable=False)
    description = Column(Text, default="")
    frequency = Column(JSON, nullable=False)  # Tagged frequency map, see models.frequency
    time_of_day = Column(String, nullable=False)  # "HH:MM"
    status = Column(String, default="active", index=True)
    enable_notifications = Column(Boolean, default=True)
    repeat_limit = Column(Integer, default=0)  # 0 means unbounded
    completion_count = Column(Integer, default=0)
    next_fire_at = Column(DateTime(timezone=True), nullable=True)  # Null means no future occurrence
    last_completed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    snoozed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    needs_sync = Column(Boolean, default=True)

    def __repr__(self):
        return f"<ReminderRow {self.id}: {self.title[:20]}{'...' if len(self.title) > 20 else ''}>"
