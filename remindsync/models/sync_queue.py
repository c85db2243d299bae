from sqlalchemy import Column, Integer, String, DateTime, Text, JSON
from remindsync.db.database import Base


class SyncQueueRow(Base):
    """Pending mutation for the remote store."""
    __tablename__ = "sync_queue"

    id = Column(Integer, primary_key=True, index=True)  # Autoincrement id gives FIFO order
    operation = Column(String, nullable=False)  # 'insert', 'update' or 'delete'
    table_name = Column(String, nullable=False)
    record_id = Column(Integer, nullable=True, index=True)
    payload = Column(JSON, nullable=False)
    base_updated_at = Column(DateTime(timezone=True), nullable=True)
    enqueued_at = Column(DateTime(timezone=True), nullable=False)
    retry_count = Column(Integer, default=0)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    conflict = Column(JSON, nullable=True)  # Last detected conflict with the remote snapshot

    def __repr__(self):
        return f"<SyncQueueRow {self.id}: {self.operation} {self.table_name}/{self.record_id}>"


class DeadLetterRow(Base):
    """Queue item retired after exhausting its attempts."""
    __tablename__ = "sync_dead_letter"

    id = Column(Integer, primary_key=True, index=True)
    queue_item = Column(JSON, nullable=False)  # Full SyncQueueItem map
    reason = Column(Text, nullable=False)
    failed_at = Column(DateTime(timezone=True), nullable=False)
