import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select

from remindsync.clock import Clock, as_utc, format_instant, utc_now
from remindsync.models.error_log import ErrorLogRow

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    SCHEDULING = "scheduling"
    SYNC_TRANSIENT = "sync_transient"
    SYNC_CONFLICT = "sync_conflict"
    FATAL_LOCAL = "fatal_local"
    PERMISSION = "permission"
    GENERAL = "general"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


@dataclass
class ErrorEntry:
    code: str
    message: str
    category: ErrorCategory
    severity: Severity
    timestamp: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "timestamp": format_instant(self.timestamp),
            "metadata": self.metadata,
        }


Listener = Callable[[ErrorEntry], Any]


class ErrorLog:
    """
    Append-only, size-bounded log of operational events.

    Entries are kept in the local database (latest 100, at most 30 days old)
    and also written to the standard logger. Registered listeners are called
    with every new entry.
    """

    MAX_ENTRIES = 100
    RETENTION = timedelta(days=30)

    def __init__(self, session_factory, clock: Clock = utc_now):
        self._session_factory = session_factory
        self._clock = clock
        self._listeners: List[Listener] = []
        self._lock = asyncio.Lock()

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    async def record(
        self,
        code: str,
        message: str,
        category: ErrorCategory = ErrorCategory.GENERAL,
        severity: Severity = Severity.ERROR,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ErrorEntry:
        """
        Append an entry. Never raises: failures to persist are only logged.

        Args:
            code: Stable machine-readable code, e.g. ``ARM_FAILED``
            message: Human readable description
            category: Error category
            severity: Severity of the event
            metadata: Extra JSON-compatible details

        Returns:
            The recorded entry
        """
        entry = ErrorEntry(
            code=code,
            message=message,
            category=ErrorCategory(category),
            severity=Severity(severity),
            timestamp=as_utc(self._clock()),
            metadata=dict(metadata or {}),
        )
        logger.log(LOG_LEVELS[entry.severity], f"[{entry.category.value}] {code}: {message}")

        try:
            async with self._lock:
                async with self._session_factory() as session:
                    row = ErrorLogRow(
                        code=entry.code,
                        message=entry.message,
                        category=entry.category.value,
                        severity=entry.severity.value,
                        timestamp=entry.timestamp,
                        details=entry.metadata,
                    )
                    session.add(row)
                    await session.commit()
                    entry.id = row.id
                    await self._trim(session)
        except Exception as e:
            logger.error(f"Error persisting error log entry {code}: {str(e)}")

        for listener in list(self._listeners):
            try:
                result = listener(entry)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Error log listener failed for {code}: {str(e)}")
        return entry

    async def _trim(self, session):
        cutoff = as_utc(self._clock()) - self.RETENTION
        await session.execute(delete(ErrorLogRow).where(ErrorLogRow.timestamp < cutoff))

        keep = (
            select(ErrorLogRow.id)
            .order_by(ErrorLogRow.id.desc())
            .limit(self.MAX_ENTRIES)
        )
        await session.execute(delete(ErrorLogRow).where(ErrorLogRow.id.not_in(keep)))
        await session.commit()

    async def cleanup(self):
        """Drop entries past retention or beyond the size bound."""
        async with self._lock:
            async with self._session_factory() as session:
                await self._trim(session)

    async def recent(self, limit: Optional[int] = None) -> List[ErrorEntry]:
        """Entries newest first."""
        async with self._session_factory() as session:
            query = select(ErrorLogRow).order_by(ErrorLogRow.id.desc())
            if limit:
                query = query.limit(limit)
            result = await session.execute(query)
            return [self._to_entry(row) for row in result.scalars().all()]

    async def count_recent(
        self,
        window: timedelta,
        categories: Optional[Iterable[ErrorCategory]] = None,
        severities: Optional[Iterable[Severity]] = None,
        code: Optional[str] = None,
    ) -> int:
        """Count entries in the trailing ``window`` matching the filters."""
        since = as_utc(self._clock()) - window
        query = select(func.count()).select_from(ErrorLogRow).where(ErrorLogRow.timestamp >= since)
        if categories is not None:
            query = query.where(ErrorLogRow.category.in_([ErrorCategory(c).value for c in categories]))
        if severities is not None:
            query = query.where(ErrorLogRow.severity.in_([Severity(s).value for s in severities]))
        if code is not None:
            query = query.where(ErrorLogRow.code == code)
        async with self._session_factory() as session:
            result = await session.execute(query)
            return result.scalar_one()

    async def counts_by_category(self, window: timedelta) -> Dict[str, int]:
        since = as_utc(self._clock()) - window
        async with self._session_factory() as session:
            result = await session.execute(
                select(ErrorLogRow.category, func.count())
                .where(ErrorLogRow.timestamp >= since)
                .group_by(ErrorLogRow.category)
            )
            return {category: count for category, count in result.all()}

    async def clear(self):
        async with self._lock:
            async with self._session_factory() as session:
                await session.execute(delete(ErrorLogRow))
                await session.commit()
        logger.info("Error log cleared")

    @staticmethod
    def _to_entry(row: ErrorLogRow) -> ErrorEntry:
        return ErrorEntry(
            id=row.id,
            code=row.code,
            message=row.message,
            category=ErrorCategory(row.category),
            severity=Severity(row.severity),
            timestamp=as_utc(row.timestamp),
            metadata=row.details or {},
        )
