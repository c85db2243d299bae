import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from remindsync.clock import Clock, as_utc, format_instant, utc_now
from remindsync.models.health_state import HealthStateRow
from remindsync.models.record import HealthState
from remindsync.services.error_log import ErrorCategory, ErrorEntry, ErrorLog, Severity

logger = logging.getLogger(__name__)

STATE_KEY = "state"
ARM_BATCH_FAILURE = "ARM_BATCH_FAILURE"

CRITICAL_CATEGORIES = (
    ErrorCategory.SCHEDULING,
    ErrorCategory.SYNC_TRANSIENT,
    ErrorCategory.SYNC_CONFLICT,
)
CRITICAL_SEVERITIES = (Severity.ERROR, Severity.CRITICAL)
CRITICAL_THRESHOLD = 3
CRITICAL_WINDOW = timedelta(hours=1)
REPORT_WINDOW = timedelta(hours=24)


class FallbackController:
    """
    Process-wide Normal/Fallback health state.

    Enters fallback when the trigger scheduler asks for it, when more than
    three critical scheduling or sync errors land within an hour, or when
    background permission is revoked. Leaves fallback only through
    ``check_health`` once none of those conditions hold.
    """

    def __init__(self, session_factory, error_log: ErrorLog, clock: Clock = utc_now):
        self._session_factory = session_factory
        self._error_log = error_log
        self._clock = clock
        self._state = HealthState()
        self._lock = asyncio.Lock()
        error_log.add_listener(self._on_error_entry)

    @property
    def in_fallback_mode(self) -> bool:
        return self._state.in_fallback_mode

    @property
    def background_permitted(self) -> bool:
        return self._state.background_permitted

    @property
    def state(self) -> HealthState:
        return HealthState(**vars(self._state))

    async def load(self) -> HealthState:
        """Restore the persisted state."""
        async with self._session_factory() as session:
            row = await session.get(HealthStateRow, STATE_KEY)
        if row is not None and isinstance(row.value, dict):
            self._state.in_fallback_mode = bool(row.value.get("in_fallback_mode", False))
            self._state.background_permitted = bool(row.value.get("background_permitted", True))
            self._state.reason = row.value.get("reason")
            self._state.updated_at = as_utc(row.updated_at)
        logger.info(f"Health state loaded: fallback={self._state.in_fallback_mode}")
        return self.state

    async def _persist(self):
        self._state.updated_at = as_utc(self._clock())
        value = {
            "in_fallback_mode": self._state.in_fallback_mode,
            "background_permitted": self._state.background_permitted,
            "reason": self._state.reason,
        }
        async with self._session_factory() as session:
            row = await session.get(HealthStateRow, STATE_KEY)
            if row is None:
                session.add(HealthStateRow(key=STATE_KEY, value=value))
            else:
                row.value = value
            await session.commit()

    async def _enter(self, reason: str):
        async with self._lock:
            if self._state.in_fallback_mode:
                return
            self._state.in_fallback_mode = True
            self._state.reason = reason
            await self._persist()
        logger.warning(f"Entering fallback mode: {reason}")
        await self._error_log.record(
            "FALLBACK_ENTERED", reason, category=ErrorCategory.GENERAL, severity=Severity.WARNING
        )

    async def request_fallback(self, reason: str):
        """Signal from the trigger scheduler that a whole arm batch mostly failed."""
        await self._error_log.record(
            ARM_BATCH_FAILURE, reason, category=ErrorCategory.SCHEDULING, severity=Severity.CRITICAL
        )
        await self._enter(reason)

    async def set_background_permission(self, permitted: bool):
        async with self._lock:
            changed = self._state.background_permitted != permitted
            self._state.background_permitted = permitted
            await self._persist()
        if not changed:
            return
        if permitted:
            logger.info("Background permission granted")
            return
        await self._error_log.record(
            "BACKGROUND_PERMISSION_DENIED",
            "Background execution permission was revoked",
            category=ErrorCategory.PERMISSION,
            severity=Severity.WARNING,
        )
        await self._enter("Background permission denied")

    async def _on_error_entry(self, entry: ErrorEntry):
        if self._state.in_fallback_mode:
            return
        if entry.category not in CRITICAL_CATEGORIES or entry.severity not in CRITICAL_SEVERITIES:
            return
        count = await self._count_critical()
        if count > CRITICAL_THRESHOLD:
            await self._enter(f"{count} critical scheduling/sync errors in the last hour")

    async def _count_critical(self) -> int:
        return await self._error_log.count_recent(
            CRITICAL_WINDOW, categories=CRITICAL_CATEGORIES, severities=CRITICAL_SEVERITIES
        )

    async def fallback_reason(self) -> Optional[str]:
        """The first fallback condition that currently holds, or None."""
        if not self._state.background_permitted:
            return "Background permission denied"
        if await self._error_log.count_recent(CRITICAL_WINDOW, code=ARM_BATCH_FAILURE):
            return "Trigger arming failed for most reminders within the last hour"
        count = await self._count_critical()
        if count > CRITICAL_THRESHOLD:
            return f"{count} critical scheduling/sync errors in the last hour"
        return None

    async def check_health(self) -> bool:
        """
        Leave fallback mode if no fallback condition holds any more.

        Returns:
            True if the controller is in fallback mode afterwards
        """
        if not self._state.in_fallback_mode:
            logger.info("Health check: already in normal mode")
            return False

        reason = await self.fallback_reason()
        if reason is not None:
            logger.info(f"Health check: staying in fallback mode ({reason})")
            return True

        async with self._lock:
            self._state.in_fallback_mode = False
            self._state.reason = None
            await self._persist()
        logger.info("System health restored, back to normal mode")
        await self._error_log.record(
            "FALLBACK_EXITED",
            "System health restored, resetting to normal mode",
            category=ErrorCategory.GENERAL,
            severity=Severity.INFO,
        )
        return False

    async def health_report(self) -> Dict[str, Any]:
        """State, error counts for the last 24 hours and recommendations."""
        counts = await self._error_log.counts_by_category(REPORT_WINDOW)
        self._state.error_counts = counts
        reason = await self.fallback_reason()
        should_fallback = reason is not None
        mismatch = self._state.in_fallback_mode != should_fallback

        recent = await self._error_log.recent()
        since = as_utc(self._clock()) - REPORT_WINDOW
        recent = [e for e in recent if e.timestamp >= since]
        critical = [e for e in recent if e.severity in CRITICAL_SEVERITIES]
        warnings = [e for e in recent if e.severity == Severity.WARNING]

        recommendations = []
        if mismatch:
            if self._state.in_fallback_mode:
                recommendations.append("System health appears good, consider running a health check")
            else:
                recommendations.append("System may need fallback mode due to recent errors")
        if any(e.category == ErrorCategory.SCHEDULING for e in critical):
            recommendations.append("Check the trigger scheduler and its job store")
        if any(e.category in (ErrorCategory.SYNC_TRANSIENT, ErrorCategory.SYNC_CONFLICT) for e in critical):
            recommendations.append("Check connectivity to the remote store and the dead-letter list")
        if not self._state.background_permitted:
            recommendations.append("Grant background execution permission")
        if len(warnings) > 10:
            recommendations.append("High number of warnings, investigate recurring issues")
        if not recommendations:
            recommendations.append("System health looks good")

        return {
            "in_fallback_mode": self._state.in_fallback_mode,
            "should_be_in_fallback_mode": should_fallback,
            "fallback_mode_correct": not mismatch,
            "background_permitted": self._state.background_permitted,
            "reason": self._state.reason,
            "error_counts": counts,
            "recent_error_count": len(recent),
            "critical_errors": [f"{e.code}: {e.message}" for e in critical],
            "recommendations": recommendations,
            "checked_at": format_instant(self._clock()),
        }
