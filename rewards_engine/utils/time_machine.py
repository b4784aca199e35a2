# rewards_engine/utils/time_machine.py
"""
Time machine - single clock for qualification windows and binary periods.
Virtual time lets evaluation be replayed "as of" a past moment.
"""
from datetime import datetime, timezone, timedelta
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class TimeMachine:
    """Singleton for managing system time."""

    _instance = None
    _virtualTime: Optional[datetime] = None
    _isTestMode: bool = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @property
    def now(self) -> datetime:
        """Get current system time (real or virtual), naive UTC."""
        if self._isTestMode and self._virtualTime:
            return self._virtualTime
        return datetime.now(timezone.utc).replace(tzinfo=None)

    def resolveAsOf(self, asOf: Optional[datetime] = None) -> datetime:
        """Normalize an as-of moment to naive UTC, defaulting to now."""
        if asOf is None:
            return self.now
        if asOf.tzinfo is not None:
            return asOf.astimezone(timezone.utc).replace(tzinfo=None)
        return asOf

    def windowStart(self, asOf: datetime, days: int) -> Optional[datetime]:
        """Lower bound of a trailing window; None when the window is unbounded."""
        if not days or days <= 0:
            return None
        return asOf - timedelta(days=days)

    def windowKey(self, asOf: datetime, days: int) -> str:
        """Stable cache token for a window (day granularity)."""
        start = self.windowStart(asOf, days)
        startToken = start.strftime('%Y%m%d') if start else "all"
        return f"{startToken}-{asOf.strftime('%Y%m%d')}"

    def setTime(self, newTime: datetime, adminId: Optional[int] = None):
        """Set virtual time for testing."""
        self._isTestMode = True
        self._virtualTime = self.resolveAsOf(newTime)
        logger.info(f"Virtual time set to {self._virtualTime} by admin {adminId}")

    def resetToRealTime(self):
        """Return to real time."""
        self._isTestMode = False
        self._virtualTime = None
        logger.info("Returned to real time")


# Global instance
timeMachine = TimeMachine()
