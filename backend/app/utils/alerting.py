import logging
import time
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlertRule:
    threshold: int
    window_seconds: int = 3600


# Events the authorization and lifecycle core reports. Anything else is ignored.
ALERT_RULES = {
    "PERMISSION_DENIED": AlertRule(threshold=25),
    "STALE_AUTHORIZATION": AlertRule(threshold=10),
    "TRANSITION_CONFLICT": AlertRule(threshold=10, window_seconds=600),
    "FOLLOW_UP_RECORD_FAILED": AlertRule(threshold=3, window_seconds=86400),
    "APPOINTMENT_REMINDER_FAILED": AlertRule(threshold=3, window_seconds=86400),
    "NOTIFICATION_SEND_FAILED": AlertRule(threshold=5),
}


class AuditAlertTracker:
    """Counts core events in a sliding window and logs a warning every ``threshold`` hits."""

    def __init__(self, rules: dict[str, AlertRule]) -> None:
        self._rules = rules
        self._events: dict[str, deque[float]] = {}
        self._lock = Lock()

    def _prune(self, event: str, now: float) -> deque[float]:
        timestamps = self._events.setdefault(event, deque())
        cutoff = now - self._rules[event].window_seconds
        while timestamps and timestamps[0] <= cutoff:
            timestamps.popleft()
        return timestamps

    def record(self, event: str, metadata: Optional[dict] = None) -> None:
        rule = self._rules.get(event)
        if rule is None:
            return
        now = time.monotonic()
        with self._lock:
            timestamps = self._prune(event, now)
            timestamps.append(now)
            hits = len(timestamps)
        if hits % rule.threshold == 0:
            logger.warning(
                "ALERT event=%s count=%s window_seconds=%s metadata=%s",
                event,
                hits,
                rule.window_seconds,
                metadata or {},
            )

    def count(self, event: str) -> int:
        if event not in self._rules:
            return 0
        with self._lock:
            return len(self._prune(event, time.monotonic()))

    def reset(self) -> None:
        with self._lock:
            self._events.clear()


alert_tracker = AuditAlertTracker(ALERT_RULES)
