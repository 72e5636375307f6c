"""
Step analytics.

Local, capped log of step-level events (start, complete, skip, error,
retry) with a per-identity summary. Nothing here talks to the backend.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum

from .state import utc_now_iso
from .storage import ANALYTICS_KEY, LocalStorage, read_json, write_json

logger = logging.getLogger(__name__)


class AnalyticsAction(str, Enum):
    START = "start"
    COMPLETE = "complete"
    SKIP = "skip"
    ERROR = "error"
    RETRY = "retry"


@dataclass
class AnalyticsEvent:
    identity_id: str
    step_id: str
    action: AnalyticsAction
    duration_ms: int | None = None
    metadata: dict = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["action"] = self.action.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "AnalyticsEvent":
        data = dict(data)
        data["action"] = AnalyticsAction(data["action"])
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class SessionMetrics:
    total_time_ms: int = 0
    step_times_ms: dict[str, int] = field(default_factory=dict)
    errors: list[dict] = field(default_factory=list)
    retries: dict[str, int] = field(default_factory=dict)
    skipped_steps: list[str] = field(default_factory=list)
    completion_rate: float = 0.0


class OnboardingAnalytics:
    """Records step events to local storage."""

    def __init__(self, storage: LocalStorage, limit: int = 200, clock=time.monotonic):
        self.storage = storage
        self.limit = limit
        self._clock = clock
        self._started: dict[tuple[str, str], float] = {}

    def track_step_start(self, identity_id: str, step_id: str) -> AnalyticsEvent:
        self._started[(identity_id, step_id)] = self._clock()
        return self._record(AnalyticsEvent(identity_id, step_id, AnalyticsAction.START))

    def track_step_complete(self, identity_id: str, step_id: str, metadata: dict | None = None) -> AnalyticsEvent:
        started = self._started.pop((identity_id, step_id), None)
        duration = int((self._clock() - started) * 1000) if started is not None else None
        return self._record(AnalyticsEvent(
            identity_id, step_id, AnalyticsAction.COMPLETE,
            duration_ms=duration, metadata=metadata or {},
        ))

    def track_step_skip(self, identity_id: str, step_id: str, reason: str | None = None) -> AnalyticsEvent:
        self._started.pop((identity_id, step_id), None)
        return self._record(AnalyticsEvent(
            identity_id, step_id, AnalyticsAction.SKIP,
            metadata={"reason": reason} if reason else {},
        ))

    def track_error(self, identity_id: str, step_id: str, error_type: str, message: str) -> AnalyticsEvent:
        return self._record(AnalyticsEvent(
            identity_id, step_id, AnalyticsAction.ERROR,
            metadata={"errorType": error_type, "errorMessage": message},
        ))

    def track_retry(self, identity_id: str, step_id: str, attempt: int) -> AnalyticsEvent:
        return self._record(AnalyticsEvent(
            identity_id, step_id, AnalyticsAction.RETRY,
            metadata={"attempt": attempt},
        ))

    def events(self, identity_id: str | None = None) -> list[AnalyticsEvent]:
        raw = read_json(self.storage, ANALYTICS_KEY, [])
        if not isinstance(raw, list):
            return []
        events = []
        for entry in raw:
            try:
                events.append(AnalyticsEvent.from_dict(entry))
            except (KeyError, TypeError, ValueError):
                continue
        if identity_id is not None:
            events = [e for e in events if e.identity_id == identity_id]
        return events

    def session_metrics(self, identity_id: str) -> SessionMetrics:
        metrics = SessionMetrics()
        started = completed = 0
        for event in self.events(identity_id):
            if event.action is AnalyticsAction.START:
                started += 1
            elif event.action is AnalyticsAction.COMPLETE:
                completed += 1
                if event.duration_ms is not None:
                    metrics.step_times_ms[event.step_id] = event.duration_ms
                    metrics.total_time_ms += event.duration_ms
            elif event.action is AnalyticsAction.SKIP:
                if event.step_id not in metrics.skipped_steps:
                    metrics.skipped_steps.append(event.step_id)
            elif event.action is AnalyticsAction.ERROR:
                metrics.errors.append({
                    "stepId": event.step_id,
                    "errorType": event.metadata.get("errorType", "unknown"),
                    "errorMessage": event.metadata.get("errorMessage", ""),
                    "timestamp": event.timestamp,
                })
            elif event.action is AnalyticsAction.RETRY:
                metrics.retries[event.step_id] = metrics.retries.get(event.step_id, 0) + 1
        metrics.completion_rate = round(completed / started * 100, 1) if started else 0.0
        return metrics

    def clear(self) -> None:
        self._started.clear()
        self.storage.remove(ANALYTICS_KEY)

    def _record(self, event: AnalyticsEvent) -> AnalyticsEvent:
        raw = read_json(self.storage, ANALYTICS_KEY, [])
        if not isinstance(raw, list):
            raw = []
        raw.append(event.to_dict())
        if len(raw) > self.limit:
            raw = raw[-self.limit:]
        write_json(self.storage, ANALYTICS_KEY, raw)
        logger.debug(f"Analytics: {event.action.value} {event.step_id}")
        return event
