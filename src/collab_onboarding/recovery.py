"""
Recovery Engine.

Classifies failures into the ErrorKind taxonomy and picks a policy:
- network   -> queue the step save for offline sync
- session   -> re-establish the session once, retry once, else keep locally
- migration -> leave a retry marker for the next launch, continue locally
- database  -> bounded retries with exponential backoff
- validation / unknown -> surface to the caller

Retry counters, the offline queue, the migration marker and the error log
all live in local storage under the fixed keys in storage.py.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, asdict
from typing import Any, Awaitable, Callable

import httpx
from postgrest.exceptions import APIError

from .errors import ErrorKind, ErrorRecord, OnboardingError, is_retryable
from .session import SessionStore
from .state import utc_now_iso
from .storage import (
    ERROR_LOG_KEY,
    MIGRATION_MARKER_KEY,
    OFFLINE_QUEUE_KEY,
    RETRY_COUNT_PREFIX,
    LocalStorage,
    read_json,
    retry_count_key,
    write_json,
)

logger = logging.getLogger(__name__)

MAX_RETRY_ATTEMPTS = 3

# Message fragments checked in order; first match wins
MESSAGE_RULES: list[tuple[ErrorKind, tuple[str, ...]]] = [
    (ErrorKind.NETWORK, ("network", "fetch", "timeout", "timed out", "connection", "offline")),
    (ErrorKind.SESSION, ("session", "unauthorized", "auth", "jwt", "token expired")),
    (ErrorKind.MIGRATION, ("migration", "user creation")),
    (ErrorKind.VALIDATION, ("validation", "invalid")),
    (ErrorKind.DATABASE, ("database", "sql", "postgres", "relation", "constraint")),
]

USER_MESSAGES = {
    ErrorKind.NETWORK: "Connection issue detected. Your data will be saved locally and synced when connection is restored.",
    ErrorKind.SESSION: "Session expired. Attempting to restore your session.",
    ErrorKind.MIGRATION: "Account setup in progress. You can continue and we'll complete the setup in the background.",
    ErrorKind.DATABASE: "Temporary service issue. Retrying...",
    ErrorKind.VALIDATION: "Please check the highlighted fields and try again.",
    ErrorKind.UNKNOWN: "An unexpected error occurred. Please try again.",
}


def user_message(kind: ErrorKind) -> str:
    return USER_MESSAGES[kind]


@dataclass
class RetryPolicy:
    """Exponential backoff: base * multiplier**(attempt-1), capped."""
    max_attempts: int = MAX_RETRY_ATTEMPTS
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 10.0

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * self.multiplier ** max(attempt - 1, 0), self.max_delay)


@dataclass
class OfflineQueueItem:
    step_id: str
    payload: dict
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    enqueued_at: str = field(default_factory=utc_now_iso)
    synced: bool = False
    synced_at: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "OfflineQueueItem":
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class OperationContext:
    """What failed, plus how to re-run it."""
    operation: str
    step_id: str | None = None
    payload: dict | None = None
    retry: Callable[[], Awaitable[Any]] | None = None


@dataclass
class RecoveryOutcome:
    handled: bool
    kind: ErrorKind
    pending_sync: bool = False
    queued: bool = False
    message: str = ""
    record: ErrorRecord | None = None


@dataclass
class SyncResult:
    synced_count: int
    total: int

    @property
    def success(self) -> bool:
        return self.synced_count == self.total


class RecoveryEngine:
    """Error classification and recovery policy."""

    def __init__(
        self,
        storage: LocalStorage,
        session_store: SessionStore,
        policy: RetryPolicy | None = None,
        error_log_limit: int = 50,
        synced_retention: int = 20,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.storage = storage
        self.session_store = session_store
        self.policy = policy or RetryPolicy()
        self.error_log_limit = error_log_limit
        self.synced_retention = synced_retention
        self._sleep = sleep

    # =========================================================================
    # Classification
    # =========================================================================

    def classify(self, error: BaseException) -> ErrorKind:
        """Map any exception onto the error taxonomy."""
        if isinstance(error, OnboardingError):
            return error.kind
        if isinstance(error, (asyncio.TimeoutError, ConnectionError, httpx.TransportError)):
            return ErrorKind.NETWORK
        if isinstance(error, APIError):
            code = str(error.code or "")
            if code.startswith("PGRST3") or code in ("401", "403"):
                return ErrorKind.SESSION
            return ErrorKind.DATABASE

        message = str(error).lower()
        for kind, fragments in MESSAGE_RULES:
            if any(fragment in message for fragment in fragments):
                return kind
        return ErrorKind.UNKNOWN

    def is_recoverable(self, error: BaseException) -> bool:
        return is_retryable(self.classify(error))

    # =========================================================================
    # Recovery
    # =========================================================================

    async def recover(self, error: BaseException, context: OperationContext) -> RecoveryOutcome:
        """
        Apply the recovery policy for the error's kind.

        `handled` means the caller may keep going (possibly with data only
        saved locally, see `pending_sync`).
        """
        kind = self.classify(error)
        record = self.record_error(context, kind, error)
        logger.warning(f"Recovering from {kind.value} error in {context.operation}: {error}")

        if kind is ErrorKind.NETWORK:
            return self._queue_outcome(context, kind, record)

        if kind is ErrorKind.SESSION:
            return await self._recover_session(context, record)

        if kind is ErrorKind.MIGRATION:
            self.mark_migration_retry(context.step_id)
            return RecoveryOutcome(
                handled=True,
                kind=kind,
                pending_sync=context.payload is not None,
                message=user_message(kind),
                record=record,
            )

        if kind is ErrorKind.DATABASE:
            return await self._retry_with_backoff(context, record)

        return RecoveryOutcome(handled=False, kind=kind, message=str(error) or user_message(kind), record=record)

    def _queue_outcome(self, context: OperationContext, kind: ErrorKind, record: ErrorRecord) -> RecoveryOutcome:
        if context.step_id is None or context.payload is None:
            # Nothing to replay later (e.g. a failed read)
            return RecoveryOutcome(handled=False, kind=kind, message=user_message(kind), record=record)
        self.enqueue(context.step_id, context.payload)
        return RecoveryOutcome(
            handled=True,
            kind=kind,
            pending_sync=True,
            queued=True,
            message=user_message(kind),
            record=record,
        )

    async def _recover_session(self, context: OperationContext, record: ErrorRecord) -> RecoveryOutcome:
        kind = ErrorKind.SESSION
        if not await self.session_store.initialize():
            logger.warning("Session recovery failed")
            return self._session_fallback(context, record)

        if context.retry is None:
            return RecoveryOutcome(
                handled=True, kind=kind,
                pending_sync=context.payload is not None,
                message=user_message(kind), record=record,
            )

        try:
            await context.retry()
        except Exception as e:
            retry_kind = self.classify(e)
            retry_record = self.record_error(context, retry_kind, e)
            if retry_kind is ErrorKind.NETWORK:
                return self._queue_outcome(context, retry_kind, retry_record)
            if retry_kind is ErrorKind.SESSION:
                return self._session_fallback(context, retry_record)
            # Keep the local copy; it is flushed on the next sync
            return RecoveryOutcome(
                handled=True, kind=retry_kind, pending_sync=True,
                message=user_message(retry_kind), record=retry_record,
            )

        self.clear_retry_count(context.operation)
        logger.info(f"Session restored and {context.operation} retried successfully")
        return RecoveryOutcome(handled=True, kind=kind, message="Session restored", record=record)

    def _session_fallback(self, context: OperationContext, record: ErrorRecord) -> RecoveryOutcome:
        """Session could not be restored: keep a cached payload local-pending."""
        kind = ErrorKind.SESSION
        if self.session_store.session is None or context.payload is None:
            return RecoveryOutcome(handled=False, kind=kind, message=user_message(kind), record=record)
        logger.info(f"Keeping {context.operation} locally until the session is restored")
        return RecoveryOutcome(
            handled=True, kind=kind, pending_sync=True,
            message=user_message(kind), record=record,
        )

    async def _retry_with_backoff(self, context: OperationContext, record: ErrorRecord) -> RecoveryOutcome:
        kind = ErrorKind.DATABASE
        if context.retry is not None:
            while self.get_retry_count(context.operation) < self.policy.max_attempts:
                attempt = self.increment_retry_count(context.operation)
                delay = self.policy.delay_for(attempt)
                logger.info(
                    f"Retrying {context.operation} ({attempt}/{self.policy.max_attempts}) in {delay:.1f}s"
                )
                await self._sleep(delay)
                try:
                    await context.retry()
                except Exception as e:
                    retry_kind = self.classify(e)
                    record = self.record_error(context, retry_kind, e)
                    if retry_kind is ErrorKind.NETWORK:
                        return self._queue_outcome(context, retry_kind, record)
                    if retry_kind is not ErrorKind.DATABASE:
                        break
                    continue
                self.clear_retry_count(context.operation)
                return RecoveryOutcome(handled=True, kind=kind, message="Recovered after retry", record=record)
            logger.warning(f"Retries exhausted for {context.operation}, keeping data locally")

        # Degrade to local-pending; the step is flushed on the next sync
        return RecoveryOutcome(
            handled=context.payload is not None,
            kind=kind,
            pending_sync=context.payload is not None,
            message=user_message(kind),
            record=record,
        )

    # =========================================================================
    # Retry Counters
    # =========================================================================

    def get_retry_count(self, operation: str) -> int:
        raw = self.storage.get(retry_count_key(operation))
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            return 0

    def increment_retry_count(self, operation: str) -> int:
        count = min(self.get_retry_count(operation) + 1, self.policy.max_attempts)
        self.storage.set(retry_count_key(operation), str(count))
        return count

    def clear_retry_count(self, operation: str) -> None:
        self.storage.remove(retry_count_key(operation))

    # =========================================================================
    # Offline Queue
    # =========================================================================

    def _load_queue(self) -> list[OfflineQueueItem]:
        raw = read_json(self.storage, OFFLINE_QUEUE_KEY, [])
        items = []
        for entry in (raw if isinstance(raw, list) else []):
            try:
                items.append(OfflineQueueItem.from_dict(entry))
            except (TypeError, AttributeError):
                logger.warning(f"Dropping malformed offline queue entry: {entry!r}")
        return items

    def _save_queue(self, items: list[OfflineQueueItem]) -> None:
        synced = [i for i in items if i.synced]
        if len(synced) > self.synced_retention:
            synced = synced[-self.synced_retention:] if self.synced_retention else []
        synced_ids = {i.id for i in synced}
        kept = [i for i in items if not i.synced or i.id in synced_ids]
        write_json(self.storage, OFFLINE_QUEUE_KEY, [i.to_dict() for i in kept])

    def enqueue(self, step_id: str, payload: dict) -> OfflineQueueItem:
        """
        Queue a step save for later sync.

        One pending item per step: saving the same step again replaces the
        queued payload and keeps the original position.
        """
        items = self._load_queue()
        for item in items:
            if not item.synced and item.step_id == step_id:
                item.payload = payload
                self._save_queue(items)
                logger.info(f"Updated queued save for step '{step_id}'")
                return item

        item = OfflineQueueItem(step_id=step_id, payload=payload)
        items.append(item)
        self._save_queue(items)
        logger.info(f"Saved step '{step_id}' for offline sync")
        return item

    def pending_items(self) -> list[OfflineQueueItem]:
        return [i for i in self._load_queue() if not i.synced]

    def pending_queue_size(self) -> int:
        return len(self.pending_items())

    def queue_snapshot(self) -> list[OfflineQueueItem]:
        return self._load_queue()

    async def sync_pending_queue(
        self, push: Callable[[str, dict], Awaitable[Any]]
    ) -> SyncResult:
        """Replay pending items in enqueue order. Failures stay queued."""
        items = self._load_queue()
        pending = [i for i in items if not i.synced]
        synced_count = 0

        for item in pending:
            operation = f"save_step:{item.step_id}"
            try:
                await push(item.step_id, item.payload)
            except Exception as e:
                kind = self.classify(e)
                self.record_error(OperationContext(operation=f"sync:{item.step_id}", step_id=item.step_id), kind, e)
                logger.warning(f"Failed to sync queued step '{item.step_id}' ({kind.value}): {e}")
                continue
            item.synced = True
            item.synced_at = utc_now_iso()
            synced_count += 1
            self.clear_retry_count(operation)
            self._save_queue(items)

        self._save_queue(items)
        logger.info(f"Synced {synced_count}/{len(pending)} pending operations")
        return SyncResult(synced_count=synced_count, total=len(pending))

    def clear_queue(self) -> None:
        self.storage.remove(OFFLINE_QUEUE_KEY)

    # =========================================================================
    # Migration Retry Marker
    # =========================================================================

    def get_migration_marker(self) -> dict | None:
        marker = read_json(self.storage, MIGRATION_MARKER_KEY)
        return marker if isinstance(marker, dict) else None

    def mark_migration_retry(self, step_id: str | None) -> dict:
        previous = self.get_migration_marker() or {}
        marker = {
            "needsRetry": True,
            "stepId": step_id,
            "timestamp": utc_now_iso(),
            "attempts": int(previous.get("attempts", 0)) + 1,
        }
        write_json(self.storage, MIGRATION_MARKER_KEY, marker)
        logger.info(f"Marked identity migration for retry (attempt {marker['attempts']})")
        return marker

    def has_pending_migration(self) -> bool:
        marker = self.get_migration_marker()
        return bool(marker and marker.get("needsRetry") is True)

    def clear_migration_marker(self) -> None:
        self.storage.remove(MIGRATION_MARKER_KEY)

    async def retry_stalled_migration(self, migrate: Callable[[], Awaitable[bool]]) -> bool:
        """
        Re-run a migration that failed on an earlier launch.

        The migrate callback reports failures through recover(), which
        bumps the marker's attempt count.
        """
        if not self.has_pending_migration():
            return False
        marker = self.get_migration_marker()
        logger.info(f"Retrying stalled migration (previous attempts: {marker.get('attempts', 0)})")
        if await migrate():
            self.clear_migration_marker()
            return True
        return False

    # =========================================================================
    # Error Log
    # =========================================================================

    def record_error(self, context: OperationContext, kind: ErrorKind, error: BaseException) -> ErrorRecord:
        record = ErrorRecord(
            operation=context.operation,
            error_kind=kind,
            message=str(error) or type(error).__name__,
            retry_count=self.get_retry_count(context.operation),
            step_id=context.step_id,
        )
        logs = read_json(self.storage, ERROR_LOG_KEY, [])
        if not isinstance(logs, list):
            logs = []
        logs.append(record.to_dict())
        if len(logs) > self.error_log_limit:
            logs = logs[-self.error_log_limit:]
        write_json(self.storage, ERROR_LOG_KEY, logs)
        return record

    def error_log(self) -> list[ErrorRecord]:
        logs = read_json(self.storage, ERROR_LOG_KEY, [])
        return [ErrorRecord.from_dict(entry) for entry in logs if isinstance(entry, dict)]

    def error_stats(self) -> dict:
        logs = self.error_log()
        return {
            "total_errors": len(logs),
            "pending_operations": self.pending_queue_size(),
            "migration_pending": self.has_pending_migration(),
            "last_error_time": logs[-1].occurred_at if logs else None,
        }

    def clear(self) -> None:
        """Remove queue, error log, marker and every retry counter."""
        self.storage.remove(OFFLINE_QUEUE_KEY)
        self.storage.remove(ERROR_LOG_KEY)
        self.storage.remove(MIGRATION_MARKER_KEY)
        for key in self.storage.list_keys():
            if key.startswith(RETRY_COUNT_PREFIX):
                self.storage.remove(key)
        logger.info("Recovery data cleared")
