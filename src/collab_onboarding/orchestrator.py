"""
Flow Orchestrator.

Public entry point for the onboarding flow. Sequences migration, step
persistence, recovery and state transitions, and publishes events for the
UI. execute_step calls are serialised so step N+1 never overtakes step N.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from .analytics import OnboardingAnalytics
from .coordinator import FlowCoordinator
from .errors import ErrorKind, ErrorRecord, StepValidationError
from .events import EventBus, EventName, Progress, StepCompleted
from .executor import StepExecutor
from .recovery import OperationContext, RecoveryEngine, RecoveryOutcome, SyncResult, user_message
from .session import SessionStore
from .steps import COMPLETED, StepCatalog, StepId, coerce_step_id

logger = logging.getLogger(__name__)


@dataclass
class StepResult:
    success: bool
    next_step: str | None = None
    error: str | None = None
    pending_sync: bool = False
    queued: bool = False
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class FlowOrchestrator:
    """Façade over session, executor, recovery and coordinator."""

    def __init__(
        self,
        catalog: StepCatalog,
        session_store: SessionStore,
        executor: StepExecutor,
        recovery: RecoveryEngine,
        coordinator: FlowCoordinator,
        events: EventBus | None = None,
        analytics: OnboardingAnalytics | None = None,
        allow_local_identity: bool = True,
    ):
        self.catalog = catalog
        self.session_store = session_store
        self.executor = executor
        self.recovery = recovery
        self.coordinator = coordinator
        self.events = events or EventBus()
        self.analytics = analytics
        self.allow_local_identity = allow_local_identity
        self._online = True
        self._initialized = False
        self._lock = asyncio.Lock()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> bool:
        """
        SessionStore first, then the coordinator.

        Falls back to a local-only identity when allowed; returns False only
        when no usable session can be produced.
        """
        if not await self.session_store.initialize():
            if not self.allow_local_identity:
                logger.error("Onboarding initialization failed: no session")
                return False
            self.session_store.start_local_session()

        self.coordinator.initialize()
        self._initialized = True

        if self._online and self.coordinator.needs_migration() and self.recovery.has_pending_migration():
            await self.recovery.retry_stalled_migration(self._migrate_from_saved_profile)

        self._emit_progress()
        logger.info(f"Onboarding initialized at step '{self.coordinator.current_step()}'")
        return True

    def destroy(self) -> None:
        """Drop subscribers; the instance must be re-initialized before reuse."""
        self.events.clear()
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # =========================================================================
    # Steps
    # =========================================================================

    async def execute_step(self, step_id: "StepId | str", data: dict) -> StepResult:
        """
        Migration if needed, save, transition, progress, events.

        Valid data always moves the flow forward; remote trouble only shows
        up as pending_sync/queued on the result.
        """
        async with self._lock:
            sid = coerce_step_id(step_id)
            if sid is None or self.catalog.get_step(sid) is None:
                return StepResult(success=False, error=f"Unknown step: {step_id}")
            session = self.session_store.session
            if session is None:
                return StepResult(success=False, error=user_message(ErrorKind.SESSION))
            if not self.coordinator.can_execute(sid):
                return StepResult(success=False, error=f"Step '{sid.value}' is not available yet")

            self._track("track_step_start", sid.value)

            validation = self.executor.validate(sid, data)
            if not validation.is_valid:
                error = StepValidationError(validation.errors, step_id=sid.value)
                await self._report(error, OperationContext(operation=f"validate:{sid.value}", step_id=sid.value))
                return StepResult(success=False, error=str(error), errors=validation.errors,
                                  warnings=validation.warnings)

            await self._maybe_migrate(sid, validation.cleaned)

            if self._online:
                outcome = await self._save_online(sid, data)
            else:
                outcome = self._save_offline(sid, data)
            if not outcome.success:
                return outcome

            was_complete = self.session_store.get_state().is_complete
            next_step = self.coordinator.complete_step(sid)
            payload = self.session_store.get_state().per_step_payload.get(sid.value, {})
            self._track("track_step_complete", sid.value, {"pendingSync": outcome.pending_sync})
            if not outcome.queued:
                await self._push_state()

            self.events.emit(EventName.STEP_COMPLETED, StepCompleted(step_id=sid.value, payload=payload))
            self._emit_progress()
            if next_step == COMPLETED and not was_complete:
                logger.info("Onboarding flow completed")
                self.events.emit(EventName.FLOW_COMPLETED, None)

            outcome.next_step = next_step
            return outcome

    async def _save_online(self, sid: StepId, data: dict) -> StepResult:
        save = await self.executor.save_step(sid, data)
        operation = f"save_step:{sid.value}"
        if save.error is None:
            self.recovery.clear_retry_count(operation)
            return StepResult(success=True, pending_sync=save.pending_sync, warnings=save.warnings)

        context = OperationContext(
            operation=operation,
            step_id=sid.value,
            payload=save.payload,
            retry=lambda: self._retry_push(sid.value, save.payload),
        )
        outcome = await self._report(save.error, context)
        if not outcome.handled:
            self.executor.revert(save)
            return StepResult(success=False, error=outcome.message, warnings=save.warnings)
        return StepResult(
            success=True,
            pending_sync=outcome.pending_sync,
            queued=outcome.queued,
            warnings=save.warnings,
        )

    def _save_offline(self, sid: StepId, data: dict) -> StepResult:
        save = self.executor.save_local(sid, data)
        self.recovery.enqueue(sid.value, save.payload)
        logger.info(f"Offline: queued step '{sid.value}' for sync")
        return StepResult(success=True, pending_sync=True, queued=True, warnings=save.warnings)

    async def _retry_push(self, step_id: str, payload: dict) -> None:
        self._track("track_retry", step_id, self.recovery.get_retry_count(f"save_step:{step_id}"))
        await self.executor.push_remote(step_id, payload)

    async def skip_step(self, step_id: "StepId | str", reason: str | None = None) -> StepResult:
        """Mark a step skipped (not completed) and advance."""
        async with self._lock:
            sid = coerce_step_id(step_id)
            if sid is None or self.catalog.get_step(sid) is None:
                return StepResult(success=False, error=f"Unknown step: {step_id}")
            was_complete = self.session_store.get_state().is_complete
            next_step = self.coordinator.skip_step(sid, reason)
            self._track("track_step_skip", sid.value, reason)
            await self._push_state()
            self._emit_progress()
            if next_step == COMPLETED and not was_complete:
                self.events.emit(EventName.FLOW_COMPLETED, None)
            return StepResult(success=True, next_step=next_step)

    # =========================================================================
    # Migration
    # =========================================================================

    async def _maybe_migrate(self, sid: StepId, cleaned: dict) -> None:
        """Attempted on the profile step, or on any step while a retry is pending."""
        if not self.coordinator.needs_migration():
            return
        retry_pending = self.recovery.has_pending_migration()
        if sid is not StepId.PROFILE and not retry_pending:
            return
        if not self._online:
            if sid is StepId.PROFILE:
                self.recovery.mark_migration_retry(sid.value)
            return

        if sid is StepId.PROFILE:
            seed = cleaned
        else:
            seed = self.session_store.get_state().per_step_payload.get(StepId.PROFILE.value)
            if not seed:
                return
        if await self._migrate(seed, sid.value):
            self.recovery.clear_migration_marker()

    async def _migrate_from_saved_profile(self) -> bool:
        seed = self.session_store.get_state().per_step_payload.get(StepId.PROFILE.value)
        if not seed:
            return False
        return await self._migrate(seed, StepId.PROFILE.value)

    async def _migrate(self, seed: dict, step_id: str) -> bool:
        self.events.emit(EventName.MIGRATION_STARTED, None)
        result = await self.coordinator.handle_migration(seed)
        self.events.emit(EventName.MIGRATION_COMPLETED, result.success)
        if result.success:
            pushed = await self.executor.flush_unsynced(self._push_step)
            if pushed:
                logger.info(f"Pushed {pushed} locally saved steps after migration")
            return True
        await self._report(result.error, OperationContext(operation="migrate_identity", step_id=step_id))
        return False

    # =========================================================================
    # Progress and Reads
    # =========================================================================

    def get_progress(self) -> Progress:
        state = self.session_store.get_state()
        context = self.coordinator.context()
        active = [sid.value for sid in self.catalog.active_steps(context)]
        completed = [s for s in state.completed_step_ids if s in active]
        skipped = [s for s in state.skipped_step_ids if s in active and s not in completed]
        current = state.current_step_id
        session = self.session_store.session

        next_step = None
        can_proceed = False
        if current != COMPLETED and coerce_step_id(current) is not None:
            next_step = self.catalog.next_step(current, context)
            can_proceed = self.coordinator.can_execute(current)

        return Progress(
            current_step=current,
            completed_steps=completed,
            skipped_steps=skipped,
            total_steps=len(active),
            percentage_complete=self.catalog.progress_percentage(completed, context, skipped),
            is_complete=state.is_complete,
            next_step=next_step.value if isinstance(next_step, StepId) else next_step,
            can_proceed=can_proceed,
            user_migrated=session is not None and not session.is_local_only,
            is_online=self._online,
            estimated_minutes_remaining=self.catalog.estimated_minutes_remaining(
                state.resolved_step_ids, context
            ),
        )

    async def get_step_data(self, step_id: "StepId | str") -> dict | None:
        return await self.executor.get_step_data(step_id)

    async def get_step_options(self, step_id: "StepId | str") -> list[dict]:
        return await self.executor.get_reference_options(step_id)

    def route_for(self, step_id: "StepId | str") -> str:
        return self.catalog.route_for(step_id)

    # =========================================================================
    # Connectivity and Sync
    # =========================================================================

    @property
    def is_online(self) -> bool:
        return self._online

    async def set_online(self, online: bool) -> SyncResult | None:
        """Flip connectivity. Reconnecting triggers a sync."""
        if online == self._online:
            return None
        self._online = online
        self.events.emit(EventName.OFFLINE_MODE, not online)
        logger.info(f"Connectivity changed: {'online' if online else 'offline'}")
        if online:
            return await self.sync_offline_data()
        return None

    def get_offline_queue_size(self) -> int:
        return self.recovery.pending_queue_size()

    async def sync_offline_data(self) -> SyncResult:
        """
        Replay the offline queue, then push locally saved steps.

        The result counts queue items only.
        """
        async with self._lock:
            pending = self.recovery.pending_queue_size()
            if not self._online:
                return SyncResult(synced_count=0, total=pending)

            if self.coordinator.needs_migration():
                await self._migrate_from_saved_profile()
                if self.coordinator.needs_migration():
                    logger.info("Sync deferred until the local identity is migrated")
                    return SyncResult(synced_count=0, total=pending)
                self.recovery.clear_migration_marker()

            result = await self.recovery.sync_pending_queue(self._push_and_announce)
            flushed = await self.executor.flush_unsynced(self._push_step)
            if flushed:
                logger.info(f"Flushed {flushed} locally saved steps")
            await self._push_state()
            self._emit_progress()
            return result

    async def _push_and_announce(self, step_id: str, payload: dict) -> None:
        await self._push_step(step_id, payload)
        self.events.emit(EventName.DATA_SYNCED, step_id)

    async def reset(self) -> str:
        """Clear state, queue and recovery data; back to the first step."""
        async with self._lock:
            self.recovery.clear()
            current = self.coordinator.reset()
            await self._push_state()
            if self.analytics is not None:
                self.analytics.clear()
            self._emit_progress()
            logger.info("Onboarding reset")
            return current

    # =========================================================================
    # Internals
    # =========================================================================

    async def _push_step(self, step_id: str, payload: dict) -> None:
        await self.executor.push_remote(step_id, payload)
        self.recovery.clear_retry_count(f"save_step:{step_id}")

    async def _push_state(self) -> None:
        if self._online:
            await self.session_store.push_state()

    async def _report(self, error: BaseException, context: OperationContext) -> RecoveryOutcome:
        outcome = await self.recovery.recover(error, context)
        self._emit_error(outcome.record)
        if context.step_id:
            self._track("track_error", context.step_id, outcome.kind.value, outcome.message)
        return outcome

    def _emit_error(self, record: ErrorRecord | None) -> None:
        if record is not None:
            self.events.emit(EventName.ERROR_OCCURRED, record)

    def _emit_progress(self) -> None:
        self.events.emit(EventName.PROGRESS_UPDATED, self.get_progress())

    def _track(self, method: str, step_id: str, *args) -> None:
        session = self.session_store.session
        if self.analytics is None or session is None:
            return
        getattr(self.analytics, method)(session.identity_id, step_id, *args)
