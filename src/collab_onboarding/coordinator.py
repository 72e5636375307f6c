"""
Flow Coordinator.

State machine over the step IDs plus the terminal "completed" state.
Transitions always go through the StepCatalog so conditional skips are
applied the same way everywhere.
"""

import logging
from dataclasses import dataclass

from .errors import MigrationError
from .session import SessionStore
from .steps import COMPLETED, FlowContext, StepCatalog, StepId, coerce_step_id

logger = logging.getLogger(__name__)


@dataclass
class MigrationResult:
    success: bool
    identity_id: str | None = None
    error: MigrationError | None = None
    attempted: bool = True


class FlowCoordinator:
    """Tracks the current step and drives transitions."""

    def __init__(self, catalog: StepCatalog, session_store: SessionStore):
        self.catalog = catalog
        self.session_store = session_store

    def initialize(self) -> str:
        """Repair the cached position against the catalog. Returns the current step."""
        state = self.session_store.get_state()
        current = state.current_step_id
        if self.is_flow_complete():
            current = COMPLETED
        elif current == COMPLETED or coerce_step_id(current) is None:
            current = self._first_unresolved()
        elif self.catalog.is_skipped(StepId(current), self.context()):
            current = self._resolve_target(self.catalog.next_step(current, self.context()))
        self.session_store.set_state(current_step_id=current, is_complete=current == COMPLETED)
        logger.info(f"Flow positioned at '{current}'")
        return current

    def context(self) -> FlowContext:
        return FlowContext(goal_type=self.session_store.get_state().goal_type)

    def current_step(self) -> str:
        return self.session_store.get_state().current_step_id

    def next_step(self, step_id: "StepId | str") -> "StepId | str":
        return self.catalog.next_step(step_id, self.context())

    def previous_step(self, step_id: "StepId | str") -> StepId | None:
        return self.catalog.previous_step(step_id, self.context())

    def can_execute(self, step_id: "StepId | str") -> bool:
        """Known, part of the active flow, and every dependency resolved."""
        step = self.catalog.get_step(step_id)
        if step is None:
            return False
        context = self.context()
        if step.conditional_skip(context):
            return False
        resolved = set(self.session_store.get_state().resolved_step_ids)
        for dep in step.depends_on:
            if dep.value in resolved or self.catalog.is_skipped(dep, context):
                continue
            return False
        return True

    def complete_step(self, step_id: "StepId | str") -> str:
        """Record completion and move to the next step. Returns the new current step."""
        sid = coerce_step_id(step_id)
        if sid is None:
            raise KeyError(f"Unknown step: {step_id}")
        state = self.session_store.get_state()
        state.mark_completed(sid.value)
        return self._advance(self.catalog.next_step(sid, self.context()))

    def skip_step(self, step_id: "StepId | str", reason: str | None = None) -> str:
        """Record a skip marker (not a completion) and move on."""
        sid = coerce_step_id(step_id)
        if sid is None:
            raise KeyError(f"Unknown step: {step_id}")
        state = self.session_store.get_state()
        state.mark_skipped(sid.value, reason)
        logger.info(f"Skipped step '{sid.value}'" + (f": {reason}" if reason else ""))
        return self._advance(self.catalog.next_step(sid, self.context()))

    def is_flow_complete(self) -> bool:
        """Every step of the active flow is completed or skipped."""
        resolved = set(self.session_store.get_state().resolved_step_ids)
        return all(sid.value in resolved for sid in self.catalog.active_steps(self.context()))

    def needs_migration(self) -> bool:
        session = self.session_store.session
        return session is not None and session.is_local_only and session.requires_migration

    async def handle_migration(self, seed: dict) -> MigrationResult:
        """
        Promote the local identity once.

        Failures are returned, not raised: the flow continues local-only
        and the caller schedules a retry.
        """
        if not self.needs_migration():
            session = self.session_store.session
            return MigrationResult(
                success=session is not None and not session.is_local_only,
                identity_id=session.identity_id if session else None,
                attempted=False,
            )
        try:
            session = await self.session_store.migrate(seed)
        except Exception as e:
            logger.warning(f"Identity migration failed: {e}")
            error = MigrationError(f"Identity migration failed: {e}")
            error.__cause__ = e
            return MigrationResult(success=False, error=error)
        return MigrationResult(success=True, identity_id=session.identity_id)

    def reset(self) -> str:
        self.session_store.reset_state()
        return self.current_step()

    def _advance(self, target: "StepId | str") -> str:
        current = self._resolve_target(target)
        state = self.session_store.get_state()
        state.current_step_id = current
        state.is_complete = current == COMPLETED
        self.session_store.persist_state()
        return current

    def _resolve_target(self, target: "StepId | str") -> str:
        # The terminal state needs every active step resolved
        if self.is_flow_complete():
            return COMPLETED
        if target == COMPLETED:
            return self._first_unresolved()
        return target.value if isinstance(target, StepId) else target

    def _first_unresolved(self) -> str:
        resolved = set(self.session_store.get_state().resolved_step_ids)
        for sid in self.catalog.active_steps(self.context()):
            if sid.value not in resolved:
                return sid.value
        return COMPLETED
