"""
Onboarding State.

Tracks progress through the steps and the payload saved for each one.
Mirrored to local storage on every write so restarts resume where the user
left off, and fetched from the onboarding_sessions table when online.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
import json

from .steps import StepId, COMPLETED


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class OnboardingState:
    """
    Per-identity onboarding state.

    completed_step_ids keeps insertion order but is used as a set: it only
    grows until an explicit reset.
    """
    identity_id: str = ""
    current_step_id: str = StepId.PROFILE.value
    completed_step_ids: list[str] = field(default_factory=list)
    skipped_step_ids: list[str] = field(default_factory=list)
    skip_reasons: dict = field(default_factory=dict)
    per_step_payload: dict = field(default_factory=dict)

    # Steps saved locally that the backend has not acknowledged yet
    unsynced_step_ids: list[str] = field(default_factory=list)

    is_complete: bool = False

    # Metadata
    created_at: str = ""
    updated_at: str = ""

    def __post_init__(self):
        """Set timestamps if not provided."""
        now = utc_now_iso()
        if not self.created_at:
            self.created_at = now
        if not self.updated_at:
            self.updated_at = now

    def mark_completed(self, step_id: str) -> None:
        if step_id not in self.completed_step_ids:
            self.completed_step_ids.append(step_id)
        # Completing a previously skipped step clears the skip marker
        if step_id in self.skipped_step_ids:
            self.skipped_step_ids.remove(step_id)
            self.skip_reasons.pop(step_id, None)

    def mark_skipped(self, step_id: str, reason: str | None = None) -> None:
        if step_id in self.completed_step_ids:
            return
        if step_id not in self.skipped_step_ids:
            self.skipped_step_ids.append(step_id)
        if reason:
            self.skip_reasons[step_id] = reason

    def mark_unsynced(self, step_id: str) -> None:
        if step_id not in self.unsynced_step_ids:
            self.unsynced_step_ids.append(step_id)

    def mark_synced(self, step_id: str) -> None:
        if step_id in self.unsynced_step_ids:
            self.unsynced_step_ids.remove(step_id)

    @property
    def goal_type(self) -> str | None:
        goals = self.per_step_payload.get(StepId.GOALS.value) or {}
        return goals.get("goalType")

    @property
    def resolved_step_ids(self) -> list[str]:
        return self.completed_step_ids + [
            s for s in self.skipped_step_ids if s not in self.completed_step_ids
        ]

    @property
    def at_terminal(self) -> bool:
        return self.current_step_id == COMPLETED

    def to_dict(self) -> dict:
        """Serialize state to dict for JSON storage."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "OnboardingState":
        """Deserialize state from dict. Unknown keys are dropped."""
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_json(self) -> str:
        """Serialize state to JSON string."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, json_str: str) -> "OnboardingState":
        """Deserialize state from JSON string."""
        return cls.from_dict(json.loads(json_str))
