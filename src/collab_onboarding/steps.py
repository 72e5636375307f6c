"""
Step Catalog.

Static definition of the onboarding steps: canonical order, required
flags, dependencies, progress weights and the conditional-skip rules that
produce each flow variant. Everything here is pure.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable


class StepId(str, Enum):
    """Onboarding steps in canonical order."""
    PROFILE = "profile"
    INTERESTS = "interests"
    GOALS = "goals"
    PROJECT_DETAILS = "project_details"
    SKILLS = "skills"


# Terminal sentinel for the state machine
COMPLETED = "completed"


# =============================================================================
# Goals
# =============================================================================

GOAL_TYPES = ("find_cofounder", "find_collaborators", "contribute_skills", "explore_ideas")

# Goals whose flow includes the project details step
COLLABORATION_GOALS = frozenset({"find_cofounder", "find_collaborators"})

GOAL_TYPE_LABELS = {
    "find_cofounder": "Find a co-founder",
    "find_collaborators": "Find collaborators",
    "contribute_skills": "Contribute my skills",
    "explore_ideas": "Explore ideas",
}
GOAL_LABEL_TO_TYPE = {label: goal for goal, label in GOAL_TYPE_LABELS.items()}


@dataclass(frozen=True)
class FlowContext:
    """Data the skip predicates read. Currently only the selected goal."""
    goal_type: str | None = None

    @property
    def seeks_collaboration(self) -> bool:
        return self.goal_type in COLLABORATION_GOALS


def _never_skip(context: FlowContext) -> bool:
    return False


def _skip_without_collaboration_goal(context: FlowContext) -> bool:
    # Unknown goal keeps the step in the flow until goals is answered
    return context.goal_type is not None and not context.seeks_collaboration


# =============================================================================
# Step Definitions
# =============================================================================


@dataclass(frozen=True)
class StepDefinition:
    """Immutable step metadata."""
    id: StepId
    order: int
    title: str
    route: str
    is_required_by_default: bool = True
    depends_on: frozenset[StepId] = field(default_factory=frozenset)
    progress_weight: int = 20
    estimated_minutes: int = 2
    conditional_skip: Callable[[FlowContext], bool] = _never_skip


COMPLETE_ROUTE = "/(tabs)"
SIGNIN_ROUTE = "/welcome/signin"

DEFAULT_STEPS = (
    StepDefinition(
        id=StepId.PROFILE,
        order=1,
        title="Profile Setup",
        route="/onboarding",
        estimated_minutes=3,
    ),
    StepDefinition(
        id=StepId.INTERESTS,
        order=2,
        title="Interests Selection",
        route="/onboarding/interests",
        depends_on=frozenset({StepId.PROFILE}),
        estimated_minutes=2,
    ),
    StepDefinition(
        id=StepId.GOALS,
        order=3,
        title="Goals Definition",
        route="/onboarding/goals",
        depends_on=frozenset({StepId.INTERESTS}),
        estimated_minutes=2,
    ),
    StepDefinition(
        id=StepId.PROJECT_DETAILS,
        order=4,
        title="Project Details",
        route="/onboarding/project-detail",
        is_required_by_default=False,
        depends_on=frozenset({StepId.GOALS}),
        estimated_minutes=5,
        conditional_skip=_skip_without_collaboration_goal,
    ),
    StepDefinition(
        id=StepId.SKILLS,
        order=5,
        title="Skills Selection",
        route="/onboarding/project-skills",
        depends_on=frozenset({StepId.GOALS}),
        estimated_minutes=3,
    ),
)


def coerce_step_id(value: "StepId | str") -> StepId | None:
    """Map a raw step identifier to a StepId, or None if unknown."""
    if isinstance(value, StepId):
        return value
    try:
        return StepId(value)
    except ValueError:
        return None


class StepCatalog:
    """Ordered step definitions plus the pure navigation functions."""

    def __init__(self, steps: Iterable[StepDefinition] = DEFAULT_STEPS):
        self._steps = sorted(steps, key=lambda s: s.order)
        self._by_id = {s.id: s for s in self._steps}

    @property
    def first_step(self) -> StepId:
        return self._steps[0].id

    @property
    def step_ids(self) -> list[StepId]:
        return [s.id for s in self._steps]

    def get_step(self, step_id: "StepId | str") -> StepDefinition | None:
        sid = coerce_step_id(step_id)
        return self._by_id.get(sid) if sid else None

    def is_skipped(self, step_id: StepId, context: FlowContext) -> bool:
        step = self._by_id[step_id]
        return step.conditional_skip(context)

    def active_steps(self, context: FlowContext) -> list[StepId]:
        """Steps of the flow variant selected by the context."""
        return [s.id for s in self._steps if not s.conditional_skip(context)]

    def next_step(self, current: "StepId | str", context: FlowContext) -> "StepId | str":
        """
        Next active step after `current`, or COMPLETED.

        Steps whose skip predicate holds for the context are passed over.
        """
        sid = coerce_step_id(current)
        if sid is None:
            raise KeyError(f"Unknown step: {current}")
        idx = self.step_ids.index(sid)
        for step in self._steps[idx + 1:]:
            if not step.conditional_skip(context):
                return step.id
        return COMPLETED

    def previous_step(self, current: "StepId | str", context: FlowContext) -> StepId | None:
        """Previous active step, or None at the start of the flow."""
        if current == COMPLETED:
            active = self.active_steps(context)
            return active[-1] if active else None
        sid = coerce_step_id(current)
        if sid is None:
            raise KeyError(f"Unknown step: {current}")
        idx = self.step_ids.index(sid)
        for step in reversed(self._steps[:idx]):
            if not step.conditional_skip(context):
                return step.id
        return None

    def is_step_required(self, step_id: "StepId | str", context: FlowContext) -> bool:
        """Required by default, or pulled into the flow by the goal."""
        step = self.get_step(step_id)
        if step is None:
            return False
        if step.is_required_by_default:
            return True
        return context.goal_type is not None and not step.conditional_skip(context)

    def progress_percentage(
        self,
        completed: Iterable[str],
        context: FlowContext,
        skipped: Iterable[str] = (),
    ) -> int:
        """
        Weighted completion for the active flow variant.

        Conditionally skipped and user-skipped steps leave the denominator.
        """
        skipped_ids = {coerce_step_id(s) for s in skipped}
        relevant = [
            self._by_id[sid] for sid in self.active_steps(context)
            if sid not in skipped_ids
        ]
        total = sum(s.progress_weight for s in relevant)
        if total == 0:
            return 100 if skipped_ids else 0
        completed_ids = {coerce_step_id(c) for c in completed}
        done = sum(s.progress_weight for s in relevant if s.id in completed_ids)
        return round(done / total * 100)

    def estimated_minutes_remaining(self, resolved: Iterable[str], context: FlowContext) -> int:
        resolved_ids = {coerce_step_id(r) for r in resolved}
        return sum(
            self._by_id[sid].estimated_minutes
            for sid in self.active_steps(context)
            if sid not in resolved_ids
        )

    def route_for(self, step_id: "StepId | str") -> str:
        """Screen route for a step; the terminal route for COMPLETED."""
        if step_id == COMPLETED:
            return COMPLETE_ROUTE
        step = self.get_step(step_id)
        if step is None:
            raise KeyError(f"Unknown step: {step_id}")
        return step.route

    def route_table(self) -> dict[str, str]:
        table = {s.id.value: s.route for s in self._steps}
        table[COMPLETED] = COMPLETE_ROUTE
        return table
