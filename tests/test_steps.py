"""Tests for the step catalog: ordering, conditional skip, progress, routes."""

import pytest

from collab_onboarding.steps import (
    COMPLETED,
    COMPLETE_ROUTE,
    GOAL_LABEL_TO_TYPE,
    GOAL_TYPE_LABELS,
    FlowContext,
    StepCatalog,
    StepId,
)


@pytest.fixture
def catalog():
    return StepCatalog()


NO_GOAL = FlowContext()
COFOUNDER = FlowContext(goal_type="find_cofounder")
EXPLORE = FlowContext(goal_type="explore_ideas")


class TestNavigation:

    def test_first_step_is_profile(self, catalog):
        assert catalog.first_step is StepId.PROFILE

    def test_canonical_order(self, catalog):
        assert catalog.step_ids == [
            StepId.PROFILE, StepId.INTERESTS, StepId.GOALS, StepId.PROJECT_DETAILS, StepId.SKILLS,
        ]

    def test_next_step_collaboration_goal_includes_project_details(self, catalog):
        assert catalog.next_step("goals", COFOUNDER) == StepId.PROJECT_DETAILS
        assert catalog.next_step("project_details", COFOUNDER) == StepId.SKILLS

    def test_next_step_skips_project_details_without_collaboration(self, catalog):
        assert catalog.next_step("goals", EXPLORE) == StepId.SKILLS
        assert catalog.next_step("goals", FlowContext(goal_type="contribute_skills")) == StepId.SKILLS

    def test_unknown_goal_keeps_project_details(self, catalog):
        assert catalog.next_step("goals", NO_GOAL) == StepId.PROJECT_DETAILS

    def test_last_step_leads_to_completed(self, catalog):
        assert catalog.next_step("skills", EXPLORE) == COMPLETED

    def test_next_step_unknown_raises(self, catalog):
        with pytest.raises(KeyError):
            catalog.next_step("payment", NO_GOAL)

    def test_previous_step(self, catalog):
        assert catalog.previous_step("profile", NO_GOAL) is None
        assert catalog.previous_step("skills", EXPLORE) == StepId.GOALS
        assert catalog.previous_step("skills", COFOUNDER) == StepId.PROJECT_DETAILS
        assert catalog.previous_step(COMPLETED, EXPLORE) == StepId.SKILLS

    def test_active_steps_per_variant(self, catalog):
        assert StepId.PROJECT_DETAILS in catalog.active_steps(COFOUNDER)
        assert StepId.PROJECT_DETAILS not in catalog.active_steps(EXPLORE)

    def test_is_step_required(self, catalog):
        assert catalog.is_step_required("profile", NO_GOAL)
        assert not catalog.is_step_required("project_details", NO_GOAL)
        assert catalog.is_step_required("project_details", COFOUNDER)
        assert not catalog.is_step_required("project_details", EXPLORE)
        assert not catalog.is_step_required("unknown", NO_GOAL)


class TestProgress:

    def test_weighted_percentage_full_flow(self, catalog):
        assert catalog.progress_percentage([], COFOUNDER) == 0
        assert catalog.progress_percentage(["profile", "interests"], COFOUNDER) == 40

    def test_skipped_variant_leaves_denominator(self, catalog):
        # 4 active steps of equal weight
        assert catalog.progress_percentage(["profile"], EXPLORE) == 25
        assert catalog.progress_percentage(
            ["profile", "interests", "goals", "skills"], EXPLORE
        ) == 100

    def test_user_skipped_steps_leave_denominator(self, catalog):
        assert catalog.progress_percentage(
            ["profile", "interests", "goals", "skills"], COFOUNDER, skipped=["project_details"]
        ) == 100

    def test_estimated_minutes_remaining(self, catalog):
        assert catalog.estimated_minutes_remaining([], COFOUNDER) == 15
        assert catalog.estimated_minutes_remaining([], EXPLORE) == 10
        assert catalog.estimated_minutes_remaining(["profile", "interests"], EXPLORE) == 5


class TestRoutes:

    def test_route_for_steps(self, catalog):
        assert catalog.route_for("profile") == "/onboarding"
        assert catalog.route_for(StepId.PROJECT_DETAILS) == "/onboarding/project-detail"
        assert catalog.route_for("skills") == "/onboarding/project-skills"

    def test_terminal_route(self, catalog):
        assert catalog.route_for(COMPLETED) == COMPLETE_ROUTE == "/(tabs)"

    def test_route_table_covers_every_step(self, catalog):
        table = catalog.route_table()
        assert set(table) == {s.value for s in StepId} | {COMPLETED}


def test_goal_labels_map_both_ways():
    for goal, label in GOAL_TYPE_LABELS.items():
        assert GOAL_LABEL_TO_TYPE[label] == goal
