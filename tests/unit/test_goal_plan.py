from datetime import date, timedelta

import pytest

from neuracoach.core.goal_plan import (
    MAX_STEPS,
    GoalStep,
    goal_end_date,
    goal_steps_prompts,
    is_step_specific,
    parse_goal_steps,
    schedule_plan,
)


def test_step_specificity_accepts_measurable_steps() -> None:
    assert is_step_specific("Complete 20 gym workouts of 45 minutes each") is True
    assert is_step_specific("Read 3 books on personal finance") is True


def test_step_specificity_rejects_vague_and_habit_steps() -> None:
    assert is_step_specific("Improve guitar skills") is False
    assert is_step_specific("Exercise for 30 minutes daily") is False


def test_goal_steps_prompt_includes_reason() -> None:
    _, user_prompt = goal_steps_prompts("Run a 5K", "I want more energy")
    assert 'GOAL: "Run a 5K"' in user_prompt
    assert "I want more energy" in user_prompt


def test_parse_goal_steps_sorts_by_order() -> None:
    plan = parse_goal_steps(
        {
            "steps": [
                {"text": "Finish a timed 5K", "order": 2, "estimated_duration_days": 3},
                {"text": "Complete 6 practice runs", "order": 1, "estimated_duration_days": 5.5},
            ],
            "goal_summary": "Run a 5K",
        }
    )
    assert [s.text for s in plan.steps] == ["Complete 6 practice runs", "Finish a timed 5K"]
    assert plan.steps[0].estimated_duration_days == 6
    assert plan.total_estimated_duration_days == 9


def test_parse_goal_steps_caps_step_count() -> None:
    steps = [{"text": f"Complete {i} sessions", "order": i, "estimated_duration_days": 2} for i in range(1, 11)]
    plan = parse_goal_steps({"steps": steps})
    assert len(plan.steps) == MAX_STEPS


@pytest.mark.parametrize(
    "raw",
    [
        {},
        {"steps": []},
        {"steps": [{"order": 1, "estimated_duration_days": 3}]},
        {"steps": [{"text": "Complete 3 runs", "estimated_duration_days": 3}]},
        {"steps": [{"text": "Complete 3 runs", "order": 1, "estimated_duration_days": 0}]},
    ],
)
def test_parse_goal_steps_rejects_invalid(raw) -> None:
    with pytest.raises(ValueError):
        parse_goal_steps(raw)


def test_schedule_plan_chains_milestones() -> None:
    start = date(2025, 1, 1)
    steps = [
        GoalStep(text="Record a baseline", order=1, estimated_duration_days=3),
        GoalStep(text="Complete 12 sessions", order=2, estimated_duration_days=4, tasks=("Sessions 1-6", "Sessions 7-12")),
    ]
    milestones = schedule_plan(steps, start)
    assert milestones[0].start_date == start
    assert milestones[0].end_date == start + timedelta(days=2)
    assert milestones[1].start_date == start + timedelta(days=3)
    assert milestones[1].end_date == start + timedelta(days=6)
    assert [t.text for t in milestones[0].tasks] == ["Record a baseline"]
    first, second = milestones[1].tasks
    assert (first.start_date, first.end_date) == (start + timedelta(days=3), start + timedelta(days=4))
    assert (second.start_date, second.end_date) == (start + timedelta(days=5), start + timedelta(days=6))
    assert goal_end_date(milestones) == start + timedelta(days=6)


def test_schedule_plan_more_tasks_than_days() -> None:
    start = date(2025, 1, 1)
    steps = [GoalStep(text="Finish 3 drafts", order=1, estimated_duration_days=1, tasks=("a", "b", "c"))]
    tasks = schedule_plan(steps, start)[0].tasks
    assert all(t.start_date == start and t.end_date == start for t in tasks)
