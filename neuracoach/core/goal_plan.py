from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Optional, Sequence

logger = logging.getLogger("uvicorn.error")

MAX_STEPS = 7
MAX_TASKS_PER_STEP = 7
MAX_STEP_DURATION_DAYS = 120

GOAL_STEPS_SYSTEM_PROMPT = """You are a professional life coach and goal-setting expert. Break the user's goal into actionable, achievable steps with SPECIFIC, MEASURABLE actions.

CRITICAL REQUIREMENTS:
1. Generate 3-7 steps maximum (prefer 4-5 steps for most goals)
2. Each step MUST have a CLEAR COMPLETION CONDITION - it ends when a specific target is achieved
3. Steps should be finite tasks, NOT ongoing habits or daily routines
4. Include specific numbers and measurable targets that define completion
5. Steps should build upon each other logically
6. Estimate realistic timeframes for each step (typically 3-21 days)
7. Use encouraging, supportive language
8. Consider the user's motivation/reason if provided

COMPLETION-BASED REQUIREMENTS:
- Each step must answer: "What specific achievement marks this step as DONE?"
- Use precise completion verbs: "Complete", "Finish", "Reach", "Build", "Create", "Record"
- Include concrete, countable targets: "Read 3 books" not "Read daily"
- Define exact end states: "Lose 10 pounds" not "Exercise regularly"
- Avoid vague terms: "master", "improve", "get better", "understand"
- Avoid ongoing words: "daily", "regularly", "consistently", "every day"
- Be binary: either DONE or NOT DONE

RESPONSE FORMAT:
Return a JSON object with this exact structure:
{
  "steps": [
    {
      "text": "Specific, measurable step with numbers (50-120 characters)",
      "order": 1,
      "estimated_duration_days": 7,
      "description": "How the measurable target is tracked",
      "tasks": ["Optional concrete actions that make up this step, in order"]
    }
  ],
  "total_estimated_duration_days": 30,
  "goal_summary": "Brief restatement of the goal in coaching language"
}

EXAMPLES:
BAD (Ongoing Habit): "Exercise for 30 minutes daily"
GOOD (Clear Completion): "Complete 20 gym workouts of 45 minutes each"
BAD (Vague): "Improve guitar skills"
GOOD (Clear Completion): "Record yourself playing 3 songs without mistakes"
BAD (Ongoing Habit): "Save $200 per month"
GOOD (Clear Completion): "Reach $2,000 in savings account balance\""""

_COMPLETION_PATTERNS = [
    re.compile(r"\b(complete|finish|reach|build|create|record|document)\b", re.I),
    re.compile(r"\b\d+\s*(books?|songs?|recipes?|workouts?|sessions?|courses?|projects?)\b", re.I),
    re.compile(r"\bscore\s+\d+%", re.I),
    re.compile(r"\blose\s+\d+\s*(pounds?|kg|lbs)\b", re.I),
    re.compile(r"\breach\s+\$?\d+", re.I),
    re.compile(r"\b\d+[\d,]*\s*(dollars?|\$|€|£|¥)\s+(in\s+)?(revenue|profit|savings?)", re.I),
    re.compile(r"\brun\s+\d+[km]?\s*(in\s+under|without)", re.I),
    re.compile(r"(timed|verified|documented|recorded|logged)", re.I),
]
_VAGUE_PATTERNS = [
    re.compile(r"\b(master|improve|understand|get\s+better|enhance|develop)\b", re.I),
    re.compile(r"\b(proficient|skilled|good\s+at|comfortable\s+with)\b", re.I),
]
_HABIT_PATTERNS = [
    re.compile(r"\b(daily|every\s+day|each\s+day)\b", re.I),
    re.compile(r"\b(weekly|every\s+week|each\s+week)\b", re.I),
    re.compile(r"\b(regularly|consistently)\b", re.I),
    re.compile(r"\d+\s*(times?|x)\s*(per|a|each)\s*(day|week)", re.I),
]
_SPECIFICITY_PATTERNS = [
    re.compile(r"\b\d+\b"),
    re.compile(r"(track|measure|record|log|count|weigh|timer?)", re.I),
    re.compile(r"\b(at least|minimum|maximum|exactly|precisely)\s*\d+", re.I),
]


@dataclass(frozen=True)
class GoalStep:
    text: str
    order: float
    estimated_duration_days: int
    description: Optional[str] = None
    tasks: tuple[str, ...] = ()


@dataclass(frozen=True)
class GoalSteps:
    steps: list[GoalStep]
    total_estimated_duration_days: int
    goal_summary: str


@dataclass(frozen=True)
class PlannedTask:
    text: str
    start_date: date
    end_date: date


@dataclass(frozen=True)
class PlannedMilestone:
    position: int
    text: str
    description: Optional[str]
    start_date: date
    end_date: date
    tasks: list[PlannedTask] = field(default_factory=list)


def is_step_specific(text: str) -> bool:
    has_completion = any(p.search(text) for p in _COMPLETION_PATTERNS)
    has_vague = any(p.search(text) for p in _VAGUE_PATTERNS)
    has_habit = any(p.search(text) for p in _HABIT_PATTERNS)
    has_specificity = any(p.search(text) for p in _SPECIFICITY_PATTERNS)
    return (has_completion or has_specificity) and not has_vague and not has_habit


def goal_steps_prompts(goal_text: str, reason: Optional[str] = None) -> tuple[str, str]:
    user_prompt = f'Please break down this goal into actionable steps:\n\nGOAL: "{goal_text}"\n'
    if reason:
        user_prompt += f'USER\'S MOTIVATION: "{reason}"\n'
    user_prompt += "\nGenerate a structured plan that will help the user achieve this goal successfully."
    return GOAL_STEPS_SYSTEM_PROMPT, user_prompt


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_goal_steps(raw: dict[str, Any]) -> GoalSteps:
    steps = raw.get("steps")
    if not isinstance(steps, list):
        raise ValueError("Invalid response structure: missing steps array")
    if not steps:
        raise ValueError("No steps generated")

    parsed: list[GoalStep] = []
    for index, step in enumerate(steps, start=1):
        if not isinstance(step, dict):
            raise ValueError(f"Invalid step {index}: not an object")
        text = step.get("text")
        if not isinstance(text, str) or not text.strip():
            raise ValueError(f"Invalid step {index}: missing or invalid text")
        order = step.get("order")
        if not _is_number(order):
            raise ValueError(f"Invalid step {index}: missing or invalid order")
        duration = step.get("estimated_duration_days")
        if not _is_number(duration) or duration < 1:
            raise ValueError(f"Invalid step {index}: missing or invalid duration")
        if not is_step_specific(text):
            logger.warning("goal_step_not_specific step=%s text=%s", index, text[:120])
        raw_tasks = step.get("tasks") if isinstance(step.get("tasks"), list) else []
        tasks = tuple(str(t).strip()[:500] for t in raw_tasks if isinstance(t, str) and t.strip())
        description = step.get("description")
        parsed.append(
            GoalStep(
                text=text.strip()[:500],
                order=float(order),
                estimated_duration_days=min(MAX_STEP_DURATION_DAYS, int(math.ceil(duration))),
                description=description.strip() if isinstance(description, str) and description.strip() else None,
                tasks=tasks[:MAX_TASKS_PER_STEP],
            )
        )

    parsed.sort(key=lambda s: s.order)
    parsed = parsed[:MAX_STEPS]
    total = raw.get("total_estimated_duration_days")
    if not _is_number(total) or total < 1:
        total = sum(s.estimated_duration_days for s in parsed)
    summary = raw.get("goal_summary")
    return GoalSteps(
        steps=parsed,
        total_estimated_duration_days=int(total),
        goal_summary=summary.strip() if isinstance(summary, str) else "",
    )


def _spread_tasks(texts: Sequence[str], start: date, duration_days: int) -> list[PlannedTask]:
    count = len(texts)
    planned: list[PlannedTask] = []
    for idx, text in enumerate(texts):
        first = idx * duration_days // count
        last = max(first, (idx + 1) * duration_days // count - 1)
        planned.append(
            PlannedTask(text=text, start_date=start + timedelta(days=first), end_date=start + timedelta(days=last))
        )
    return planned


def schedule_plan(steps: Sequence[GoalStep], start_day: date) -> list[PlannedMilestone]:
    milestones: list[PlannedMilestone] = []
    cursor = start_day
    for position, step in enumerate(steps, start=1):
        end = cursor + timedelta(days=step.estimated_duration_days - 1)
        task_texts = list(step.tasks) or [step.text]
        milestones.append(
            PlannedMilestone(
                position=position,
                text=step.text,
                description=step.description,
                start_date=cursor,
                end_date=end,
                tasks=_spread_tasks(task_texts, cursor, step.estimated_duration_days),
            )
        )
        cursor = end + timedelta(days=1)
    return milestones


def goal_end_date(milestones: Sequence[PlannedMilestone]) -> Optional[date]:
    if not milestones:
        return None
    return max(m.end_date for m in milestones)
