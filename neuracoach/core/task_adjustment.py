from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional, Sequence

from sqlalchemy.orm import Session

from neuracoach.db.models import Task, TaskAdjustmentRecord

logger = logging.getLogger("uvicorn.error")

ADJUSTMENT_MAX_TASKS = int(os.getenv("ADJUSTMENT_MAX_TASKS", "30"))
ADJUSTMENT_ACTIONS = {"update", "postpone", "simplify", "split"}

LOW_SCORE_THRESHOLD = 4
LOW_PROGRESS_THRESHOLD = 50
SIGNIFICANT_BLOCKER_CHARS = 50

ALL_COMPLETE_MESSAGE = "Congratulations! You've completed all your tasks. Keep up the excellent work!"
ALL_COMPLETE_STRATEGY = "No adjustments needed - all tasks are complete"
ON_TRACK_MESSAGE = "You're doing great! Keep up the excellent work with your current schedule."
ON_TRACK_STRATEGY = "No adjustments needed - continue with current plan"
FALLBACK_MESSAGE = "I'm here to support you. Tomorrow is a fresh start!"
FALLBACK_STRATEGY = "Continue with current plan - adjustments will be made as needed"


@dataclass(frozen=True)
class CheckInAnalysis:
    needs_adjustment: bool
    adjustment_type: str
    adjustment_reason: str
    recommended_action: str


@dataclass(frozen=True)
class CheckInData:
    mood: int
    motivation: int
    progress_percentage: int
    blocker: str
    summary: str


@dataclass
class TaskAdjustment:
    task_id: int
    action: str
    reason: str
    new_text: Optional[str] = None
    new_start_date: Optional[date] = None
    new_end_date: Optional[date] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "action": self.action,
            "reason": self.reason,
            "new_text": self.new_text,
            "new_start_date": self.new_start_date.isoformat() if self.new_start_date else None,
            "new_end_date": self.new_end_date.isoformat() if self.new_end_date else None,
        }


@dataclass
class AdjustmentOutcome:
    adjustments_made: bool
    encouragement_message: str
    strategy: str
    adjustments: list[TaskAdjustment] = field(default_factory=list)
    analysis: Optional[CheckInAnalysis] = None


def analyze_check_in_data(mood: int, motivation: int, progress: int, blocker: str) -> CheckInAnalysis:
    low_mood = mood <= LOW_SCORE_THRESHOLD
    low_motivation = motivation <= LOW_SCORE_THRESHOLD
    low_progress = progress < LOW_PROGRESS_THRESHOLD
    significant_blocker = len(blocker or "") > SIGNIFICANT_BLOCKER_CHARS

    if not (low_mood or low_motivation or low_progress or significant_blocker):
        return CheckInAnalysis(
            False,
            "none",
            "User is performing well across all metrics",
            "Continue with current task schedule",
        )
    if low_progress and significant_blocker:
        return CheckInAnalysis(
            True,
            "timeline",
            "Low progress with significant blockers indicates timeline pressure",
            "Extend deadlines and break down complex tasks",
        )
    if low_mood and low_motivation:
        return CheckInAnalysis(
            True,
            "difficulty",
            "Low mood and motivation require easier, more achievable tasks",
            "Simplify tasks and add quick wins",
        )
    if low_motivation:
        return CheckInAnalysis(
            True,
            "support",
            "Low motivation needs additional support and engagement",
            "Add motivational milestones and support resources",
        )
    if low_progress:
        return CheckInAnalysis(
            True,
            "timeline",
            "Low progress suggests unrealistic timeline expectations",
            "Adjust task scheduling and reduce daily load",
        )
    return CheckInAnalysis(
        True,
        "support",
        "User needs additional support to overcome current challenges",
        "Add supportive tasks and resources",
    )


def build_adjustment_prompts(
    goal_text: str, tasks: Sequence[Task], check_in: CheckInData, analysis: CheckInAnalysis
) -> tuple[str, str]:
    task_lines = "\n".join(
        f'- ID: {task.id} - "{task.text}" ({"COMPLETED" if task.is_completed else "PENDING"}) '
        f"[{task.start_date.isoformat()} to {task.end_date.isoformat()}]"
        for task in tasks
    )
    system_prompt = f"""You are an AI life coach specializing in adaptive task management. Adjust the user's tasks based on their check-in data to maximize success while keeping expectations realistic.

CURRENT SITUATION:
- Goal: {goal_text}
- Progress: {check_in.progress_percentage}%
- Mood: {check_in.mood}/10
- Motivation: {check_in.motivation}/10
- Main Blocker: {check_in.blocker}
- Session Summary: {check_in.summary}

ADJUSTMENT ANALYSIS:
- Adjustment Type: {analysis.adjustment_type}
- Reason: {analysis.adjustment_reason}
- Recommended Action: {analysis.recommended_action}

CURRENT TASKS:
{task_lines}

ADJUSTMENT GUIDELINES:
1. TIMELINE ADJUSTMENTS: Extend deadlines, reduce daily load, add buffer time
2. DIFFICULTY ADJUSTMENTS: Break complex tasks into smaller steps, add quick wins
3. SUPPORT ADJUSTMENTS: Add preparatory tasks, resources, or motivational milestones

TASK ADJUSTMENT ACTIONS:
- "update": Change task text or requirements
- "postpone": Move task to later date
- "simplify": Make task easier or break into smaller parts
- "split": Break one task into multiple simpler tasks

RESPONSE FORMAT:
Return a JSON object with this exact structure:
{{
  "adjustments": [
    {{
      "task_id": <numeric ID from the CURRENT TASKS list>,
      "new_text": "Updated task description (optional)",
      "new_start_date": "YYYY-MM-DD (optional)",
      "new_end_date": "YYYY-MM-DD (optional)",
      "action": "update|postpone|simplify|split",
      "reason": "Explanation for this adjustment"
    }}
  ],
  "overall_strategy": "Brief explanation of the overall adjustment strategy",
  "encouragement_message": "Supportive message for the user about these changes"
}}

IMPORTANT:
- Only use task IDs from the CURRENT TASKS list
- Only adjust tasks that are PENDING
- Keep task text actionable and specific
- Ensure new dates are realistic and achievable
- Focus on setting the user up for success tomorrow"""

    user_prompt = (
        f"Based on the user's check-in data showing {analysis.adjustment_reason.lower()}, please generate "
        "appropriate task adjustments that will help them succeed while addressing their current challenges.\n\n"
        f"Focus on {analysis.recommended_action.lower()} to support their current state "
        f"(mood: {check_in.mood}/10, motivation: {check_in.motivation}/10, "
        f"progress: {check_in.progress_percentage}%)."
    )
    return system_prompt, user_prompt


def _parse_date(value: Any) -> Optional[date]:
    if value in (None, ""):
        return None
    # Accepts plain dates and full ISO timestamps; only the day matters.
    return date.fromisoformat(str(value).strip()[:10])


def validate_adjustments(raw: dict[str, Any], tasks_by_id: dict[int, Task]) -> list[TaskAdjustment]:
    items = raw.get("adjustments")
    if not isinstance(items, list):
        raise ValueError("Invalid response structure: missing adjustments array")

    valid: list[TaskAdjustment] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            task_id = int(item.get("task_id"))
        except (TypeError, ValueError):
            continue
        task = tasks_by_id.get(task_id)
        if task is None or task.is_completed:
            continue
        action = str(item.get("action") or "").strip().lower()
        if action not in ADJUSTMENT_ACTIONS:
            continue
        try:
            new_start = _parse_date(item.get("new_start_date") or item.get("new_start_at"))
            new_end = _parse_date(item.get("new_end_date") or item.get("new_end_at"))
        except ValueError:
            continue
        if (new_start or task.start_date) > (new_end or task.end_date):
            continue
        new_text = str(item.get("new_text") or "").strip() or None
        valid.append(
            TaskAdjustment(
                task_id=task_id,
                action=action,
                reason=str(item.get("reason") or "").strip(),
                new_text=new_text[:500] if new_text else None,
                new_start_date=new_start,
                new_end_date=new_end,
            )
        )
    return valid


def apply_task_adjustments(
    db: Session, adjustments: Sequence[TaskAdjustment], check_in_session_id: Optional[int] = None
) -> list[dict[str, Any]]:
    """Apply adjustments to their tasks and log each change.

    Does not commit. Raises LookupError when a task no longer exists so the
    caller can roll the whole batch back.
    """
    results: list[dict[str, Any]] = []
    for adjustment in adjustments:
        task = db.get(Task, adjustment.task_id)
        if task is None:
            raise LookupError(f"Task {adjustment.task_id} not found")
        db.add(
            TaskAdjustmentRecord(
                task_id=task.id,
                check_in_session_id=check_in_session_id,
                action=adjustment.action,
                reason=adjustment.reason,
                previous_text=task.text,
                new_text=adjustment.new_text,
                previous_start_date=task.start_date,
                previous_end_date=task.end_date,
                new_start_date=adjustment.new_start_date,
                new_end_date=adjustment.new_end_date,
            )
        )
        if adjustment.new_text:
            task.text = adjustment.new_text
        if adjustment.new_start_date:
            task.start_date = adjustment.new_start_date
        if adjustment.new_end_date:
            task.end_date = adjustment.new_end_date
        results.append(
            {"task_id": task.id, "action": adjustment.action, "reason": adjustment.reason, "success": True}
        )
    db.flush()
    return results


def perform_task_adjustment(
    llm,
    db: Session,
    user_id: int,
    goal_text: str,
    tasks: Sequence[Task],
    check_in: CheckInData,
    check_in_session_id: Optional[int] = None,
) -> AdjustmentOutcome:
    incomplete = [task for task in tasks if not task.is_completed][:ADJUSTMENT_MAX_TASKS]
    if not incomplete:
        return AdjustmentOutcome(False, ALL_COMPLETE_MESSAGE, ALL_COMPLETE_STRATEGY)

    analysis = analyze_check_in_data(
        check_in.mood, check_in.motivation, check_in.progress_percentage, check_in.blocker
    )
    if not analysis.needs_adjustment:
        return AdjustmentOutcome(False, ON_TRACK_MESSAGE, ON_TRACK_STRATEGY, analysis=analysis)

    try:
        system_prompt, user_prompt = build_adjustment_prompts(goal_text, incomplete, check_in, analysis)
        raw = llm.generate_json(
            db, user_id, system_prompt, user_prompt, task_type="reasoning", temperature=0.7, max_tokens=1000
        )
        adjustments = validate_adjustments(raw, {task.id: task for task in incomplete})
        if adjustments:
            apply_task_adjustments(db, adjustments, check_in_session_id=check_in_session_id)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("task_adjustment_error user_id=%s type=%s", user_id, analysis.adjustment_type)
        return AdjustmentOutcome(False, FALLBACK_MESSAGE, FALLBACK_STRATEGY, analysis=analysis)

    logger.info(
        "task_adjustment_applied user_id=%s type=%s count=%s", user_id, analysis.adjustment_type, len(adjustments)
    )
    return AdjustmentOutcome(
        adjustments_made=bool(adjustments),
        encouragement_message=str(raw.get("encouragement_message") or "").strip() or ON_TRACK_MESSAGE,
        strategy=str(raw.get("overall_strategy") or "").strip() or FALLBACK_STRATEGY,
        adjustments=adjustments,
        analysis=analysis,
    )
