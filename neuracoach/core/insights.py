from datetime import date, timedelta
from statistics import mean
from typing import Any, Iterable, Optional, Sequence

from neuracoach.core.checkin_rules import is_task_active, is_task_overdue


def _round1(value: float) -> float:
    return round(value * 10) / 10


def daily_metrics(sessions: Iterable[Any]) -> list[dict[str, Any]]:
    """Average check-in scores per local day, oldest day first."""
    by_day: dict[date, list[Any]] = {}
    for session in sorted(sessions, key=lambda s: (s.check_in_date, s.created_at)):
        by_day.setdefault(session.check_in_date, []).append(session)

    rows: list[dict[str, Any]] = []
    for day, day_sessions in by_day.items():
        latest = day_sessions[-1]
        rows.append(
            {
                "date": day.isoformat(),
                "mood": _round1(mean(s.mood for s in day_sessions)),
                "motivation": _round1(mean(s.motivation for s in day_sessions)),
                "progress": int(round(mean(s.progress_percentage for s in day_sessions))),
                "summary": latest.summary,
                "session_count": len(day_sessions),
            }
        )
    return rows


def calculate_day_progress(tasks: Sequence[Any], sessions: Sequence[Any], day: date) -> dict[str, Any]:
    relevant = [task for task in tasks if is_task_active(task, day) or is_task_overdue(task, day)]
    completed = sum(1 for task in relevant if task.is_completed)
    day_sessions = [s for s in sessions if s.check_in_date == day]
    has_work = bool(day_sessions)

    if not relevant:
        status = "partial" if has_work else "none"
    elif completed == len(relevant):
        status = "complete"
    elif completed > 0 or has_work:
        status = "partial"
    else:
        status = "none"

    return {
        "date": day.isoformat(),
        "day_name": day.strftime("%a"),
        "total_tasks": len(relevant),
        "completed_tasks": completed,
        "status": status,
        "session_ids": [s.id for s in day_sessions],
    }


def calendar_range(tasks: Sequence[Any], sessions: Sequence[Any], start: date, end: date) -> list[dict[str, Any]]:
    days: list[dict[str, Any]] = []
    cursor = start
    while cursor <= end:
        days.append(calculate_day_progress(tasks, sessions, cursor))
        cursor += timedelta(days=1)
    return days


def milestone_state(milestone: Any, today: date) -> str:
    if milestone.end_date < today:
        return "past"
    if milestone.start_date <= today:
        return "active"
    return "upcoming"


def current_milestone_index(milestones: Sequence[Any], today: date) -> int:
    if not milestones:
        return -1
    states = [milestone_state(m, today) for m in milestones]
    if "active" in states:
        return states.index("active")
    if "upcoming" in states:
        return states.index("upcoming")
    return len(milestones) - 1


def all_milestones_completed(milestones: Sequence[Any], today: date) -> bool:
    if not milestones:
        return False
    return all(milestone_state(m, today) == "past" for m in milestones)


def goal_summary(
    tasks: Sequence[Any], milestones: Sequence[Any], sessions: Sequence[Any]
) -> dict[str, Optional[Any]]:
    completed = sum(1 for task in tasks if task.is_completed)
    latest = max(sessions, key=lambda s: (s.check_in_date, s.created_at)) if sessions else None
    return {
        "total_tasks": len(tasks),
        "completed_tasks": completed,
        "completion_percentage": int(round(completed / len(tasks) * 100)) if tasks else 0,
        "milestone_count": len(milestones),
        "session_count": len(sessions),
        "latest_session_date": latest.check_in_date.isoformat() if latest else None,
        "latest_summary": latest.summary if latest else None,
    }
