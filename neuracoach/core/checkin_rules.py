import os
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Optional, Protocol, Sequence

CHECKIN_WINDOW_START_HOUR = int(os.getenv("CHECKIN_WINDOW_START_HOUR", "18"))
CHECKIN_WINDOW_END_HOUR = int(os.getenv("CHECKIN_WINDOW_END_HOUR", "23"))
BLOCKER_DISCUSSION_THRESHOLD = 80
DEFAULT_MOOD = 5
DEFAULT_MOTIVATION = 5


class DatedTask(Protocol):
    start_date: date
    end_date: date
    is_completed: bool


class StreakHolder(Protocol):
    daily_streak: int
    last_check_in_date: Optional[date]


def local_now(timezone_offset_minutes: int = 0) -> datetime:
    # Browser convention: getTimezoneOffset() is UTC minus local, in minutes.
    return datetime.now(timezone.utc) - timedelta(minutes=int(timezone_offset_minutes))


def local_today(timezone_offset_minutes: int = 0) -> date:
    return local_now(timezone_offset_minutes).date()


def progress_percentage(tasks: Sequence[DatedTask]) -> int:
    if not tasks:
        return 0
    completed = sum(1 for task in tasks if task.is_completed)
    return int(round(completed / len(tasks) * 100))


def needs_blocker_discussion(progress: int) -> bool:
    return progress < BLOCKER_DISCUSSION_THRESHOLD


def next_step_after_assessment(progress: int) -> str:
    return "chat" if needs_blocker_discussion(progress) else "mood"


def _format_hour(hour: int, minute: int = 0) -> str:
    suffix = "AM" if hour < 12 else "PM"
    display = hour % 12 or 12
    return f"{display}:{minute:02d} {suffix}"


def window_message() -> str:
    return (
        f"Check-ins are only available between {_format_hour(CHECKIN_WINDOW_START_HOUR)} "
        f"and {_format_hour(CHECKIN_WINDOW_END_HOUR, minute=59)}."
    )


def can_check_in_now(local_time: datetime) -> bool:
    return CHECKIN_WINDOW_START_HOUR <= local_time.hour <= CHECKIN_WINDOW_END_HOUR


def can_check_in_today(profile: Optional[StreakHolder], today: date) -> bool:
    if profile is None:
        return True
    return profile.last_check_in_date != today


def advance_streak(profile: StreakHolder, today: date) -> bool:
    """Move the daily streak forward for a check-in made on `today`.

    A check-in on consecutive days extends the streak, a second check-in on
    the same day leaves it untouched, and any gap restarts it at one.
    Returns whether the streak was updated.
    """
    last = profile.last_check_in_date
    if last == today:
        return False
    if last == today - timedelta(days=1):
        profile.daily_streak = (profile.daily_streak or 0) + 1
    else:
        profile.daily_streak = 1
    profile.last_check_in_date = today
    return True


def is_task_active(task: DatedTask, day: date) -> bool:
    return task.start_date <= day <= task.end_date


def is_task_overdue(task: DatedTask, day: date) -> bool:
    return task.end_date < day and not task.is_completed


def tasks_for_date(tasks: Iterable[DatedTask], day: date) -> list:
    return [task for task in tasks if is_task_active(task, day) or is_task_overdue(task, day)]
