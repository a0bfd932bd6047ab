from datetime import date, timedelta
from statistics import mean
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from neuracoach.api.auth import get_current_user
from neuracoach.api.goals import GoalStats, TaskItem, latest_goal, owned_goal, task_item
from neuracoach.core.checkin_rules import local_today
from neuracoach.core.insights import (
    all_milestones_completed,
    calendar_range,
    current_milestone_index,
    daily_metrics,
    goal_summary,
    milestone_state,
)
from neuracoach.db.models import Goal, User
from neuracoach.db.session import get_db

router = APIRouter(prefix="/dashboard", tags=["dashboard"])

MAX_CALENDAR_DAYS = 93
TIMEFRAMES = {7, 30, 90, 0}


class MetricPoint(BaseModel):
    date: str
    mood: float
    motivation: float
    progress: int
    summary: str
    session_count: int


class InsightsResponse(BaseModel):
    goal_id: int
    timeframe_days: int
    metrics: list[MetricPoint]
    average_mood: Optional[float] = None
    average_motivation: Optional[float] = None
    stats: GoalStats


class CalendarDay(BaseModel):
    date: str
    day_name: str
    total_tasks: int
    completed_tasks: int
    status: str
    session_ids: list[int]


class CalendarResponse(BaseModel):
    goal_id: int
    start: date
    end: date
    days: list[CalendarDay]


class TimelineMilestone(BaseModel):
    id: int
    position: int
    text: str
    start_date: date
    end_date: date
    state: str
    tasks: list[TaskItem]


class TimelineGoal(BaseModel):
    id: int
    text: str


class TimelineResponse(BaseModel):
    goals: list[TimelineGoal]
    goal_id: Optional[int] = None
    milestones: list[TimelineMilestone]
    current_milestone_index: int
    all_milestones_completed: bool


@router.get("/goals/{goal_id}/insights", response_model=InsightsResponse)
def get_insights(
    goal_id: int,
    days: int = Query(default=30),
    timezone_offset_minutes: int = Query(default=0, ge=-840, le=840),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> InsightsResponse:
    if days not in TIMEFRAMES:
        raise HTTPException(status_code=422, detail="days must be one of 7, 30, 90 or 0 for all time")
    goal = owned_goal(db, user.id, goal_id)
    sessions = list(goal.check_in_sessions)
    if days:
        since = local_today(timezone_offset_minutes) - timedelta(days=days - 1)
        sessions = [s for s in sessions if s.check_in_date >= since]
    points = [MetricPoint(**row) for row in daily_metrics(sessions)]
    return InsightsResponse(
        goal_id=goal.id,
        timeframe_days=days,
        metrics=points,
        average_mood=round(mean(p.mood for p in points), 1) if points else None,
        average_motivation=round(mean(p.motivation for p in points), 1) if points else None,
        stats=GoalStats(**goal_summary(goal.tasks, goal.milestones, goal.check_in_sessions)),
    )


@router.get("/goals/{goal_id}/calendar", response_model=CalendarResponse)
def get_calendar(
    goal_id: int,
    start: Optional[date] = Query(default=None),
    end: Optional[date] = Query(default=None),
    timezone_offset_minutes: int = Query(default=0, ge=-840, le=840),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> CalendarResponse:
    goal = owned_goal(db, user.id, goal_id)
    range_end = end or local_today(timezone_offset_minutes)
    range_start = start or (range_end - timedelta(days=6))
    if range_start > range_end:
        raise HTTPException(status_code=422, detail="start must be on or before end")
    if (range_end - range_start).days + 1 > MAX_CALENDAR_DAYS:
        raise HTTPException(status_code=422, detail=f"Calendar range is limited to {MAX_CALENDAR_DAYS} days")
    days = calendar_range(goal.tasks, goal.check_in_sessions, range_start, range_end)
    return CalendarResponse(
        goal_id=goal.id, start=range_start, end=range_end, days=[CalendarDay(**d) for d in days]
    )


@router.get("/timeline", response_model=TimelineResponse)
def get_timeline(
    goal_id: Optional[int] = Query(default=None),
    timezone_offset_minutes: int = Query(default=0, ge=-840, le=840),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> TimelineResponse:
    goals = db.query(Goal).filter(Goal.user_id == user.id).order_by(Goal.created_at.desc(), Goal.id.desc()).all()
    selected = owned_goal(db, user.id, goal_id) if goal_id is not None else latest_goal(db, user.id)
    if selected is None:
        return TimelineResponse(
            goals=[], milestones=[], current_milestone_index=-1, all_milestones_completed=False
        )

    today = local_today(timezone_offset_minutes)
    milestones = sorted(selected.milestones, key=lambda m: (m.start_date, m.position))
    return TimelineResponse(
        goals=[TimelineGoal(id=g.id, text=g.text) for g in goals],
        goal_id=selected.id,
        milestones=[
            TimelineMilestone(
                id=m.id,
                position=m.position,
                text=m.text,
                start_date=m.start_date,
                end_date=m.end_date,
                state=milestone_state(m, today),
                tasks=[task_item(t) for t in m.tasks],
            )
            for m in milestones
        ],
        current_milestone_index=current_milestone_index(milestones, today),
        all_milestones_completed=all_milestones_completed(milestones, today),
    )
