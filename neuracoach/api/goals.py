import logging
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from neuracoach.api.auth import get_current_user, require_ai_config
from neuracoach.core.checkin_rules import local_today
from neuracoach.core.goal_plan import goal_end_date, goal_steps_prompts, parse_goal_steps, schedule_plan
from neuracoach.core.insights import goal_summary
from neuracoach.db.models import CheckInSession, Goal, Milestone, Task, User
from neuracoach.db.session import get_db
from neuracoach.services.llm import LLMClient, get_llm_client

router = APIRouter(prefix="/goals", tags=["goals"])
logger = logging.getLogger("uvicorn.error")


class GoalCreateRequest(BaseModel):
    text: str = Field(min_length=3, max_length=500)
    reason: Optional[str] = Field(default=None, max_length=2000)
    timezone_offset_minutes: int = Field(default=0, ge=-840, le=840)


class TaskUpdateRequest(BaseModel):
    is_completed: bool


class TaskItem(BaseModel):
    id: int
    milestone_id: Optional[int] = None
    text: str
    start_date: date
    end_date: date
    is_completed: bool


class MilestoneItem(BaseModel):
    id: int
    position: int
    text: str
    description: Optional[str] = None
    start_date: date
    end_date: date
    tasks: list[TaskItem]


class SessionItem(BaseModel):
    id: int
    check_in_date: date
    summary: str
    mood: int
    motivation: int
    blocker: str
    progress_percentage: int
    created_at: datetime


class GoalStats(BaseModel):
    total_tasks: int
    completed_tasks: int
    completion_percentage: int
    milestone_count: int
    session_count: int
    latest_session_date: Optional[str] = None
    latest_summary: Optional[str] = None


class GoalItem(BaseModel):
    id: int
    text: str
    reason: Optional[str] = None
    summary: Optional[str] = None
    init_end_at: date
    created_at: datetime
    stats: GoalStats


class GoalDetail(GoalItem):
    milestones: list[MilestoneItem]
    sessions: list[SessionItem]


class GoalListResponse(BaseModel):
    items: list[GoalItem]


class GoalCreationStatus(BaseModel):
    needs_goal_creation: bool
    should_redirect_to_goal_creation: bool
    goal_count: int


def task_item(task: Task) -> TaskItem:
    return TaskItem(
        id=task.id,
        milestone_id=task.milestone_id,
        text=task.text,
        start_date=task.start_date,
        end_date=task.end_date,
        is_completed=task.is_completed,
    )


def session_item(row: CheckInSession) -> SessionItem:
    return SessionItem(
        id=row.id,
        check_in_date=row.check_in_date,
        summary=row.summary,
        mood=row.mood,
        motivation=row.motivation,
        blocker=row.blocker,
        progress_percentage=row.progress_percentage,
        created_at=row.created_at,
    )


def _goal_item(goal: Goal) -> GoalItem:
    return GoalItem(
        id=goal.id,
        text=goal.text,
        reason=goal.reason,
        summary=goal.summary,
        init_end_at=goal.init_end_at,
        created_at=goal.created_at,
        stats=GoalStats(**goal_summary(goal.tasks, goal.milestones, goal.check_in_sessions)),
    )


def goal_detail(goal: Goal) -> GoalDetail:
    base = _goal_item(goal)
    return GoalDetail(
        **base.model_dump(),
        milestones=[
            MilestoneItem(
                id=m.id,
                position=m.position,
                text=m.text,
                description=m.description,
                start_date=m.start_date,
                end_date=m.end_date,
                tasks=[task_item(t) for t in m.tasks],
            )
            for m in sorted(goal.milestones, key=lambda m: (m.start_date, m.position))
        ],
        sessions=[
            session_item(s) for s in sorted(goal.check_in_sessions, key=lambda s: s.created_at, reverse=True)
        ],
    )


def owned_goal(db: Session, user_id: int, goal_id: int) -> Goal:
    goal = db.query(Goal).filter(Goal.id == goal_id, Goal.user_id == user_id).first()
    if not goal:
        raise HTTPException(status_code=404, detail="Goal not found")
    return goal


def latest_goal(db: Session, user_id: int) -> Optional[Goal]:
    return (
        db.query(Goal)
        .filter(Goal.user_id == user_id)
        .order_by(Goal.created_at.desc(), Goal.id.desc())
        .first()
    )


def create_goal_with_plan(
    db: Session,
    llm: LLMClient,
    user_id: int,
    goal_text: str,
    reason: Optional[str],
    start_day: date,
) -> Goal:
    """Ask the coach for a step plan and persist it as milestones and tasks.

    Raises HTTPException(502) when the LLM fails or returns an unusable plan.
    """
    system_prompt, user_prompt = goal_steps_prompts(goal_text, reason)
    try:
        raw = llm.generate_json(
            db, user_id, system_prompt, user_prompt, task_type="reasoning", temperature=0.7, max_tokens=1500
        )
        plan = parse_goal_steps(raw)
    except Exception:
        logger.exception("goal_plan_error user_id=%s", user_id)
        raise HTTPException(status_code=502, detail="Could not build a plan for this goal. Please try again.")

    scheduled = schedule_plan(plan.steps, start_day)
    goal = Goal(
        user_id=user_id,
        text=goal_text.strip(),
        reason=(reason or "").strip() or None,
        summary=plan.goal_summary or None,
        init_end_at=goal_end_date(scheduled) or start_day,
    )
    db.add(goal)
    db.flush()
    for planned in scheduled:
        milestone = Milestone(
            goal_id=goal.id,
            position=planned.position,
            text=planned.text,
            description=planned.description,
            start_date=planned.start_date,
            end_date=planned.end_date,
        )
        db.add(milestone)
        db.flush()
        for planned_task in planned.tasks:
            db.add(
                Task(
                    goal_id=goal.id,
                    milestone_id=milestone.id,
                    text=planned_task.text,
                    start_date=planned_task.start_date,
                    end_date=planned_task.end_date,
                    is_completed=False,
                )
            )
    db.commit()
    db.refresh(goal)
    logger.info("goal_created user_id=%s goal_id=%s milestones=%s", user_id, goal.id, len(scheduled))
    return goal


@router.post("", response_model=GoalDetail, status_code=status.HTTP_201_CREATED)
def create_goal(
    payload: GoalCreateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    llm: LLMClient = Depends(get_llm_client),
) -> GoalDetail:
    require_ai_config(db, user.id)
    goal = create_goal_with_plan(
        db, llm, user.id, payload.text, payload.reason, local_today(payload.timezone_offset_minutes)
    )
    return goal_detail(goal)


@router.get("", response_model=GoalListResponse)
def list_goals(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> GoalListResponse:
    goals = db.query(Goal).filter(Goal.user_id == user.id).order_by(Goal.created_at.desc(), Goal.id.desc()).all()
    return GoalListResponse(items=[_goal_item(goal) for goal in goals])


@router.get("/creation-status", response_model=GoalCreationStatus)
def creation_status(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> GoalCreationStatus:
    count = db.query(Goal).filter(Goal.user_id == user.id).count()
    return GoalCreationStatus(
        needs_goal_creation=count == 0,
        should_redirect_to_goal_creation=count == 0,
        goal_count=count,
    )


@router.get("/{goal_id}", response_model=GoalDetail)
def get_goal(goal_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> GoalDetail:
    return goal_detail(owned_goal(db, user.id, goal_id))


@router.patch("/{goal_id}/tasks/{task_id}", response_model=TaskItem)
def update_task(
    goal_id: int,
    task_id: int,
    payload: TaskUpdateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> TaskItem:
    goal = owned_goal(db, user.id, goal_id)
    task = db.query(Task).filter(Task.id == task_id, Task.goal_id == goal.id).first()
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    set_task_completion(task, payload.is_completed)
    db.commit()
    db.refresh(task)
    return task_item(task)


def set_task_completion(task: Task, is_completed: bool) -> None:
    if task.is_completed == is_completed:
        return
    task.is_completed = is_completed
    task.completed_at = datetime.utcnow() if is_completed else None
