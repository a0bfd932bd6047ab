import json
import logging
from datetime import date, datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from neuracoach.api.auth import get_current_user, require_ai_config
from neuracoach.api.goals import (
    SessionItem,
    TaskItem,
    latest_goal,
    owned_goal,
    session_item,
    set_task_completion,
    task_item,
)
from neuracoach.api.onboarding import get_or_create_profile
from neuracoach.core import conversation as coach
from neuracoach.core.checkin_rules import (
    DEFAULT_MOOD,
    DEFAULT_MOTIVATION,
    advance_streak,
    can_check_in_now,
    can_check_in_today,
    is_task_overdue,
    local_now,
    next_step_after_assessment,
    progress_percentage,
    tasks_for_date,
    window_message,
)
from neuracoach.core.safety import crisis_response, detect_crisis_flags
from neuracoach.core.task_adjustment import CheckInData, perform_task_adjustment
from neuracoach.db.models import CheckInSession, CoachConversation, Goal, Profile, Task, User
from neuracoach.db.session import get_db
from neuracoach.services.llm import LLMClient, get_llm_client

router = APIRouter(prefix="/check-in", tags=["check-in"])
logger = logging.getLogger("uvicorn.error")

ALREADY_CHECKED_IN = "You've already checked in today. See you tomorrow!"


class TaskCompletion(BaseModel):
    task_id: int
    is_completed: bool


class TodayTaskItem(TaskItem):
    overdue: bool = False


class TodayResponse(BaseModel):
    goal_id: int
    goal_text: str
    local_date: date
    tasks: list[TodayTaskItem]
    progress_percentage: int
    daily_streak: int
    within_window: bool
    can_check_in_today: bool
    window_message: str
    next_step: str


class AssessmentRequest(BaseModel):
    goal_id: int
    task_completions: list[TaskCompletion] = Field(default_factory=list)
    timezone_offset_minutes: int = Field(default=0, ge=-840, le=840)


class AssessmentResponse(BaseModel):
    goal_id: int
    progress_percentage: int
    completed_tasks: int
    total_tasks: int
    needs_blocker_discussion: bool
    next_step: str


class ConversationStartRequest(BaseModel):
    goal_id: int
    timezone_offset_minutes: int = Field(default=0, ge=-840, le=840)


class ConversationMessageRequest(BaseModel):
    content: str = Field(max_length=4000)
    timezone_offset_minutes: int = Field(default=0, ge=-840, le=840)


class ConversationMessage(BaseModel):
    role: str
    content: str
    created_at: Optional[str] = None


class ConversationResponse(BaseModel):
    conversation_id: int
    goal_id: int
    status: str
    stage: str
    messages: list[ConversationMessage]
    user_message_count: int
    progress_percentage: int
    can_end: bool
    end_reason: Optional[str] = None
    summary: Optional[str] = None
    insights: Optional[str] = None
    blocker: Optional[str] = None
    safety_flags: list[str]
    next_step: str


class SubmitRequest(BaseModel):
    goal_id: int
    task_completions: list[TaskCompletion] = Field(default_factory=list)
    mood: Optional[int] = Field(default=None, ge=1, le=10)
    motivation: Optional[int] = Field(default=None, ge=1, le=10)
    conversation_id: Optional[int] = None
    summary: Optional[str] = Field(default=None, max_length=4000)
    blocker: Optional[str] = Field(default=None, max_length=4000)
    timezone_offset_minutes: int = Field(default=0, ge=-840, le=840)


class AdjustmentItem(BaseModel):
    task_id: int
    action: str
    reason: str
    new_text: Optional[str] = None
    new_start_date: Optional[str] = None
    new_end_date: Optional[str] = None


class AdjustmentResult(BaseModel):
    adjustments_made: bool
    adjustment_type: Optional[str] = None
    encouragement_message: str
    strategy: str
    adjustments: list[AdjustmentItem]


class SubmitResponse(BaseModel):
    session: SessionItem
    progress_percentage: int
    daily_streak: int
    streak_updated: bool
    adjustment: AdjustmentResult


def _goal_for_request(db: Session, user_id: int, goal_id: Optional[int]) -> Goal:
    if goal_id is not None:
        return owned_goal(db, user_id, goal_id)
    goal = latest_goal(db, user_id)
    if not goal:
        raise HTTPException(status_code=404, detail="Create a goal before checking in")
    return goal


def _ensure_can_check_in(profile: Profile, timezone_offset_minutes: int) -> date:
    now = local_now(timezone_offset_minutes)
    if not can_check_in_now(now):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=window_message())
    if not can_check_in_today(profile, now.date()):
        raise HTTPException(status_code=409, detail=ALREADY_CHECKED_IN)
    return now.date()


def _apply_completions(db: Session, goal: Goal, completions: list[TaskCompletion]) -> None:
    if not completions:
        return
    tasks = {task.id: task for task in db.query(Task).filter(Task.goal_id == goal.id).all()}
    for completion in completions:
        task = tasks.get(completion.task_id)
        if task is None:
            raise HTTPException(status_code=404, detail=f"Task {completion.task_id} not found")
        set_task_completion(task, completion.is_completed)
    db.flush()


def _todays_tasks(db: Session, goal: Goal, day: date) -> list[Task]:
    tasks = db.query(Task).filter(Task.goal_id == goal.id).order_by(Task.start_date.asc(), Task.id.asc()).all()
    return tasks_for_date(tasks, day)


def _load_messages(conv: CoachConversation) -> list[dict[str, Any]]:
    try:
        data = json.loads(conv.messages_json or "[]")
        return data if isinstance(data, list) else []
    except json.JSONDecodeError:
        return []


def _store_messages(conv: CoachConversation, messages: list[dict[str, Any]]) -> None:
    conv.messages_json = json.dumps(messages, separators=(",", ":"))


def _message(role: str, content: str) -> dict[str, Any]:
    return {"role": role, "content": content, "created_at": datetime.utcnow().isoformat()}


def _flags(conv: CoachConversation) -> list[str]:
    return [flag for flag in (conv.safety_flags or "").split(",") if flag]


def _conversation_payload(conv: CoachConversation) -> ConversationResponse:
    messages = _load_messages(conv)
    count = coach.user_message_count(messages)
    active = conv.status == "active"
    return ConversationResponse(
        conversation_id=conv.id,
        goal_id=conv.goal_id,
        status=conv.status,
        stage=coach.conversation_stage(count),
        messages=[ConversationMessage(**m) for m in messages],
        user_message_count=count,
        progress_percentage=conv.progress_percentage,
        can_end=active and coach.can_end_manually(messages),
        end_reason=conv.end_reason,
        summary=conv.summary,
        insights=conv.insights,
        blocker=conv.blocker,
        safety_flags=_flags(conv),
        next_step="chat" if active else "mood",
    )


def _owned_conversation(db: Session, user_id: int, conversation_id: int) -> CoachConversation:
    conv = (
        db.query(CoachConversation)
        .filter(CoachConversation.id == conversation_id, CoachConversation.user_id == user_id)
        .first()
    )
    if not conv:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conv


def _finish_conversation(
    db: Session,
    llm: LLMClient,
    user_id: int,
    conv: CoachConversation,
    messages: list[dict[str, Any]],
    reason: str,
    tasks: list[Task],
    closing: bool = True,
) -> None:
    goal = db.get(Goal, conv.goal_id)
    goal_text = goal.text if goal else ""
    insights = coach.generate_insights(llm, db, user_id, goal_text, conv.progress_percentage, tasks, messages)
    summary = coach.generate_summary(llm, db, user_id, messages)
    conv.blocker = coach.extract_blocker(messages)
    conv.insights = insights
    conv.summary = summary
    conv.end_reason = reason
    conv.status = "completed"
    conv.ended_at = datetime.utcnow()
    if closing:
        messages.append(_message("assistant", coach.closing_message(insights)))
    _store_messages(conv, messages)
    logger.info("checkin_conversation_ended user_id=%s conversation_id=%s reason=%s", user_id, conv.id, reason)


def _abandon_open_conversations(
    db: Session, user_id: int, goal_id: int, keep_date: Optional[date] = None
) -> None:
    """Close active conversations for the goal, except ones started on `keep_date`."""
    rows = (
        db.query(CoachConversation)
        .filter(
            CoachConversation.user_id == user_id,
            CoachConversation.goal_id == goal_id,
            CoachConversation.status == "active",
        )
        .all()
    )
    for conv in rows:
        if keep_date is not None and conv.check_in_date == keep_date:
            continue
        conv.status = "abandoned"
        conv.ended_at = datetime.utcnow()
        logger.info("checkin_conversation_abandoned user_id=%s conversation_id=%s", user_id, conv.id)


@router.get("/today", response_model=TodayResponse)
def today_overview(
    goal_id: Optional[int] = Query(default=None),
    timezone_offset_minutes: int = Query(default=0, ge=-840, le=840),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> TodayResponse:
    goal = _goal_for_request(db, user.id, goal_id)
    profile = get_or_create_profile(db, user.id)
    db.commit()
    now = local_now(timezone_offset_minutes)
    today = now.date()
    tasks = _todays_tasks(db, goal, today)
    return TodayResponse(
        goal_id=goal.id,
        goal_text=goal.text,
        local_date=today,
        tasks=[TodayTaskItem(**task_item(t).model_dump(), overdue=is_task_overdue(t, today)) for t in tasks],
        progress_percentage=progress_percentage(tasks),
        daily_streak=profile.daily_streak or 0,
        within_window=can_check_in_now(now),
        can_check_in_today=can_check_in_today(profile, today),
        window_message=window_message(),
        next_step="assessment",
    )


@router.post("/assessment", response_model=AssessmentResponse)
def assess_progress(
    payload: AssessmentRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> AssessmentResponse:
    goal = owned_goal(db, user.id, payload.goal_id)
    today = _ensure_can_check_in(get_or_create_profile(db, user.id), payload.timezone_offset_minutes)
    _apply_completions(db, goal, payload.task_completions)
    db.commit()
    tasks = _todays_tasks(db, goal, today)
    progress = progress_percentage(tasks)
    next_step = next_step_after_assessment(progress)
    return AssessmentResponse(
        goal_id=goal.id,
        progress_percentage=progress,
        completed_tasks=sum(1 for t in tasks if t.is_completed),
        total_tasks=len(tasks),
        needs_blocker_discussion=next_step == "chat",
        next_step=next_step,
    )


@router.post("/conversation/start", response_model=ConversationResponse)
def start_conversation(
    payload: ConversationStartRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ConversationResponse:
    require_ai_config(db, user.id)
    goal = owned_goal(db, user.id, payload.goal_id)
    today = _ensure_can_check_in(get_or_create_profile(db, user.id), payload.timezone_offset_minutes)

    _abandon_open_conversations(db, user.id, goal.id, keep_date=today)
    existing = (
        db.query(CoachConversation)
        .filter(
            CoachConversation.user_id == user.id,
            CoachConversation.goal_id == goal.id,
            CoachConversation.status == "active",
            CoachConversation.check_in_date == today,
        )
        .order_by(CoachConversation.started_at.desc())
        .first()
    )
    if existing:
        db.commit()
        return _conversation_payload(existing)

    tasks = _todays_tasks(db, goal, today)
    progress = progress_percentage(tasks)
    conv = CoachConversation(
        user_id=user.id,
        goal_id=goal.id,
        status="active",
        check_in_date=today,
        progress_percentage=progress,
        started_at=datetime.utcnow(),
    )
    _store_messages(conv, [_message("assistant", coach.opening_message(progress, tasks))])
    db.add(conv)
    db.commit()
    db.refresh(conv)
    logger.info("checkin_conversation_started user_id=%s goal_id=%s progress=%s", user.id, goal.id, progress)
    return _conversation_payload(conv)


@router.post("/conversation/{conversation_id}/message", response_model=ConversationResponse)
def send_message(
    conversation_id: int,
    payload: ConversationMessageRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    llm: LLMClient = Depends(get_llm_client),
) -> ConversationResponse:
    conv = _owned_conversation(db, user.id, conversation_id)
    if conv.status != "active":
        raise HTTPException(status_code=409, detail="This conversation has already ended")
    content = payload.content.strip()
    if not content:
        raise HTTPException(status_code=422, detail="Message cannot be empty")

    goal = owned_goal(db, user.id, conv.goal_id)
    today = local_now(payload.timezone_offset_minutes).date()
    tasks = _todays_tasks(db, goal, today)
    messages = _load_messages(conv)
    messages.append(_message("user", content))

    flags = detect_crisis_flags(content)
    if flags:
        conv.safety_flags = ",".join(sorted(set(_flags(conv)) | set(flags)))
        messages.append(_message("assistant", crisis_response()))
        logger.warning("checkin_crisis_language user_id=%s conversation_id=%s", user.id, conv.id)
    else:
        reply = coach.generate_coach_reply(llm, db, user.id, goal.text, conv.progress_percentage, tasks, messages)
        messages.append(_message("assistant", reply))

    # Crisis turns still count toward the message and time limits.
    reason = coach.forced_end_reason(messages, conv.started_at, datetime.utcnow())
    if reason is None and not flags and coach.detect_completion(llm, db, user.id, goal.text, messages):
        reason = coach.END_REASON_COMPLETION
    if reason:
        # The safety reply stays the last message when the crisis turn forces the end.
        _finish_conversation(db, llm, user.id, conv, messages, reason, tasks, closing=not flags)
    else:
        _store_messages(conv, messages)
    db.commit()
    db.refresh(conv)
    return _conversation_payload(conv)


@router.post("/conversation/{conversation_id}/end", response_model=ConversationResponse)
def end_conversation(
    conversation_id: int,
    timezone_offset_minutes: int = Query(default=0, ge=-840, le=840),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    llm: LLMClient = Depends(get_llm_client),
) -> ConversationResponse:
    conv = _owned_conversation(db, user.id, conversation_id)
    if conv.status != "active":
        return _conversation_payload(conv)

    messages = _load_messages(conv)
    reason = coach.forced_end_reason(messages, conv.started_at, datetime.utcnow())
    if reason is None:
        if not coach.can_end_manually(messages):
            raise HTTPException(status_code=409, detail="Share a little more with your coach before ending")
        reason = coach.END_REASON_USER

    goal = owned_goal(db, user.id, conv.goal_id)
    tasks = _todays_tasks(db, goal, local_now(timezone_offset_minutes).date())
    _finish_conversation(db, llm, user.id, conv, messages, reason, tasks)
    db.commit()
    db.refresh(conv)
    return _conversation_payload(conv)


@router.get("/conversation/{conversation_id}", response_model=ConversationResponse)
def get_conversation(
    conversation_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)
) -> ConversationResponse:
    return _conversation_payload(_owned_conversation(db, user.id, conversation_id))


@router.post("/submit", response_model=SubmitResponse, status_code=status.HTTP_201_CREATED)
def submit_check_in(
    payload: SubmitRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    llm: LLMClient = Depends(get_llm_client),
) -> SubmitResponse:
    goal = owned_goal(db, user.id, payload.goal_id)
    profile = get_or_create_profile(db, user.id)
    today = _ensure_can_check_in(profile, payload.timezone_offset_minutes)

    summary = (payload.summary or "").strip()
    blocker = (payload.blocker or "").strip()
    if payload.conversation_id is not None:
        conv = _owned_conversation(db, user.id, payload.conversation_id)
        if conv.goal_id != goal.id:
            raise HTTPException(status_code=404, detail="Conversation not found")
        summary = summary or (conv.summary or "")
        blocker = blocker or (conv.blocker or "")

    _apply_completions(db, goal, payload.task_completions)
    progress = progress_percentage(_todays_tasks(db, goal, today))
    row = CheckInSession(
        user_id=user.id,
        goal_id=goal.id,
        check_in_date=today,
        summary=summary,
        mood=payload.mood if payload.mood is not None else DEFAULT_MOOD,
        motivation=payload.motivation if payload.motivation is not None else DEFAULT_MOTIVATION,
        blocker=blocker,
        progress_percentage=progress,
    )
    _abandon_open_conversations(db, user.id, goal.id)
    db.add(row)
    streak_updated = advance_streak(profile, today)
    try:
        db.commit()
    except IntegrityError:
        # A concurrent submit for the same local day won the unique constraint.
        db.rollback()
        logger.warning("checkin_submit_duplicate user_id=%s goal_id=%s date=%s", user.id, goal.id, today)
        raise HTTPException(status_code=409, detail=ALREADY_CHECKED_IN)
    db.refresh(row)
    logger.info(
        "checkin_submit user_id=%s goal_id=%s progress=%s streak=%s", user.id, goal.id, progress, profile.daily_streak
    )

    goal_tasks = db.query(Task).filter(Task.goal_id == goal.id).order_by(Task.start_date.asc(), Task.id.asc()).all()
    outcome = perform_task_adjustment(
        llm,
        db,
        user.id,
        goal.text,
        goal_tasks,
        CheckInData(
            mood=row.mood,
            motivation=row.motivation,
            progress_percentage=progress,
            blocker=blocker,
            summary=summary,
        ),
        check_in_session_id=row.id,
    )
    return SubmitResponse(
        session=session_item(row),
        progress_percentage=progress,
        daily_streak=profile.daily_streak,
        streak_updated=streak_updated,
        adjustment=AdjustmentResult(
            adjustments_made=outcome.adjustments_made,
            adjustment_type=outcome.analysis.adjustment_type if outcome.analysis else None,
            encouragement_message=outcome.encouragement_message,
            strategy=outcome.strategy,
            adjustments=[AdjustmentItem(**a.as_dict()) for a in outcome.adjustments],
        ),
    )
