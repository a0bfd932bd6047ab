import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from neuracoach.api.auth import get_current_user, require_ai_config
from neuracoach.api.goals import create_goal_with_plan
from neuracoach.core.checkin_rules import local_today
from neuracoach.core.onboarding import (
    GOAL_FLOW_INPUT_STEPS,
    GOAL_FLOW_NAME_FALLBACK,
    ONBOARDING_NAME_FALLBACK,
    ONBOARDING_STEPS,
    first_goal_flow_step,
    goal_creation_script,
    goal_flow_step,
    next_goal_flow_step,
    normalize_notification_time,
    onboarding_script,
    onboarding_status,
    render_step,
    split_full_name,
)
from neuracoach.db.models import FlowSession, Goal, Profile, User
from neuracoach.db.session import get_db
from neuracoach.services.llm import LLMClient, get_llm_client

router = APIRouter(prefix="/onboarding", tags=["onboarding"])
logger = logging.getLogger("uvicorn.error")

GOAL_FLOW = "goal_creation"


class OnboardingStatusResponse(BaseModel):
    needs_profile_setup: bool
    needs_goal_setup: bool
    should_redirect_to_onboarding: bool
    onboarding_step: Optional[str] = None


class ScriptStep(BaseModel):
    id: str
    text: str
    subtext: str
    personality: str
    input: str


class ScriptsResponse(BaseModel):
    onboarding: list[ScriptStep]
    goal_creation: list[ScriptStep]


class ProfileResponse(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    notification_time: str
    daily_streak: int
    last_check_in_date: Optional[str] = None


class ProfileUpdateRequest(BaseModel):
    first_name: Optional[str] = Field(default=None, max_length=80)
    last_name: Optional[str] = Field(default=None, max_length=80)
    notification_time: Optional[str] = Field(default=None, max_length=16)


class NameCaptureRequest(BaseModel):
    full_name: str = Field(min_length=1, max_length=160)


class NameCaptureResponse(BaseModel):
    profile: ProfileResponse
    coach_message: str


class GoalFlowStartRequest(BaseModel):
    restart: bool = False


class GoalFlowAnswerRequest(BaseModel):
    session_id: int
    answer: Optional[str] = Field(default=None, max_length=2000)
    timezone_offset_minutes: int = Field(default=0, ge=-840, le=840)


class GoalFlowResponse(BaseModel):
    session_id: int
    status: str
    current_step: str
    coach_message: str
    step: Optional[ScriptStep] = None
    captured_fields: list[str]
    goal_id: Optional[int] = None


def get_or_create_profile(db: Session, user_id: int) -> Profile:
    profile = db.query(Profile).filter(Profile.user_id == user_id).first()
    if not profile:
        profile = Profile(user_id=user_id)
        db.add(profile)
        db.flush()
    return profile


def _profile_response(profile: Profile) -> ProfileResponse:
    return ProfileResponse(
        first_name=profile.first_name,
        last_name=profile.last_name,
        notification_time=profile.notification_time or "09:00",
        daily_streak=profile.daily_streak or 0,
        last_check_in_date=profile.last_check_in_date.isoformat() if profile.last_check_in_date else None,
    )


def _active_flow(db: Session, user_id: int) -> Optional[FlowSession]:
    return (
        db.query(FlowSession)
        .filter(FlowSession.user_id == user_id, FlowSession.flow == GOAL_FLOW, FlowSession.status == "active")
        .order_by(FlowSession.updated_at.desc(), FlowSession.id.desc())
        .first()
    )


def _load_answers(session: FlowSession) -> dict[str, Any]:
    try:
        data = json.loads(session.answers_json or "{}")
        return data if isinstance(data, dict) else {}
    except json.JSONDecodeError:
        return {}


def _spoken(step: dict[str, str]) -> str:
    if step.get("subtext"):
        return f"{step['text']} {step['subtext']}"
    return step["text"]


def _flow_payload(
    session: FlowSession, first_name: Optional[str], coach_message: Optional[str] = None
) -> GoalFlowResponse:
    answers = _load_answers(session)
    step_payload: Optional[ScriptStep] = None
    if session.status == "active":
        rendered = render_step(goal_flow_step(session.current_step), first_name, GOAL_FLOW_NAME_FALLBACK)
        step_payload = ScriptStep(**rendered)
        message = coach_message or _spoken(rendered)
    else:
        message = coach_message or ""
    return GoalFlowResponse(
        session_id=session.id,
        status=session.status,
        current_step=session.current_step,
        coach_message=message,
        step=step_payload,
        captured_fields=sorted(answers.keys()),
        goal_id=answers.get("goal_id"),
    )


@router.get("/status", response_model=OnboardingStatusResponse)
def get_status(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> OnboardingStatusResponse:
    profile = db.query(Profile).filter(Profile.user_id == user.id).first()
    goal_count = db.query(Goal).filter(Goal.user_id == user.id).count()
    return OnboardingStatusResponse(
        **onboarding_status(
            profile.first_name if profile else None,
            profile.last_name if profile else None,
            goal_count,
        )
    )


@router.get("/scripts", response_model=ScriptsResponse)
def get_scripts(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> ScriptsResponse:
    profile = db.query(Profile).filter(Profile.user_id == user.id).first()
    first_name = profile.first_name if profile else None
    return ScriptsResponse(
        onboarding=[ScriptStep(**step) for step in onboarding_script(first_name)],
        goal_creation=[ScriptStep(**step) for step in goal_creation_script(first_name)],
    )


@router.get("/profile", response_model=ProfileResponse)
def get_profile(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> ProfileResponse:
    profile = get_or_create_profile(db, user.id)
    db.commit()
    return _profile_response(profile)


@router.put("/profile", response_model=ProfileResponse)
def update_profile(
    payload: ProfileUpdateRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ProfileResponse:
    profile = get_or_create_profile(db, user.id)
    if payload.first_name is not None:
        profile.first_name = payload.first_name.strip() or None
    if payload.last_name is not None:
        profile.last_name = payload.last_name.strip() or None
    if payload.notification_time is not None:
        try:
            profile.notification_time = normalize_notification_time(payload.notification_time)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc))
    db.commit()
    db.refresh(profile)
    return _profile_response(profile)


@router.post("/name", response_model=NameCaptureResponse)
def capture_name(
    payload: NameCaptureRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> NameCaptureResponse:
    first_name, last_name = split_full_name(payload.full_name)
    if not first_name:
        raise HTTPException(status_code=422, detail="Please tell me your name")
    profile = get_or_create_profile(db, user.id)
    profile.first_name = first_name[:80]
    profile.last_name = last_name[:80] or None
    db.commit()
    db.refresh(profile)
    welcome = next(step for step in ONBOARDING_STEPS if step["id"] == "personal_welcome")
    rendered = render_step(welcome, profile.first_name, ONBOARDING_NAME_FALLBACK)
    return NameCaptureResponse(profile=_profile_response(profile), coach_message=rendered["text"])


@router.post("/goal-flow/start", response_model=GoalFlowResponse)
def start_goal_flow(
    payload: GoalFlowStartRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> GoalFlowResponse:
    require_ai_config(db, user.id)
    profile = get_or_create_profile(db, user.id)
    session = _active_flow(db, user.id)
    if session and payload.restart:
        session.status = "abandoned"
        session = None
    if not session:
        session = FlowSession(
            user_id=user.id,
            flow=GOAL_FLOW,
            status="active",
            current_step=first_goal_flow_step(),
            answers_json="{}",
        )
        db.add(session)
    db.commit()
    db.refresh(session)
    return _flow_payload(session, profile.first_name)


@router.post("/goal-flow/answer", response_model=GoalFlowResponse)
def answer_goal_flow(
    payload: GoalFlowAnswerRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    llm: LLMClient = Depends(get_llm_client),
) -> GoalFlowResponse:
    require_ai_config(db, user.id)
    session = (
        db.query(FlowSession)
        .filter(FlowSession.id == payload.session_id, FlowSession.user_id == user.id, FlowSession.flow == GOAL_FLOW)
        .first()
    )
    if not session or session.status != "active":
        raise HTTPException(status_code=404, detail="Active goal creation flow not found")

    profile = get_or_create_profile(db, user.id)
    answers = _load_answers(session)
    step = session.current_step
    answer = (payload.answer or "").strip()
    field = GOAL_FLOW_INPUT_STEPS.get(step)

    if field == "reason":
        answers["reason"] = answer
    elif field == "goal":
        if len(answer) < 3:
            return _flow_payload(
                session, profile.first_name, "Tell me a little more about your goal so I can plan it with you."
            )
        goal = create_goal_with_plan(
            db, llm, user.id, answer, answers.get("reason"), local_today(payload.timezone_offset_minutes)
        )
        answers["goal"] = answer
        answers["goal_id"] = goal.id
    elif field == "notification_time":
        try:
            profile.notification_time = normalize_notification_time(answer)
        except ValueError as exc:
            return _flow_payload(session, profile.first_name, f"{exc}. Please try again.")
        answers["notification_time"] = profile.notification_time

    next_step = next_goal_flow_step(step)
    session.answers_json = json.dumps(answers, separators=(",", ":"))
    if next_step is None:
        session.status = "completed"
        session.current_step = "complete"
        db.commit()
        logger.info("goal_flow_completed user_id=%s session_id=%s", user.id, session.id)
        return _flow_payload(session, profile.first_name, "Your plan is ready. See you at your first check-in!")
    session.current_step = next_step
    db.commit()
    return _flow_payload(session, profile.first_name)
