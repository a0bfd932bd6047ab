import re
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from neuracoach.core.security import encrypt_api_key, hash_password, user_id_from_token
from neuracoach.db.models import Goal, Milestone, Profile, Task, User, UserAIConfig
from neuracoach.db.session import SessionLocal, configure_database, create_tables
from neuracoach.services.llm import LLMRequestError, get_llm_client, parse_llm_json


class FakeScenario(str, Enum):
    OK = "OK"
    COMPLETE = "COMPLETE"
    MALFORMED_JSON = "MALFORMED_JSON"
    INVALID_PLAN = "INVALID_PLAN"
    TIMEOUT = "TIMEOUT"


PLAN_RESPONSE = {
    "steps": [
        {
            "text": "Complete 12 practice sessions of 20 minutes each",
            "order": 2,
            "estimated_duration_days": 4,
            "description": "Log each session in a notebook",
            "tasks": ["Complete practice sessions 1-6", "Complete practice sessions 7-12"],
        },
        {
            "text": "Record a baseline of 3 timed attempts",
            "order": 1,
            "estimated_duration_days": 3,
            "description": "Use a timer for each attempt",
        },
        {
            "text": "Finish a 5K run in under 30 minutes",
            "order": 3,
            "estimated_duration_days": 2,
        },
    ],
    "total_estimated_duration_days": 9,
    "goal_summary": "Build up to a timed 5K in small measurable steps.",
}

COACH_REPLY = "That sounds like a tough day. What got in the way of your practice session?"
SUMMARY_REPLY = "The user was blocked by a late work meeting and agreed to practice before work tomorrow."
INSIGHTS_REPLY = "Late meetings drained your energy. Try practicing first thing tomorrow."
ENCOURAGEMENT = "Smaller steps tomorrow will help you rebuild momentum."


class FakeLLMClient:
    def __init__(self, scenario: FakeScenario) -> None:
        self.scenario = scenario
        self.calls: list[dict[str, Any]] = []

    def _fail_if_needed(self) -> None:
        if self.scenario == FakeScenario.TIMEOUT:
            raise LLMRequestError(provider="openai", model="gpt-4o-mini", message="simulated timeout")

    def generate_json(
        self,
        db: Session,
        user_id: int,
        system_prompt: str,
        user_prompt: str,
        task_type: str = "reasoning",
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> dict:
        self.calls.append({"kind": "json", "task_type": task_type, "system": system_prompt, "user": user_prompt})
        self._fail_if_needed()
        if self.scenario == FakeScenario.MALFORMED_JSON:
            return parse_llm_json("The coach could not format a reply")
        if task_type == "completion_check":
            return {"complete": self.scenario == FakeScenario.COMPLETE, "reason": "blocker and next step agreed"}
        if "break down this goal" in user_prompt:
            if self.scenario == FakeScenario.INVALID_PLAN:
                return {"steps": [{"text": "Improve daily", "order": 1}]}
            return PLAN_RESPONSE
        if "adaptive task management" in system_prompt:
            task_ids = [int(v) for v in re.findall(r"- ID: (\d+)", system_prompt)]
            adjustments = []
            if task_ids:
                adjustments.append(
                    {
                        "task_id": task_ids[0],
                        "action": "simplify",
                        "new_text": "Complete one 10 minute practice session",
                        "reason": "Smaller step after a hard day",
                    }
                )
            adjustments.append({"task_id": 999999, "action": "update", "reason": "unknown task"})
            return {
                "adjustments": adjustments,
                "overall_strategy": "Reduce load for the next few days",
                "encouragement_message": ENCOURAGEMENT,
            }
        return {}

    def chat(
        self,
        db: Session,
        user_id: int,
        system_prompt: str,
        messages: list[dict[str, str]],
        task_type: str = "reasoning",
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> str:
        self.calls.append({"kind": "chat", "task_type": task_type, "system": system_prompt, "messages": messages})
        self._fail_if_needed()
        if self.scenario == FakeScenario.MALFORMED_JSON:
            return ""
        if task_type == "summarization":
            return SUMMARY_REPLY
        if system_prompt.startswith("Based on this coaching conversation"):
            return INSIGHTS_REPLY
        return COACH_REPLY


def checkin_offset_minutes(target_hour: int = 20) -> int:
    """Timezone offset that puts the user's local clock at `target_hour`."""
    utc_hour = datetime.now(timezone.utc).hour
    for shift in (0, 24, -24):
        diff = utc_hour - target_hour + shift
        if -14 <= diff <= 14:
            return diff * 60
    raise AssertionError("no offset within range")


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    db_path = tmp_path_factory.mktemp("db") / "neuracoach_test.db"
    configure_database(str(db_path))
    create_tables()
    return db_path


@pytest.fixture(scope="session")
def app(test_db_path: Path):
    from neuracoach.main import app as fastapi_app

    return fastapi_app


@pytest.fixture
def client(app):
    app.dependency_overrides = {}
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides = {}


@pytest.fixture
def db_session(test_db_path: Path):
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def create_user(db_session: Session) -> Callable[..., User]:
    def _create_user(with_ai_config: bool = True, first_name: Optional[str] = None) -> User:
        user = User(email=f"user_{uuid4().hex[:10]}@test.com", password_hash=hash_password("StrongPass123"))
        db_session.add(user)
        db_session.flush()
        db_session.add(Profile(user_id=user.id, first_name=first_name))
        if with_ai_config:
            db_session.add(
                UserAIConfig(
                    user_id=user.id,
                    ai_provider="openai",
                    ai_model="gpt-4o-mini",
                    encrypted_api_key=encrypt_api_key("sk-test-12345678"),
                )
            )
        db_session.commit()
        db_session.refresh(user)
        return user

    return _create_user


def _signup(client: TestClient, with_ai_config: bool) -> str:
    email = f"auth_{uuid4().hex[:10]}@test.com"
    password = "StrongPass123"
    body: dict[str, Any] = {"email": email, "password": password}
    if with_ai_config:
        body["ai_config"] = {"ai_provider": "openai", "ai_model": "gpt-4o-mini", "ai_api_key": "sk-test-12345678"}
    signup = client.post("/auth/signup", json=body)
    assert signup.status_code == 201
    login = client.post("/auth/login", data={"username": email, "password": password})
    assert login.status_code == 200
    return login.json()["access_token"]


@pytest.fixture
def auth_token(client: TestClient) -> str:
    return _signup(client, with_ai_config=True)


@pytest.fixture
def auth_token_without_ai(client: TestClient) -> str:
    return _signup(client, with_ai_config=False)


@pytest.fixture
def token_user_id() -> Callable[[str], int]:
    return user_id_from_token


@pytest.fixture
def seed_goal(db_session: Session):
    """Goal with one milestone around `day`: two tasks active that day and one overdue."""

    def _seed(user_id: int, day: date, completed: int = 0) -> Goal:
        goal = Goal(user_id=user_id, text="Run a 5K in under 30 minutes", init_end_at=day + timedelta(days=10))
        db_session.add(goal)
        db_session.flush()
        milestone = Milestone(
            goal_id=goal.id,
            position=1,
            text="Complete 12 practice runs",
            start_date=day - timedelta(days=3),
            end_date=day + timedelta(days=10),
        )
        db_session.add(milestone)
        db_session.flush()
        texts = ["Run 2km at easy pace", "Stretch for 10 minutes", "Log yesterday's run"]
        starts = [day, day, day - timedelta(days=2)]
        ends = [day, day + timedelta(days=1), day - timedelta(days=1)]
        for idx, (text, start, end) in enumerate(zip(texts, starts, ends)):
            db_session.add(
                Task(
                    goal_id=goal.id,
                    milestone_id=milestone.id,
                    text=text,
                    start_date=start,
                    end_date=end,
                    is_completed=idx < completed,
                )
            )
        db_session.add(
            Task(
                goal_id=goal.id,
                milestone_id=milestone.id,
                text="Finish a timed 5K",
                start_date=day + timedelta(days=5),
                end_date=day + timedelta(days=10),
            )
        )
        db_session.commit()
        db_session.refresh(goal)
        return goal

    return _seed


@pytest.fixture
def fake_llm_factory() -> Callable[[FakeScenario], FakeLLMClient]:
    def _factory(scenario: FakeScenario) -> FakeLLMClient:
        return FakeLLMClient(scenario=scenario)

    return _factory


@pytest.fixture
def override_llm(app, fake_llm_factory):
    def _override(scenario: FakeScenario) -> FakeLLMClient:
        fake = fake_llm_factory(scenario)
        app.dependency_overrides[get_llm_client] = lambda: fake
        return fake

    return _override
