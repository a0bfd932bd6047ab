from datetime import date, datetime
from typing import Optional

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, relationship

Base = declarative_base()


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    profile: Mapped["Profile"] = relationship(
        "Profile", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    ai_config: Mapped["UserAIConfig"] = relationship(
        "UserAIConfig", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    goals: Mapped[list["Goal"]] = relationship("Goal", back_populates="user", cascade="all, delete-orphan")
    check_in_sessions: Mapped[list["CheckInSession"]] = relationship(
        "CheckInSession", back_populates="user", cascade="all, delete-orphan"
    )


class Profile(Base):
    __tablename__ = "profiles"
    __table_args__ = (UniqueConstraint("user_id", name="uq_profiles_user_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    notification_time: Mapped[str] = mapped_column(String(5), nullable=False, default="09:00")
    daily_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_check_in_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user: Mapped[User] = relationship("User", back_populates="profile")


class UserAIConfig(Base):
    __tablename__ = "user_ai_configs"
    __table_args__ = (UniqueConstraint("user_id", name="uq_user_ai_configs_user_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)

    ai_provider: Mapped[str] = mapped_column(String(32), nullable=False, default="openai")
    ai_model: Mapped[str] = mapped_column(String(128), nullable=False)
    ai_utility_model: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    encrypted_api_key: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user: Mapped[User] = relationship("User", back_populates="ai_config")


class Goal(Base):
    __tablename__ = "goals"
    __table_args__ = (Index("ix_goals_user_created", "user_id", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    text: Mapped[str] = mapped_column(String(500), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    init_end_at: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    user: Mapped[User] = relationship("User", back_populates="goals")
    milestones: Mapped[list["Milestone"]] = relationship(
        "Milestone", back_populates="goal", cascade="all, delete-orphan", order_by="Milestone.start_date"
    )
    tasks: Mapped[list["Task"]] = relationship(
        "Task", back_populates="goal", cascade="all, delete-orphan", order_by="Task.start_date"
    )
    check_in_sessions: Mapped[list["CheckInSession"]] = relationship(
        "CheckInSession", back_populates="goal", cascade="all, delete-orphan"
    )


class Milestone(Base):
    __tablename__ = "milestones"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    goal_id: Mapped[int] = mapped_column(ForeignKey("goals.id"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    text: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    goal: Mapped[Goal] = relationship("Goal", back_populates="milestones")
    tasks: Mapped[list["Task"]] = relationship("Task", back_populates="milestone", order_by="Task.start_date")


class Task(Base):
    __tablename__ = "tasks"
    __table_args__ = (Index("ix_tasks_goal_dates", "goal_id", "start_date", "end_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    goal_id: Mapped[int] = mapped_column(ForeignKey("goals.id"), nullable=False, index=True)
    milestone_id: Mapped[Optional[int]] = mapped_column(ForeignKey("milestones.id"), nullable=True, index=True)
    text: Mapped[str] = mapped_column(String(500), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    goal: Mapped[Goal] = relationship("Goal", back_populates="tasks")
    milestone: Mapped[Optional[Milestone]] = relationship("Milestone", back_populates="tasks")


class CheckInSession(Base):
    __tablename__ = "check_in_sessions"
    __table_args__ = (
        UniqueConstraint("user_id", "check_in_date", name="uq_check_in_user_date"),
        Index("ix_check_in_goal_created", "goal_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    goal_id: Mapped[int] = mapped_column(ForeignKey("goals.id"), nullable=False, index=True)
    check_in_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    summary: Mapped[str] = mapped_column(Text, nullable=False, default="")
    mood: Mapped[int] = mapped_column(Integer, nullable=False)
    motivation: Mapped[int] = mapped_column(Integer, nullable=False)
    blocker: Mapped[str] = mapped_column(Text, nullable=False, default="")
    progress_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    user: Mapped[User] = relationship("User", back_populates="check_in_sessions")
    goal: Mapped[Goal] = relationship("Goal", back_populates="check_in_sessions")


class CoachConversation(Base):
    __tablename__ = "coach_conversations"
    __table_args__ = (Index("ix_coach_conv_user_updated", "user_id", "updated_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    goal_id: Mapped[int] = mapped_column(ForeignKey("goals.id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    messages_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    check_in_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True, index=True)
    progress_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    end_reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    insights: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    blocker: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    safety_flags: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class TaskAdjustmentRecord(Base):
    __tablename__ = "task_adjustments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    task_id: Mapped[int] = mapped_column(ForeignKey("tasks.id"), nullable=False, index=True)
    check_in_session_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("check_in_sessions.id"), nullable=True, index=True
    )
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    previous_text: Mapped[str] = mapped_column(String(500), nullable=False)
    new_text: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    previous_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    previous_end_date: Mapped[date] = mapped_column(Date, nullable=False)
    new_start_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    new_end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class FlowSession(Base):
    __tablename__ = "flow_sessions"
    __table_args__ = (Index("ix_flow_sessions_user_flow", "user_id", "flow", "updated_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    flow: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    current_step: Mapped[str] = mapped_column(String(64), nullable=False)
    answers_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ModelUsageStat(Base):
    __tablename__ = "model_usage_stats"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", "model", name="uq_model_usage_user_provider_model"),
        Index("ix_model_usage_user_last_used", "user_id", "last_used_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    model: Mapped[str] = mapped_column(String(128), nullable=False)
    request_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    prompt_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completion_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_used_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
