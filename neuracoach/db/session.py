import os
from pathlib import Path

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from neuracoach.db.models import Base

# Override with DB_PATH for deployments; tests rebind through configure_database.
DB_PATH = os.getenv("DB_PATH", "./data/neuracoach.db")

connect_args = {"check_same_thread": False}


def _build_engine(db_path: str):
    db_parent = Path(db_path).expanduser().resolve().parent
    db_parent.mkdir(parents=True, exist_ok=True)
    database_url = f"sqlite:///{db_path}"
    return create_engine(database_url, connect_args=connect_args)


engine = _build_engine(DB_PATH)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def configure_database(db_path: str) -> None:
    global DB_PATH, engine
    DB_PATH = db_path
    engine = _build_engine(DB_PATH)
    SessionLocal.configure(bind=engine)


def _table_columns(conn, table: str) -> set[str]:
    return {row[1] for row in conn.execute(text(f"PRAGMA table_info({table})")).fetchall()}


def create_tables() -> None:
    Base.metadata.create_all(bind=engine)
    # Lightweight forward-compatible column upgrades for SQLite without full migrations.
    with engine.begin() as conn:
        ai_columns = _table_columns(conn, "user_ai_configs")
        if "ai_utility_model" not in ai_columns:
            conn.execute(text("ALTER TABLE user_ai_configs ADD COLUMN ai_utility_model VARCHAR(128)"))
            conn.execute(text("UPDATE user_ai_configs SET ai_utility_model = ai_model WHERE ai_utility_model IS NULL"))

        goal_columns = _table_columns(conn, "goals")
        if "reason" not in goal_columns:
            conn.execute(text("ALTER TABLE goals ADD COLUMN reason TEXT"))
        if "summary" not in goal_columns:
            conn.execute(text("ALTER TABLE goals ADD COLUMN summary TEXT"))

        conv_columns = _table_columns(conn, "coach_conversations")
        if "safety_flags" not in conv_columns:
            conn.execute(text("ALTER TABLE coach_conversations ADD COLUMN safety_flags VARCHAR(256)"))
        if "check_in_date" not in conv_columns:
            conn.execute(text("ALTER TABLE coach_conversations ADD COLUMN check_in_date DATE"))


def get_db():
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()
