from fastapi import FastAPI

from neuracoach.api.auth import router as auth_router
from neuracoach.api.check_in import router as check_in_router
from neuracoach.api.dashboard import router as dashboard_router
from neuracoach.api.goals import router as goals_router
from neuracoach.api.onboarding import router as onboarding_router
from neuracoach.db.session import create_tables

app = FastAPI(title="NeuraCoach")


@app.on_event("startup")
def on_startup() -> None:
    create_tables()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api")
def api_root() -> dict[str, str]:
    return {"service": "NeuraCoach API", "status": "ok"}


app.include_router(auth_router)
app.include_router(onboarding_router)
app.include_router(goals_router)
app.include_router(check_in_router)
app.include_router(dashboard_router)
