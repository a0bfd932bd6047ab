from enum import Enum
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from neuracoach.core.security import (
    create_access_token,
    encrypt_api_key,
    hash_password,
    mask_api_key,
    user_id_from_token,
    verify_password,
)
from neuracoach.db.models import Profile, User, UserAIConfig
from neuracoach.db.session import get_db
from neuracoach.services.llm import DEFAULT_MODEL

router = APIRouter(prefix="/auth", tags=["auth"])
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


class AIProvider(str, Enum):
    openai = "openai"


class AIConfigInput(BaseModel):
    ai_provider: AIProvider = AIProvider.openai
    ai_model: str = Field(default=DEFAULT_MODEL, min_length=1, max_length=128)
    ai_utility_model: Optional[str] = Field(default=None, min_length=1, max_length=128)
    ai_api_key: str = Field(min_length=8, max_length=512)


class SignupRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    first_name: Optional[str] = Field(default=None, max_length=80)
    last_name: Optional[str] = Field(default=None, max_length=80)
    ai_config: Optional[AIConfigInput] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class AIConfigResponse(BaseModel):
    ai_provider: AIProvider
    ai_model: str
    ai_utility_model: str
    api_key_masked: str
    configured: bool = True


def _bad_credentials() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def _upsert_ai_config(db: Session, user_id: int, ai: AIConfigInput) -> UserAIConfig:
    cfg = db.query(UserAIConfig).filter(UserAIConfig.user_id == user_id).first()
    if not cfg:
        cfg = UserAIConfig(user_id=user_id)
        db.add(cfg)
    cfg.ai_provider = ai.ai_provider.value
    cfg.ai_model = ai.ai_model.strip()
    cfg.ai_utility_model = (ai.ai_utility_model or ai.ai_model).strip()
    cfg.encrypted_api_key = encrypt_api_key(ai.ai_api_key.strip())
    return cfg


def get_current_user(
    token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)
) -> User:
    try:
        user_id = user_id_from_token(token)
    except Exception:
        raise _bad_credentials()

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise _bad_credentials()
    return user


def require_ai_config(db: Session, user_id: int) -> None:
    cfg = db.query(UserAIConfig).filter(UserAIConfig.user_id == user_id).first()
    if not cfg:
        raise HTTPException(status_code=403, detail="Complete AI provider setup before talking to your coach")


@router.post("/signup", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
def signup(payload: SignupRequest, db: Session = Depends(get_db)) -> TokenResponse:
    email = payload.email.lower()
    if db.query(User).filter(User.email == email).first():
        raise HTTPException(status_code=409, detail="Email already registered")

    user = User(email=email, password_hash=hash_password(payload.password))
    db.add(user)
    db.flush()
    db.add(
        Profile(
            user_id=user.id,
            first_name=(payload.first_name or "").strip() or None,
            last_name=(payload.last_name or "").strip() or None,
        )
    )
    if payload.ai_config:
        _upsert_ai_config(db, user.id, payload.ai_config)
    db.commit()

    return TokenResponse(access_token=create_access_token(user.id))


@router.post("/login", response_model=TokenResponse)
def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)) -> TokenResponse:
    user = db.query(User).filter(User.email == form_data.username.lower()).first()
    if not user or not verify_password(form_data.password, user.password_hash):
        raise _bad_credentials()
    return TokenResponse(access_token=create_access_token(user.id))


@router.put("/ai-config", response_model=AIConfigResponse)
def set_ai_config(
    payload: AIConfigInput,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> AIConfigResponse:
    cfg = _upsert_ai_config(db, user.id, payload)
    db.commit()
    return AIConfigResponse(
        ai_provider=AIProvider(cfg.ai_provider),
        ai_model=cfg.ai_model,
        ai_utility_model=cfg.ai_utility_model or cfg.ai_model,
        api_key_masked=mask_api_key(payload.ai_api_key.strip()),
    )


@router.get("/ai-config", response_model=AIConfigResponse)
def get_ai_config(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
) -> AIConfigResponse:
    cfg = db.query(UserAIConfig).filter(UserAIConfig.user_id == user.id).first()
    if not cfg:
        raise HTTPException(status_code=404, detail="AI config not found")

    # Reads never echo any part of the stored key.
    return AIConfigResponse(
        ai_provider=AIProvider(cfg.ai_provider),
        ai_model=cfg.ai_model,
        ai_utility_model=cfg.ai_utility_model or cfg.ai_model,
        api_key_masked="****...****",
    )


@router.delete("/ai-config", status_code=status.HTTP_204_NO_CONTENT)
def revoke_ai_config(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> None:
    cfg = db.query(UserAIConfig).filter(UserAIConfig.user_id == user.id).first()
    if not cfg:
        raise HTTPException(status_code=404, detail="AI config not found")
    db.delete(cfg)
    db.commit()
