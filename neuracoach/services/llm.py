import json
import os
import time
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, Tuple

import httpx
from sqlalchemy.orm import Session

from neuracoach.core.security import decrypt_api_key
from neuracoach.db.models import ModelUsageStat, UserAIConfig

OPENAI_CHAT_COMPLETIONS_URL = os.getenv(
    "OPENAI_CHAT_COMPLETIONS_URL", "https://api.openai.com/v1/chat/completions"
)
DEFAULT_MODEL = "gpt-4o-mini"

LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))
LLM_CONNECT_TIMEOUT_SECONDS = float(os.getenv("LLM_CONNECT_TIMEOUT_SECONDS", "10"))
LLM_WRITE_TIMEOUT_SECONDS = float(os.getenv("LLM_WRITE_TIMEOUT_SECONDS", "30"))
LLM_POOL_TIMEOUT_SECONDS = float(os.getenv("LLM_POOL_TIMEOUT_SECONDS", "60"))
LLM_RETRY_COUNT = int(os.getenv("LLM_RETRY_COUNT", "1"))
LLM_RETRY_BACKOFF_SECONDS = float(os.getenv("LLM_RETRY_BACKOFF_SECONDS", "0.75"))
LLM_MAX_TOKENS_UTILITY = int(os.getenv("LLM_MAX_TOKENS_UTILITY", "200"))
LLM_MAX_TOKENS_REASONING = int(os.getenv("LLM_MAX_TOKENS_REASONING", "1000"))

UTILITY_TASK_TYPES = {
    "utility",
    "summarization",
    "classification",
    "completion_check",
}


def _http_timeout() -> httpx.Timeout:
    return httpx.Timeout(
        connect=LLM_CONNECT_TIMEOUT_SECONDS,
        read=LLM_TIMEOUT_SECONDS,
        write=LLM_WRITE_TIMEOUT_SECONDS,
        pool=LLM_POOL_TIMEOUT_SECONDS,
    )


def _default_max_tokens(task_type: str) -> int:
    if (task_type or "").strip().lower() in UTILITY_TASK_TYPES:
        return LLM_MAX_TOKENS_UTILITY
    return LLM_MAX_TOKENS_REASONING


class LLMRequestError(RuntimeError):
    def __init__(self, provider: str, model: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.model = model
        self.status_code = status_code


def parse_llm_json(raw_text: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw_text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    start = raw_text.find("{")
    end = raw_text.rfind("}")
    if start != -1 and end != -1 and end > start:
        try:
            parsed = json.loads(raw_text[start : end + 1])
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass
    raise ValueError("Invalid JSON response from LLM")


def _resolve_model_config(db: Session, user_id: int) -> Tuple[str, str, str, str]:
    cfg = db.query(UserAIConfig).filter(UserAIConfig.user_id == user_id).first()
    if cfg:
        return (
            cfg.ai_provider,
            cfg.ai_model,
            cfg.ai_utility_model or cfg.ai_model,
            decrypt_api_key(cfg.encrypted_api_key),
        )

    reasoning_model = os.getenv("DEFAULT_AI_MODEL", "").strip() or DEFAULT_MODEL
    utility_model = os.getenv("DEFAULT_UTILITY_MODEL", "").strip() or reasoning_model
    key = os.getenv("OPENAI_API_KEY", "").strip()
    if key:
        return "openai", reasoning_model, utility_model, key
    raise ValueError("AI config missing")


def select_model_for_task(reasoning_model: str, utility_model: str, task_type: str) -> str:
    if (task_type or "").strip().lower() in UTILITY_TASK_TYPES:
        return utility_model
    return reasoning_model


def _openai_chat_completion(
    model: str,
    api_key: str,
    messages: list[dict[str, str]],
    temperature: float,
    max_tokens: int,
    json_mode: bool,
) -> Tuple[str, dict[str, int]]:
    payload: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "temperature": temperature,
        "max_tokens": max_tokens,
    }
    if json_mode:
        payload["response_format"] = {"type": "json_object"}
    response = httpx.post(
        OPENAI_CHAT_COMPLETIONS_URL,
        headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
        json=payload,
        timeout=_http_timeout(),
    )
    response.raise_for_status()
    data = response.json()
    usage = data.get("usage", {}) if isinstance(data, dict) else {}
    usage_tokens = {
        "prompt_tokens": int(usage.get("prompt_tokens", 0) or 0),
        "completion_tokens": int(usage.get("completion_tokens", 0) or 0),
        "total_tokens": int(usage.get("total_tokens", 0) or 0),
    }
    text = str(data["choices"][0]["message"].get("content") or "").strip()
    return text, usage_tokens


def _openai_request(
    model: str,
    api_key: str,
    messages: list[dict[str, str]],
    temperature: float,
    max_tokens: int,
    json_mode: bool = False,
) -> Tuple[str, dict[str, int]]:
    attempts = max(1, LLM_RETRY_COUNT + 1)
    last_error = "unknown error"
    for idx in range(attempts):
        try:
            return _openai_chat_completion(model, api_key, messages, temperature, max_tokens, json_mode)
        except httpx.TimeoutException as exc:
            last_error = "timeout"
            if idx < attempts - 1:
                time.sleep(LLM_RETRY_BACKOFF_SECONDS * (idx + 1))
                continue
            raise LLMRequestError(
                provider="openai",
                model=model,
                message="OpenAI request timed out while waiting for response.",
            ) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code if exc.response is not None else None
            detail = ""
            if exc.response is not None:
                detail = (exc.response.text or "").strip()[:220]
            # Rate limits and upstream outages are worth one more try.
            if status in {429, 500, 502, 503, 504} and idx < attempts - 1:
                last_error = f"status={status}"
                time.sleep(LLM_RETRY_BACKOFF_SECONDS * (idx + 1))
                continue
            raise LLMRequestError(
                provider="openai",
                model=model,
                status_code=status,
                message=f"OpenAI request failed (status={status}): {detail or 'no response body'}",
            ) from exc
        except httpx.TransportError as exc:
            last_error = str(exc)[:220]
            if idx < attempts - 1:
                time.sleep(LLM_RETRY_BACKOFF_SECONDS * (idx + 1))
                continue
            raise LLMRequestError(
                provider="openai",
                model=model,
                message=f"OpenAI request failed: {last_error}",
            ) from exc
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise LLMRequestError(
                provider="openai",
                model=model,
                message=f"OpenAI returned an unexpected payload: {str(exc)[:220]}",
            ) from exc
    raise LLMRequestError(provider="openai", model=model, message=f"OpenAI request failed: {last_error}")


def _record_usage(
    db: Session, user_id: int, provider: str, model: str, usage_tokens: dict[str, int]
) -> None:
    prompt_tokens = max(0, int(usage_tokens.get("prompt_tokens", 0) or 0))
    completion_tokens = max(0, int(usage_tokens.get("completion_tokens", 0) or 0))
    total_tokens = max(0, int(usage_tokens.get("total_tokens", prompt_tokens + completion_tokens) or 0))
    row = (
        db.query(ModelUsageStat)
        .filter(
            ModelUsageStat.user_id == user_id,
            ModelUsageStat.provider == provider,
            ModelUsageStat.model == model,
        )
        .first()
    )
    now = datetime.now(timezone.utc)
    if not row:
        row = ModelUsageStat(
            user_id=user_id,
            provider=provider,
            model=model,
            request_count=0,
            prompt_tokens=0,
            completion_tokens=0,
            total_tokens=0,
            last_used_at=now,
        )
        db.add(row)
    row.request_count += 1
    row.prompt_tokens += prompt_tokens
    row.completion_tokens += completion_tokens
    row.total_tokens += total_tokens
    row.last_used_at = now


class LLMClient(Protocol):
    def generate_json(
        self,
        db: Session,
        user_id: int,
        system_prompt: str,
        user_prompt: str,
        task_type: str = "reasoning",
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> dict[str, Any]:
        ...

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
        ...


class RealLLMClient:
    def _complete(
        self,
        db: Session,
        user_id: int,
        messages: list[dict[str, str]],
        task_type: str,
        temperature: float,
        max_tokens: Optional[int],
        json_mode: bool,
    ) -> str:
        provider, reasoning_model, utility_model, api_key = _resolve_model_config(db, user_id)
        if provider != "openai":
            raise ValueError("Unsupported AI provider")
        model = select_model_for_task(reasoning_model, utility_model, task_type)
        raw, usage_tokens = _openai_request(
            model,
            api_key,
            messages,
            temperature,
            max_tokens or _default_max_tokens(task_type),
            json_mode=json_mode,
        )
        _record_usage(db, user_id, provider, model, usage_tokens)
        db.commit()
        return raw

    def generate_json(
        self,
        db: Session,
        user_id: int,
        system_prompt: str,
        user_prompt: str,
        task_type: str = "reasoning",
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> dict[str, Any]:
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        raw = self._complete(db, user_id, messages, task_type, temperature, max_tokens, json_mode=True)
        if not raw:
            raise ValueError("No response from LLM")
        return parse_llm_json(raw)

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
        full = [{"role": "system", "content": system_prompt}]
        full.extend({"role": m["role"], "content": m["content"]} for m in messages)
        return self._complete(db, user_id, full, task_type, temperature, max_tokens, json_mode=False)


def get_llm_client() -> LLMClient:
    return RealLLMClient()
