import logging
import os
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence

from sqlalchemy.orm import Session

logger = logging.getLogger("uvicorn.error")

CONVERSATION_TIME_LIMIT_SECONDS = int(os.getenv("CONVERSATION_TIME_LIMIT_SECONDS", "300"))
CONVERSATION_TIME_LIMIT_MIN_USER_MESSAGES = int(os.getenv("CONVERSATION_TIME_LIMIT_MIN_USER_MESSAGES", "2"))
COMPLETION_CHECK_MIN_USER_MESSAGES = int(os.getenv("COMPLETION_CHECK_MIN_USER_MESSAGES", "3"))
MAX_USER_MESSAGES = int(os.getenv("MAX_USER_MESSAGES", "10"))
MIN_MESSAGES_FOR_MANUAL_END = int(os.getenv("MIN_MESSAGES_FOR_MANUAL_END", "6"))
BLOCKER_MAX_CHARS = 500

END_REASON_COMPLETION = "coach_detected_completion"
END_REASON_MESSAGE_LIMIT = "message_limit"
END_REASON_TIME_LIMIT = "time_limit"
END_REASON_USER = "user_ended"

FALLBACK_COACH_REPLY = (
    "I'm having trouble connecting right now, but I want you to know that it's completely normal "
    "to have challenging days. What's one small thing that might help you tomorrow?"
)
EMPTY_COACH_REPLY = "I'm here to listen. Can you tell me more about what happened today?"
FALLBACK_SUMMARY = "Discussed challenges with completing today's tasks and explored potential solutions."
FALLBACK_INSIGHTS = (
    "Thank you for sharing with me. Tomorrow is a fresh start, and I believe in your ability "
    "to make progress on your goal."
)
CLOSING_SUFFIX = "Let's continue with your check-in to capture how you're feeling right now."


def user_message_count(messages: Sequence[dict[str, Any]]) -> int:
    return sum(1 for message in messages if message.get("role") == "user")


def opening_message(progress: int, tasks: Sequence[Any]) -> str:
    completed = [task for task in tasks if task.is_completed]
    incomplete = [task for task in tasks if not task.is_completed]
    opening = f"I see you completed {progress}% of your tasks today. "
    if progress >= 80:
        return opening + (
            f"That's excellent progress! You completed {len(completed)} out of {len(tasks)} tasks. "
            "I'd love to hear about how your day went and what helped you stay on track."
        )
    opening += f"I notice you had {len(incomplete)} tasks that didn't get completed today. "
    if incomplete and incomplete[0].text:
        opening += f'For example, "{incomplete[0].text}" wasn\'t finished. '
    return opening + (
        "That's completely normal - some days are harder than others. I'm here to listen and help you "
        "work through whatever got in your way. What happened today that made it challenging?"
    )


def conversation_stage(count: int) -> str:
    if count <= 1:
        return "INITIAL"
    if count <= 4:
        return "EXPLORATION"
    if count <= 6:
        return "SOLUTION BUILDING"
    return "INSIGHT DELIVERY"


def _task_context(tasks: Sequence[Any]) -> str:
    if not tasks:
        return "No tasks available"
    return "\n".join(
        f'- "{task.text}" ({"COMPLETED" if task.is_completed else "NOT COMPLETED"})' for task in tasks
    )


def coach_system_prompt(goal_text: str, progress: int, tasks: Sequence[Any], stage: str) -> str:
    completed = sum(1 for task in tasks if task.is_completed)
    return (
        "You are Ava, an empathetic AI life coach conducting a structured check-in dialogue. "
        "Follow this coaching approach:\n\n"
        "COACHING FLOW (based on conversation stage):\n"
        "1. INITIAL RESPONSE (first user message): Acknowledge their feelings and ask about specific blockers\n"
        "2. BLOCKER EXPLORATION (messages 2-4): Dig deeper into what prevented task completion\n"
        "3. SOLUTION BUILDING (messages 5-6): Guide them toward actionable solutions\n"
        "4. INSIGHT DELIVERY (messages 7+): Provide supportive insights and prepare for session completion\n\n"
        "CONVERSATION CONTEXT:\n"
        f"- Goal: {goal_text}\n"
        f"- Progress today: {progress}% ({completed}/{len(tasks)} tasks completed)\n"
        f"- Current conversation stage: {stage}\n\n"
        "TODAY'S TASKS:\n"
        f"{_task_context(tasks)}\n\n"
        "COACHING GUIDELINES:\n"
        "- Be empathetic and non-judgmental\n"
        "- Ask specific follow-up questions about incomplete tasks\n"
        "- Help identify patterns and root causes\n"
        "- Keep responses 2-3 sentences max\n"
        "- Reference specific tasks when relevant\n\n"
        "RESPONSE STYLE:\n"
        "- Warm and supportive tone\n"
        "- Ask one focused question per response\n"
        "- Validate their feelings first\n"
        "- Connect responses to their specific tasks and goal"
    )


def transcript(messages: Sequence[dict[str, Any]]) -> str:
    return "\n".join(f"{message['role']}: {message['content']}" for message in messages)


def summary_system_prompt() -> str:
    return (
        "Summarize this coaching conversation in 2-3 sentences. Focus on:\n"
        "1. The main blocker or challenge identified\n"
        "2. Any insights or solutions discussed\n"
        "3. The user's emotional state/progress\n\n"
        "Keep it supportive and solution-focused. This summary will be saved as part of their check-in record."
    )


def insights_system_prompt(goal_text: str, progress: int, tasks: Sequence[Any]) -> str:
    incomplete = ", ".join(task.text for task in tasks if not task.is_completed)
    return (
        "Based on this coaching conversation, provide 2-3 supportive insights and actionable suggestions "
        "for tomorrow. Focus on:\n\n"
        "1. Key blockers or challenges identified\n"
        "2. Practical solutions or adjustments\n"
        "3. Encouragement and motivation\n\n"
        "Context:\n"
        f"- Goal: {goal_text}\n"
        f"- Progress: {progress}% completed\n"
        f"- Incomplete tasks: {incomplete}\n\n"
        "Keep it concise, supportive, and actionable. This will be spoken to the user."
    )


def completion_check_prompts(goal_text: str, messages: Sequence[dict[str, Any]]) -> tuple[str, str]:
    system_prompt = (
        "You review daily check-in conversations between a coach and a user. Decide whether the "
        "reflection has reached a natural close: the main blocker has been identified and the user has "
        "agreed on at least one concrete next step for tomorrow. "
        'Return strict JSON: {"complete": true|false, "reason": "<one short sentence>"}.'
    )
    user_prompt = f"Goal: {goal_text}\n\nConversation:\n{transcript(messages)}"
    return system_prompt, user_prompt


def extract_blocker(messages: Sequence[dict[str, Any]]) -> str:
    joined = " ".join(str(message["content"]) for message in messages if message.get("role") == "user")
    return joined[:BLOCKER_MAX_CHARS]


def closing_message(insights: str) -> str:
    return f"{insights} {CLOSING_SUFFIX}"


def time_limit_reached(started_at: datetime, now: datetime, count: int) -> bool:
    elapsed = now - started_at
    return (
        elapsed >= timedelta(seconds=CONVERSATION_TIME_LIMIT_SECONDS)
        and count >= CONVERSATION_TIME_LIMIT_MIN_USER_MESSAGES
    )


def forced_end_reason(messages: Sequence[dict[str, Any]], started_at: datetime, now: datetime) -> Optional[str]:
    count = user_message_count(messages)
    if count >= MAX_USER_MESSAGES:
        return END_REASON_MESSAGE_LIMIT
    if time_limit_reached(started_at, now, count):
        return END_REASON_TIME_LIMIT
    return None


def can_end_manually(messages: Sequence[dict[str, Any]]) -> bool:
    return len(messages) >= MIN_MESSAGES_FOR_MANUAL_END


def generate_coach_reply(
    llm,
    db: Session,
    user_id: int,
    goal_text: str,
    progress: int,
    tasks: Sequence[Any],
    history: Sequence[dict[str, Any]],
) -> str:
    """Ask the coach for the next turn; `history` already ends with the user's message."""
    stage = conversation_stage(user_message_count(history))
    try:
        reply = llm.chat(
            db,
            user_id,
            coach_system_prompt(goal_text, progress, tasks, stage),
            [{"role": m["role"], "content": m["content"]} for m in history],
            task_type="reasoning",
            temperature=0.7,
            max_tokens=200,
        )
    except Exception:
        logger.exception("checkin_coach_reply_error user_id=%s stage=%s", user_id, stage)
        return FALLBACK_COACH_REPLY
    return (reply or "").strip() or EMPTY_COACH_REPLY


def detect_completion(
    llm, db: Session, user_id: int, goal_text: str, messages: Sequence[dict[str, Any]]
) -> bool:
    if user_message_count(messages) < COMPLETION_CHECK_MIN_USER_MESSAGES:
        return False
    system_prompt, user_prompt = completion_check_prompts(goal_text, messages)
    try:
        verdict = llm.generate_json(
            db,
            user_id,
            system_prompt,
            user_prompt,
            task_type="completion_check",
            temperature=0.0,
            max_tokens=80,
        )
    except Exception:
        logger.warning("checkin_completion_check_failed user_id=%s", user_id, exc_info=True)
        return False
    flag = verdict.get("complete")
    if isinstance(flag, str):
        return flag.strip().lower() == "true"
    return flag is True


def generate_summary(llm, db: Session, user_id: int, messages: Sequence[dict[str, Any]]) -> str:
    try:
        summary = llm.chat(
            db,
            user_id,
            summary_system_prompt(),
            [{"role": "user", "content": transcript(messages)}],
            task_type="summarization",
            temperature=0.5,
            max_tokens=150,
        )
    except Exception:
        logger.exception("checkin_summary_error user_id=%s", user_id)
        return FALLBACK_SUMMARY
    return (summary or "").strip() or FALLBACK_SUMMARY


def generate_insights(
    llm,
    db: Session,
    user_id: int,
    goal_text: str,
    progress: int,
    tasks: Sequence[Any],
    messages: Sequence[dict[str, Any]],
) -> str:
    try:
        insights = llm.chat(
            db,
            user_id,
            insights_system_prompt(goal_text, progress, tasks),
            [{"role": "user", "content": transcript(messages)}],
            task_type="reasoning",
            temperature=0.7,
            max_tokens=200,
        )
    except Exception:
        logger.exception("checkin_insights_error user_id=%s", user_id)
        return FALLBACK_INSIGHTS
    return (insights or "").strip() or FALLBACK_INSIGHTS
