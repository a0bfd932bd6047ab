import re
from typing import Optional

NAME_PLACEHOLDER = "______"
ONBOARDING_NAME_TOKEN = "[Name]"
GOAL_FLOW_NAME_FALLBACK = "friend"
ONBOARDING_NAME_FALLBACK = "there"
DEFAULT_NOTIFICATION_TIME = "09:00"

ONBOARDING_STEPS: list[dict[str, str]] = [
    {
        "id": "greeting",
        "text": "Hi, I'm Ava. Welcome to NeuraCoach!",
        "subtext": "",
        "personality": "warm and welcoming",
    },
    {
        "id": "name_input",
        "text": "Before we begin, what's your full name?",
        "subtext": "",
        "personality": "friendly and curious",
    },
    {
        "id": "personal_welcome",
        "text": "It's really nice to meet you, [Name].",
        "subtext": "",
        "personality": "warm and personal",
    },
    {
        "id": "ava_introduction",
        "text": "I'm your AI coach. Every evening we'll check in on your progress together.",
        "subtext": "",
        "personality": "confident and supportive",
    },
    {
        "id": "growth_message",
        "text": "Real growth comes from small steps taken every day, not giant leaps.",
        "subtext": "",
        "personality": "thoughtful and encouraging",
    },
    {
        "id": "statistics",
        "text": "People who write down their goals and review them regularly are far more likely to reach them.",
        "subtext": "",
        "personality": "informative but gentle",
    },
    {
        "id": "reassurance",
        "text": "Some days will be harder than others, and that's completely normal.",
        "subtext": "",
        "personality": "reassuring and supportive",
    },
    {
        "id": "mission_statement",
        "text": "My job is to help you turn your goal into a plan and stick with it, one day at a time.",
        "subtext": "",
        "personality": "motivating and focused",
    },
]

GOAL_CREATION_STEPS: list[dict[str, str]] = [
    {
        "id": "anxiety",
        "text": "If you have anxiety, you're not alone.",
        "subtext": "",
        "personality": "empathetic and understanding",
    },
    {
        "id": "stats",
        "text": "Over 8% of adults in the US alone report symptoms.",
        "subtext": "",
        "personality": "informative but gentle",
    },
    {
        "id": "not_alone",
        "text": "Know you are not alone.",
        "subtext": "",
        "personality": "reassuring and supportive",
    },
    {
        "id": "understanding",
        "text": (
            "We'll help you understand your anxiety and find tools to control it - through daily check-ins, "
            "one small step at a time."
        ),
        "subtext": "",
        "personality": "hopeful and motivating",
    },
    {
        "id": "questions_before",
        "text": "Before we start, I have a few questions.",
        "subtext": "",
        "personality": "gentle and curious",
    },
    {
        "id": "questions_time",
        "text": "So tell me ______",
        "subtext": "What brings you to me today?",
        "personality": "caring and attentive",
    },
    {
        "id": "goal_setup",
        "text": "What would you like to work on?",
        "subtext": "Tell me your main goal or what you'd like to achieve.",
        "personality": "supportive and focused",
    },
    {
        "id": "notification_time",
        "text": "What time would you like to receive daily notifications?",
        "subtext": "",
        "personality": "helpful and practical",
    },
    {
        "id": "daily_checkins",
        "text": (
            "People who check in daily see an increase in mood 5x faster than those who do not check in "
            "regularly."
        ),
        "subtext": "",
        "personality": "encouraging and factual",
    },
    {
        "id": "weekly_sessions",
        "text": "Many people see results in as little as 2 weeks!",
        "subtext": "",
        "personality": "optimistic and motivating",
    },
    {
        "id": "final",
        "text": "Alright ______, that's all the talking for now. Let's get started!",
        "subtext": "",
        "personality": "excited and ready",
    },
]

# Step id -> answer key stored on the flow session.
GOAL_FLOW_INPUT_STEPS = {
    "questions_time": "reason",
    "goal_setup": "goal",
    "notification_time": "notification_time",
}

_TIME_PATTERN = re.compile(r"^\s*(\d{1,2})(?::(\d{2}))?\s*(am|pm)?\s*$", re.I)


def split_full_name(text: str) -> tuple[str, str]:
    parts = (text or "").strip().split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def onboarding_status(first_name: Optional[str], last_name: Optional[str], goal_count: int) -> dict:
    if not (first_name and last_name):
        return {
            "needs_profile_setup": True,
            "needs_goal_setup": True,
            "should_redirect_to_onboarding": True,
            "onboarding_step": "profile",
        }
    if goal_count <= 0:
        return {
            "needs_profile_setup": False,
            "needs_goal_setup": True,
            "should_redirect_to_onboarding": True,
            "onboarding_step": "goal",
        }
    return {
        "needs_profile_setup": False,
        "needs_goal_setup": False,
        "should_redirect_to_onboarding": False,
        "onboarding_step": None,
    }


def render_step(step: dict[str, str], first_name: Optional[str], fallback: str) -> dict[str, str]:
    name = (first_name or "").strip() or fallback
    rendered = dict(step)
    rendered["text"] = step["text"].replace(NAME_PLACEHOLDER, name).replace(ONBOARDING_NAME_TOKEN, name)
    rendered["input"] = GOAL_FLOW_INPUT_STEPS.get(step["id"], "name" if step["id"] == "name_input" else "")
    return rendered


def onboarding_script(first_name: Optional[str] = None) -> list[dict[str, str]]:
    return [render_step(step, first_name, ONBOARDING_NAME_FALLBACK) for step in ONBOARDING_STEPS]


def goal_creation_script(first_name: Optional[str] = None) -> list[dict[str, str]]:
    return [render_step(step, first_name, GOAL_FLOW_NAME_FALLBACK) for step in GOAL_CREATION_STEPS]


def goal_flow_step(step_id: str) -> dict[str, str]:
    for step in GOAL_CREATION_STEPS:
        if step["id"] == step_id:
            return step
    raise KeyError(step_id)


def first_goal_flow_step() -> str:
    return GOAL_CREATION_STEPS[0]["id"]


def next_goal_flow_step(step_id: str) -> Optional[str]:
    ids = [step["id"] for step in GOAL_CREATION_STEPS]
    idx = ids.index(step_id)
    if idx + 1 >= len(ids):
        return None
    return ids[idx + 1]


def normalize_notification_time(value: Optional[str]) -> str:
    """Parse "9", "9:30", "21:00" or "9pm" into HH:MM; empty input uses the default."""
    if value is None or not value.strip():
        return DEFAULT_NOTIFICATION_TIME
    match = _TIME_PATTERN.match(value)
    if not match:
        raise ValueError("Notification time must look like HH:MM")
    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    meridiem = (match.group(3) or "").lower()
    if meridiem:
        if not 1 <= hour <= 12:
            raise ValueError("Notification time must look like HH:MM")
        hour = hour % 12 + (12 if meridiem == "pm" else 0)
    if hour > 23 or minute > 59:
        raise ValueError("Notification time must look like HH:MM")
    return f"{hour:02d}:{minute:02d}"
