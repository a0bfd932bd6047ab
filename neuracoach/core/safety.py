CRISIS_LANGUAGE_PATTERNS = [
    "kill myself",
    "killing myself",
    "end my life",
    "ending my life",
    "suicide",
    "suicidal",
    "want to die",
    "hurt myself",
    "hurting myself",
    "self harm",
    "self-harm",
    "no reason to live",
]

CRISIS_FLAG = "crisis_language"


def detect_crisis_flags(message: str) -> list[str]:
    lowered = message.lower()
    if any(pattern in lowered for pattern in CRISIS_LANGUAGE_PATTERNS):
        return [CRISIS_FLAG]
    return []


def crisis_response() -> str:
    return (
        "I'm really glad you told me, and I want you to be safe right now. "
        "Please reach out to someone you trust or contact your local emergency number or a crisis line, "
        "such as 988 in the US, to talk with a person straight away. "
        "Your check-in can wait; your wellbeing comes first."
    )
