from datetime import datetime, timedelta
from types import SimpleNamespace

from conftest import COACH_REPLY, INSIGHTS_REPLY, SUMMARY_REPLY, FakeLLMClient, FakeScenario
from neuracoach.core import conversation as coach

TASKS = [
    SimpleNamespace(text="Run 2km at easy pace", is_completed=False),
    SimpleNamespace(text="Stretch for 10 minutes", is_completed=True),
]


def _chat(user_turns: int) -> list[dict]:
    messages = [{"role": "assistant", "content": "opening"}]
    for i in range(user_turns):
        messages.append({"role": "user", "content": f"message {i}"})
        messages.append({"role": "assistant", "content": f"reply {i}"})
    return messages


def test_opening_message_low_progress_names_incomplete_task() -> None:
    text = coach.opening_message(50, TASKS)
    assert text.startswith("I see you completed 50% of your tasks today. ")
    assert 'For example, "Run 2km at easy pace" wasn\'t finished.' in text
    assert text.endswith("What happened today that made it challenging?")


def test_opening_message_high_progress() -> None:
    done = [SimpleNamespace(text="a", is_completed=True)] * 4 + [SimpleNamespace(text="b", is_completed=False)]
    text = coach.opening_message(80, done)
    assert "You completed 4 out of 5 tasks." in text


def test_conversation_stages() -> None:
    assert [coach.conversation_stage(n) for n in (0, 1, 2, 4, 5, 6, 7)] == [
        "INITIAL",
        "INITIAL",
        "EXPLORATION",
        "EXPLORATION",
        "SOLUTION BUILDING",
        "SOLUTION BUILDING",
        "INSIGHT DELIVERY",
    ]


def test_coach_prompt_carries_context() -> None:
    prompt = coach.coach_system_prompt("Run a 5K", 50, TASKS, "EXPLORATION")
    assert prompt.startswith("You are Ava")
    assert "- Progress today: 50% (1/2 tasks completed)" in prompt
    assert '- "Run 2km at easy pace" (NOT COMPLETED)' in prompt


def test_extract_blocker_joins_user_turns_and_truncates() -> None:
    messages = [
        {"role": "assistant", "content": "hi"},
        {"role": "user", "content": "meetings"},
        {"role": "user", "content": "x" * 600},
    ]
    blocker = coach.extract_blocker(messages)
    assert blocker.startswith("meetings x")
    assert len(blocker) == coach.BLOCKER_MAX_CHARS


def test_forced_end_reason_message_limit() -> None:
    now = datetime(2025, 1, 1, 20, 0)
    assert coach.forced_end_reason(_chat(coach.MAX_USER_MESSAGES), now, now) == coach.END_REASON_MESSAGE_LIMIT


def test_forced_end_reason_time_limit_needs_two_user_turns() -> None:
    started = datetime(2025, 1, 1, 20, 0)
    late = started + timedelta(seconds=coach.CONVERSATION_TIME_LIMIT_SECONDS)
    assert coach.forced_end_reason(_chat(1), started, late) is None
    assert coach.forced_end_reason(_chat(2), started, late) == coach.END_REASON_TIME_LIMIT
    assert coach.forced_end_reason(_chat(2), started, started + timedelta(seconds=30)) is None


def test_manual_end_needs_enough_messages() -> None:
    assert coach.can_end_manually(_chat(2)) is False
    assert coach.can_end_manually(_chat(3)) is True


def test_closing_message_appends_handoff() -> None:
    assert coach.closing_message("Rest well.") == f"Rest well. {coach.CLOSING_SUFFIX}"


def test_generate_coach_reply_uses_reasoning_model() -> None:
    llm = FakeLLMClient(FakeScenario.OK)
    reply = coach.generate_coach_reply(llm, None, 1, "Run a 5K", 50, TASKS, _chat(1)[:-1])
    assert reply == COACH_REPLY
    assert llm.calls[0]["task_type"] == "reasoning"
    assert "Current conversation stage: INITIAL" in llm.calls[0]["system"]


def test_generate_coach_reply_fallbacks() -> None:
    history = _chat(1)[:-1]
    assert coach.generate_coach_reply(FakeLLMClient(FakeScenario.TIMEOUT), None, 1, "g", 0, TASKS, history) == (
        coach.FALLBACK_COACH_REPLY
    )
    assert coach.generate_coach_reply(FakeLLMClient(FakeScenario.MALFORMED_JSON), None, 1, "g", 0, TASKS, history) == (
        coach.EMPTY_COACH_REPLY
    )


def test_detect_completion_waits_for_enough_turns() -> None:
    llm = FakeLLMClient(FakeScenario.COMPLETE)
    assert coach.detect_completion(llm, None, 1, "g", _chat(2)) is False
    assert llm.calls == []
    assert coach.detect_completion(llm, None, 1, "g", _chat(3)) is True
    assert llm.calls[0]["task_type"] == "completion_check"


def test_detect_completion_failure_keeps_talking() -> None:
    assert coach.detect_completion(FakeLLMClient(FakeScenario.TIMEOUT), None, 1, "g", _chat(3)) is False
    assert coach.detect_completion(FakeLLMClient(FakeScenario.OK), None, 1, "g", _chat(3)) is False


def test_summary_and_insights() -> None:
    llm = FakeLLMClient(FakeScenario.OK)
    assert coach.generate_summary(llm, None, 1, _chat(3)) == SUMMARY_REPLY
    assert coach.generate_insights(llm, None, 1, "g", 50, TASKS, _chat(3)) == INSIGHTS_REPLY
    failing = FakeLLMClient(FakeScenario.TIMEOUT)
    assert coach.generate_summary(failing, None, 1, _chat(3)) == coach.FALLBACK_SUMMARY
    assert coach.generate_insights(failing, None, 1, "g", 50, TASKS, _chat(3)) == coach.FALLBACK_INSIGHTS
