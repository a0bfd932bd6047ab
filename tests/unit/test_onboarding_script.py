import pytest

from neuracoach.core.onboarding import (
    GOAL_CREATION_STEPS,
    goal_creation_script,
    next_goal_flow_step,
    normalize_notification_time,
    onboarding_script,
    onboarding_status,
    split_full_name,
)


def test_split_full_name() -> None:
    assert split_full_name("  Ada  King Lovelace ") == ("Ada", "King Lovelace")
    assert split_full_name("Prince") == ("Prince", "")
    assert split_full_name("   ") == ("", "")


def test_onboarding_status_progression() -> None:
    assert onboarding_status(None, None, 0)["onboarding_step"] == "profile"
    assert onboarding_status("Ada", None, 3)["needs_profile_setup"] is True
    goal_step = onboarding_status("Ada", "Lovelace", 0)
    assert goal_step["onboarding_step"] == "goal"
    assert goal_step["should_redirect_to_onboarding"] is True
    done = onboarding_status("Ada", "Lovelace", 1)
    assert done["should_redirect_to_onboarding"] is False
    assert done["onboarding_step"] is None


def test_goal_creation_script_personalises_name() -> None:
    steps = {s["id"]: s for s in goal_creation_script("Ada")}
    assert steps["questions_time"]["text"] == "So tell me Ada"
    assert steps["final"]["text"].startswith("Alright Ada,")
    assert steps["goal_setup"]["input"] == "goal"
    anonymous = {s["id"]: s for s in goal_creation_script(None)}
    assert anonymous["questions_time"]["text"] == "So tell me friend"


def test_onboarding_script_fallback_name() -> None:
    steps = {s["id"]: s for s in onboarding_script(None)}
    assert steps["personal_welcome"]["text"] == "It's really nice to meet you, there."
    assert steps["name_input"]["input"] == "name"


def test_next_goal_flow_step_walks_script() -> None:
    ids = [s["id"] for s in GOAL_CREATION_STEPS]
    assert next_goal_flow_step(ids[0]) == ids[1]
    assert next_goal_flow_step(ids[-1]) is None


@pytest.mark.parametrize(
    "raw,expected",
    [("9", "09:00"), ("9:30", "09:30"), ("21:05", "21:05"), ("9pm", "21:00"), ("12 am", "00:00"), ("", "09:00")],
)
def test_normalize_notification_time(raw, expected) -> None:
    assert normalize_notification_time(raw) == expected


@pytest.mark.parametrize("raw", ["25:00", "9:75", "13pm", "after dinner"])
def test_normalize_notification_time_rejects(raw) -> None:
    with pytest.raises(ValueError):
        normalize_notification_time(raw)
