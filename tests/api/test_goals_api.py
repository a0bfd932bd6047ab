from datetime import date, timedelta

from conftest import FakeScenario


def test_create_goal_builds_milestones_and_tasks(client, auth_token, override_llm) -> None:
    headers = {"Authorization": f"Bearer {auth_token}"}
    status = client.get("/goals/creation-status", headers=headers).json()
    assert status["needs_goal_creation"] is True

    fake = override_llm(FakeScenario.OK)
    res = client.post(
        "/goals",
        headers=headers,
        json={"text": "Run a 5K in under 30 minutes", "reason": "More energy", "timezone_offset_minutes": 0},
    )
    assert res.status_code == 201
    goal = res.json()
    assert goal["summary"] == "Build up to a timed 5K in small measurable steps."
    milestones = goal["milestones"]
    assert [m["position"] for m in milestones] == [1, 2, 3]
    assert milestones[0]["text"] == "Record a baseline of 3 timed attempts"
    assert len(milestones[1]["tasks"]) == 2
    assert milestones[1]["start_date"] == (
        date.fromisoformat(milestones[0]["end_date"]) + timedelta(days=1)
    ).isoformat()
    assert goal["init_end_at"] == milestones[-1]["end_date"]
    assert goal["stats"]["total_tasks"] == 4
    assert fake.calls[0]["task_type"] == "reasoning"

    listing = client.get("/goals", headers=headers).json()
    assert [item["id"] for item in listing["items"]] == [goal["id"]]
    status = client.get("/goals/creation-status", headers=headers).json()
    assert status["goal_count"] == 1
    assert status["should_redirect_to_goal_creation"] is False


def test_create_goal_llm_failures_return_502(client, auth_token, override_llm) -> None:
    headers = {"Authorization": f"Bearer {auth_token}"}
    for scenario in (FakeScenario.TIMEOUT, FakeScenario.MALFORMED_JSON):
        override_llm(scenario)
        res = client.post("/goals", headers=headers, json={"text": "Learn to juggle three balls"})
        assert res.status_code == 502
    assert client.get("/goals", headers=headers).json()["items"] == []


def test_create_goal_requires_ai_config(client, auth_token_without_ai) -> None:
    headers = {"Authorization": f"Bearer {auth_token_without_ai}"}
    res = client.post("/goals", headers=headers, json={"text": "Run a 5K"})
    assert res.status_code == 403


def test_task_completion_toggle(client, auth_token, override_llm) -> None:
    headers = {"Authorization": f"Bearer {auth_token}"}
    override_llm(FakeScenario.OK)
    goal = client.post("/goals", headers=headers, json={"text": "Run a 5K in under 30 minutes"}).json()
    task_id = goal["milestones"][0]["tasks"][0]["id"]

    done = client.patch(f"/goals/{goal['id']}/tasks/{task_id}", headers=headers, json={"is_completed": True})
    assert done.status_code == 200
    assert done.json()["is_completed"] is True
    detail = client.get(f"/goals/{goal['id']}", headers=headers).json()
    assert detail["stats"]["completed_tasks"] == 1

    missing = client.patch(f"/goals/{goal['id']}/tasks/999999", headers=headers, json={"is_completed": True})
    assert missing.status_code == 404


def test_goals_are_private(client, auth_token, auth_token_without_ai, override_llm) -> None:
    headers = {"Authorization": f"Bearer {auth_token}"}
    override_llm(FakeScenario.OK)
    goal = client.post("/goals", headers=headers, json={"text": "Run a 5K in under 30 minutes"}).json()

    intruder = {"Authorization": f"Bearer {auth_token_without_ai}"}
    assert client.get(f"/goals/{goal['id']}", headers=intruder).status_code == 404
    res = client.patch(f"/goals/{goal['id']}/tasks/1", headers=intruder, json={"is_completed": True})
    assert res.status_code == 404
