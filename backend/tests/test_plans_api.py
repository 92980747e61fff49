from __future__ import annotations

import json
from uuid import UUID, uuid4

from app.db.models.agent_action_log import AgentActionLog
from app.llm.client import get_text_generator
from app.main import app


def _create_goal(test_client, user_id: UUID, **extra) -> dict:
    response = test_client.post(
        "/goals",
        json={"user_id": str(user_id), "goal": "Learn Python basics in 2 weeks", **extra},
    )
    assert response.status_code == 201, response.text
    return response.json()


def _set_status(test_client, user_id: UUID, task_id: str, status: str) -> None:
    response = test_client.patch(f"/tasks/{task_id}", json={"user_id": str(user_id), "status": status})
    assert response.status_code == 200, response.text


def test_get_plan_round_trips_stored_plan(client) -> None:
    test_client, _ = client
    user_id = uuid4()
    created = _create_goal(test_client, user_id)
    goal_id = created["goal"]["id"]

    response = test_client.get(f"/plans/{goal_id}", params={"user_id": str(user_id)})

    assert response.status_code == 200
    body = response.json()
    assert body["adjustments"] == []
    stored_tasks = body["plan"]["tasks"]
    assert {task["id"] for task in stored_tasks} == {task["id"] for task in created["plan"]["tasks"]}
    assert [task["order"] for task in stored_tasks] == sorted(task["order"] for task in stored_tasks)
    assert body["plan"]["schedule"]["days"] == created["plan"]["schedule"]["days"]
    assert body["plan"]["goal"]["parsedDeadline"] == "2 weeks"


def test_plan_routes_enforce_ownership(client) -> None:
    test_client, _ = client
    goal_id = _create_goal(test_client, uuid4())["goal"]["id"]
    stranger = {"user_id": str(uuid4())}

    assert test_client.get(f"/plans/{goal_id}", params=stranger).status_code == 403
    assert test_client.get(f"/plans/{goal_id}/next-task", params=stranger).status_code == 403
    assert test_client.get(f"/plans/{uuid4()}/feasibility", params=stranger).status_code == 404


def test_next_task_skips_completed(client) -> None:
    test_client, _ = client
    user_id = uuid4()
    created = _create_goal(test_client, user_id)
    goal_id = created["goal"]["id"]

    first = test_client.get(f"/plans/{goal_id}/next-task", params={"user_id": str(user_id)}).json()
    _set_status(test_client, user_id, first["task"]["id"], "completed")
    second = test_client.get(f"/plans/{goal_id}/next-task", params={"user_id": str(user_id)}).json()

    top_score = max(task["priorityScore"] for task in created["plan"]["tasks"])
    assert first["task"]["priorityScore"] == top_score
    assert second["task"]["id"] != first["task"]["id"]
    assert second["remaining"] == len(created["plan"]["tasks"]) - 1


def test_feasibility_and_today_views(client) -> None:
    test_client, _ = client
    user_id = uuid4()
    created = _create_goal(test_client, user_id, scheduling_preferences={"startDate": "2026-06-01"})
    goal_id = created["goal"]["id"]

    feasibility = test_client.get(f"/plans/{goal_id}/feasibility", params={"user_id": str(user_id)})
    today = test_client.get(
        f"/plans/{goal_id}/today",
        params={"user_id": str(user_id), "on": "2026-06-01", "days": 2},
    )

    assert feasibility.status_code == 200
    assert feasibility.json()["feasibility"]["isFeasible"] is True
    assert today.status_code == 200
    body = today.json()
    assert body["date"] == "2026-06-01"
    first_day = created["plan"]["schedule"]["days"][0]
    assert [item["taskId"] for item in body["tasks"]] == [item["taskId"] for item in first_day["tasks"]]
    assert all(day["date"] in ("2026-06-01", "2026-06-02") for day in body["upcoming"])


def test_reflect_without_outcomes_is_rejected(client) -> None:
    test_client, _ = client
    user_id = uuid4()
    goal_id = _create_goal(test_client, user_id)["goal"]["id"]

    response = test_client.post(f"/plans/{goal_id}/reflect", json={"user_id": str(user_id)})

    assert response.status_code == 422


def test_reflect_adjusts_plan_and_memory(client) -> None:
    test_client, session_factory = client
    user_id = uuid4()
    created = _create_goal(test_client, user_id)
    goal_id = created["goal"]["id"]
    tasks = created["plan"]["tasks"]
    _set_status(test_client, user_id, tasks[0]["id"], "completed")
    _set_status(test_client, user_id, tasks[1]["id"], "missed")
    _set_status(test_client, user_id, tasks[2]["id"], "missed")

    response = test_client.post(f"/plans/{goal_id}/reflect", json={"user_id": str(user_id)})

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["observations"] == 3
    assert body["replanned"] is True
    assert body["memory"]["version"] == 1
    assert body["memory"]["stats"]["totalTasksAttempted"] == 3
    assert body["adjusted_plan"]["reflection"]["fallbackUsed"] is True
    assert body["recommendations"]
    scheduled = {item["taskId"] for day in body["adjusted_plan"]["schedule"]["days"] for item in day["tasks"]}
    assert tasks[0]["id"] not in scheduled

    stored = test_client.get(f"/plans/{goal_id}", params={"user_id": str(user_id)}).json()
    assert len(stored["adjustments"]) == 1
    assert stored["adjustments"][0]["observations"] == 3
    assert stored["adjustments"][0]["replanned"] is True
    assert stored["plan"]["schedule"]["preferences"]["bufferTimePercent"] == 30

    with session_factory() as db:
        actions = db.query(AgentActionLog).filter(AgentActionLog.action_type == "reflection_applied").all()
        assert len(actions) == 1
        assert actions[0].action_payload["memory_version"] == 1


def test_reflect_with_explicit_progress_and_generated_output(client, scripted_generator) -> None:
    test_client, _ = client
    user_id = uuid4()
    created = _create_goal(test_client, user_id)
    goal_id = created["goal"]["id"]
    target = created["plan"]["tasks"][-1]["id"]
    generator = scripted_generator(
        [
            json.dumps(
                {
                    "analysis": {"whyTasksMissed": "None missed", "userTendency": "realistic"},
                    "adjustments": {
                        "priorityChanges": [{"taskId": target, "newPriority": 10, "reason": "Quiz on Monday"}]
                    },
                    "memoryUpdates": [{"pattern": "steady_progress", "description": "Keeps pace"}],
                    "insights": ["Keep the current pace"],
                }
            )
        ]
    )
    app.dependency_overrides[get_text_generator] = lambda: generator
    progress = [{"taskId": created["plan"]["tasks"][0]["id"], "status": "completed", "completedOnTime": True}]

    response = test_client.post(
        f"/plans/{goal_id}/reflect",
        json={"user_id": str(user_id), "progress": progress},
    )

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["replanned"] is False
    assert body["recommendations"] == ["Keep the current pace"]
    assert body["memory"]["patterns"][0]["pattern"] == "steady_progress"

    tasks = test_client.get(f"/goals/{goal_id}/tasks", params={"user_id": str(user_id)}).json()
    rescored = next(task for task in tasks if task["id"] == target)
    assert rescored["priority_score"] == 10
    assert rescored["score_reasoning"] == "Quiz on Monday"


def test_insights_reflect_memory_and_statistics(client) -> None:
    test_client, _ = client
    user_id = uuid4()

    empty = test_client.get("/insights", params={"user_id": str(user_id)})
    assert empty.status_code == 200
    assert empty.json()["memory"]["version"] == 0
    assert empty.json()["statistics"]["total"] == 0

    created = _create_goal(test_client, user_id)
    goal_id = created["goal"]["id"]
    tasks = created["plan"]["tasks"]
    _set_status(test_client, user_id, tasks[0]["id"], "missed")
    test_client.post(f"/plans/{goal_id}/reflect", json={"user_id": str(user_id)})

    body = test_client.get("/insights", params={"user_id": str(user_id)}).json()
    assert body["memory"]["version"] == 1
    assert body["memory"]["completionRate"] == 0.0
    assert body["statistics"]["missed"] == 1
    assert body["statistics"]["total"] == len(tasks)
    assert "Completion rate is low - consider reducing daily workload" in body["recommendations"]
