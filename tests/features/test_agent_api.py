"""
API tests for agent runs, schedules, remediation and cleanup

Covers:
- Single agent and sequence runs with per-user cooldowns
- Schedule entry CRUD and event-triggered runs
- Remediation reviews and effectiveness tracking
- Cleanup endpoints
"""

import pytest
from datetime import datetime, timedelta


class TestAgentAPI:
    """Engine endpoints for a learner with a built plan"""

    @pytest.fixture(autouse=True)
    def setup(self, client, learner, topics):
        self.client = client
        self.user_id = learner.id
        self.topics = topics
        response = client.post(
            "/api/plans/",
            json={
                "user_id": self.user_id,
                "exam_date": (datetime.now() + timedelta(days=28)).isoformat(),
            },
        )
        assert response.status_code == 201
        self.plan = response.json()["plan"]

    # --- Agents ---

    def test_run_monitor(self):
        response = self.client.post(
            "/api/agents/run", json={"agent_type": "monitor", "user_id": self.user_id}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["outcome"] == "SUCCEEDED"
        assert data["steps"][0]["agent"] == "monitor"

    def test_repeat_run_is_rate_limited(self):
        payload = {"agent_type": "monitor", "user_id": self.user_id}
        self.client.post("/api/agents/run", json=payload)

        response = self.client.post("/api/agents/run", json=payload)

        assert response.status_code == 429
        assert response.json()["error_type"] == "RateLimitedError"
        assert 0 < int(response.headers["Retry-After"]) <= 600

    def test_unknown_user(self):
        response = self.client.post(
            "/api/agents/run", json={"agent_type": "monitor", "user_id": 9999}
        )

        assert response.status_code == 404

    def test_malformed_agent_params(self):
        response = self.client.post(
            "/api/agents/run",
            json={
                "agent_type": "remediation",
                "user_id": self.user_id,
                "params": {"topic_id": "abc"},
            },
        )

        assert response.status_code == 422
        assert response.json()["error_type"] == "ValidationError"

    def test_standard_sequence(self):
        response = self.client.post(
            "/api/agents/sequence", json={"user_id": self.user_id, "sequence_type": "standard"}
        )

        assert response.status_code == 200
        assert [s["agent"] for s in response.json()["steps"]] == ["monitor", "adaptation"]

    def test_explicit_agent_list(self):
        response = self.client.post(
            "/api/agents/sequence",
            json={
                "user_id": self.user_id,
                "agents": [
                    {"agent_type": "monitor"},
                    {"agent_type": "remediation", "params": {"topic_id": self.topics[0].id}},
                ],
            },
        )

        assert response.status_code == 200
        steps = response.json()["steps"]
        assert steps[1]["result"]["topic_id"] == self.topics[0].id

    def test_sequence_needs_exactly_one_target(self):
        response = self.client.post(
            "/api/agents/sequence",
            json={
                "user_id": self.user_id,
                "sequence_type": "standard",
                "agents": [{"agent_type": "monitor"}],
            },
        )

        assert response.status_code == 422

    # --- Schedules ---

    def test_schedule_crud(self):
        response = self.client.post(
            "/api/schedules/",
            json={
                "sequence_type": "standard",
                "user_id": self.user_id,
                "interval_minutes": 60,
                "next_run": (datetime.now() + timedelta(hours=1)).isoformat(),
            },
        )
        assert response.status_code == 201
        entry = response.json()
        assert entry["enabled"] is True

        updated = self.client.patch(f"/api/schedules/{entry['id']}", json={"enabled": False})
        assert updated.json()["enabled"] is False

        listed = self.client.get("/api/schedules/", params={"user_id": self.user_id}).json()
        assert [e["id"] for e in listed] == [entry["id"]]

        assert self.client.delete(f"/api/schedules/{entry['id']}").json() == {"deleted": True}
        assert self.client.get(f"/api/schedules/{entry['id']}").status_code == 404

    def test_recurring_schedule_needs_interval(self):
        response = self.client.post("/api/schedules/", json={"agent_type": "monitor"})

        assert response.status_code == 409

    def test_process_due(self):
        self.client.post(
            "/api/schedules/",
            json={"agent_type": "monitor", "user_id": self.user_id, "interval_minutes": 60},
        )

        response = self.client.post("/api/schedules/process-due")

        assert response.json()["processed"] == 1
        assert self.client.get("/api/schedules/due").json() == []

    def test_standard_monitoring(self):
        response = self.client.post("/api/schedules/standard-monitoring")

        assert [e["sequence_type"] for e in response.json()] == ["standard"]

    def test_trigger(self):
        response = self.client.post(
            "/api/schedules/trigger", json={"user_id": self.user_id, "agent_type": "monitor"}
        )

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert self.client.get("/api/schedules/").json() == []

    # --- Remediation ---

    def test_schedule_review(self):
        topic_id = self.topics[1].id
        response = self.client.post(
            "/api/remediation/schedule-review",
            json={"user_id": self.user_id, "topic_id": topic_id},
        )

        assert response.status_code == 200
        assert response.json()["created"] is True
        assert response.json()["topic_id"] == topic_id

        again = self.client.post(
            "/api/remediation/schedule-review",
            json={"user_id": self.user_id, "topic_id": topic_id},
        )
        assert again.status_code == 429

    def test_effectiveness(self):
        topic_id = self.topics[0].id
        response = self.client.post(
            "/api/remediation/effectiveness",
            json={
                "user_id": self.user_id,
                "topic_id": topic_id,
                "action_type": "RECOMMEND_CONTENT",
            },
        )

        assert response.status_code == 201
        assert response.json()["baseline_score"] is None

        report = self.client.get(
            f"/api/remediation/effectiveness/{self.user_id}", params={"topic_id": topic_id}
        ).json()
        assert report[0]["action_type"] == "RECOMMEND_CONTENT"

    # --- Cleanup ---

    def test_cleanup_all(self):
        response = self.client.post("/api/cleanup/all", params={"user_id": self.user_id})

        assert response.status_code == 200
        assert response.json()["time_duplicates"] == {"removed_tasks": 0, "resolved_alerts": 0}

    def test_cap_general_alerts(self):
        response = self.client.post(
            "/api/cleanup/general-alerts", params={"user_id": self.user_id, "max_alerts": 1}
        )

        assert response.json() == {"resolved_alerts": 0}
