"""Tests for the FastAPI API endpoints."""

import pytest
from fastapi.testclient import TestClient

from pcal.api.app import create_app
from pcal.config import PCALSettings
from pcal.runtime.context import PCALContext


@pytest.fixture
def client():
    """Create a test client over a fresh PCAL context."""
    app = create_app(context=PCALContext(PCALSettings()))
    return TestClient(app)


def _post_decision(client, **overrides):
    body = {
        "source": "cutover",
        "domain": "platform",
        "outcome": "blocked",
        "reason": "Readiness score 62 below threshold 80",
        "confidence": 70,
        "scope_id": "rollout_42",
    }
    body.update(overrides)
    return client.post("/decisions", json=body)


class TestDecisionEndpoints:
    def test_ingest_decision(self, client):
        response = _post_decision(client, signals=[
            {"name": "readiness_score", "value": 62, "weight": 2.0, "source": "cutover"},
        ])
        assert response.status_code == 200
        data = response.json()
        assert data["id"].startswith("dec_")
        assert data["signature"]
        assert data["signals"][0]["name"] == "readiness_score"

    def test_invalid_enum_is_rejected(self, client):
        response = _post_decision(client, outcome="maybe")
        assert response.status_code == 422

    def test_human_decision_without_actor_is_rejected(self, client):
        response = _post_decision(client, authority="human")
        assert response.status_code == 422

    def test_manual_decision(self, client):
        response = client.post("/decisions/manual", json={
            "domain": "deployment",
            "outcome": "approved",
            "reason": "Change window confirmed",
            "actor": "alice",
        })
        assert response.status_code == 200
        assert response.json()["authority"] == "human"
        assert response.json()["source"] == "manual"

    def test_manual_decision_with_empty_actor_is_rejected(self, client):
        response = client.post("/decisions/manual", json={
            "domain": "deployment",
            "outcome": "approved",
            "reason": "Change window confirmed",
            "actor": "",
        })
        assert response.status_code == 422
        assert client.get("/decisions/recent").json() == []

    def test_get_decision(self, client):
        decision_id = _post_decision(client).json()["id"]
        response = client.get(f"/decisions/{decision_id}")
        assert response.status_code == 200
        assert response.json()["id"] == decision_id

    def test_get_missing_decision(self, client):
        assert client.get("/decisions/dec_missing").status_code == 404

    def test_recent_and_filters(self, client):
        _post_decision(client)
        _post_decision(client, source="governor", outcome="approved")

        recent = client.get("/decisions/recent").json()
        assert [d["source"] for d in recent] == ["governor", "cutover"]
        assert len(client.get("/decisions/by-source/cutover").json()) == 1
        assert len(client.get("/decisions/by-outcome/approved").json()) == 1
        assert client.get("/decisions/by-outcome/perhaps").status_code == 422

    def test_stats_and_verify(self, client):
        _post_decision(client)
        stats = client.get("/decisions/stats").json()
        assert stats["total"] == 1
        assert stats["avg_confidence"] == 70

        verify = client.get("/decisions/verify").json()
        assert verify == {"integrity_valid": True, "total_decisions": 1}


class TestAuthorityEndpoints:
    def test_chain_and_accountability(self, client):
        decision_id = _post_decision(client).json()["id"]
        client.post("/authority/approvals", json={
            "approved_by": "release-policy",
            "authority_type": "policy",
            "target": "rollout_42",
            "justification": "Inside release window",
        })
        override = client.post("/authority/overrides", json={
            "decision_id": decision_id,
            "overridden_by": "alice",
            "justification": "Hotfix",
            "reason": "incident mitigation",
            "duration_ms": 3_600_000,
        })
        assert override.status_code == 200
        assert override.json()["still_active"] is True

        chain = client.get(f"/authority/chain/{decision_id}").json()
        assert [n["kind"] for n in chain["nodes"]] == ["decision", "approval", "override"]
        assert chain["effective_outcome"] == "approved"

        answers = client.get(f"/authority/accountability/{decision_id}").json()
        assert "alice" in answers[0]["answer"]

        active = client.get("/authority/overrides/active").json()
        assert len(active) == 1
        assert client.get("/authority/stats").json()["total_overrides"] == 1

    def test_chain_for_missing_decision(self, client):
        assert client.get("/authority/chain/dec_missing").status_code == 404

    def test_override_duration_must_be_positive(self, client):
        response = client.post("/authority/overrides", json={
            "decision_id": "dec_1",
            "overridden_by": "alice",
            "justification": "x",
            "reason": "y",
            "duration_ms": 0,
        })
        assert response.status_code == 422


class TestMemoryAndFeedbackEndpoints:
    def _seed_pattern(self, client):
        return [_post_decision(client).json()["id"] for _ in range(4)]

    def test_scan_and_patterns(self, client):
        self._seed_pattern(client)
        scan = client.post("/memory/scan").json()
        assert len(scan["changed_patterns"]) == 1

        patterns = client.get("/memory/patterns").json()
        assert patterns[0]["signature"] == "cutover|platform|blocked"
        assert client.get("/memory/repeated-mistakes").json() == []

    def test_incident_links(self, client):
        decision_id = _post_decision(client).json()["id"]
        response = client.post("/memory/incident-links", json={
            "incident_id": "inc_1",
            "decision_id": decision_id,
            "link_type": "caused_by",
            "confidence": 85,
        })
        assert response.status_code == 200

        links = client.get("/memory/incident-links", params={"incident_id": "inc_1"}).json()
        assert [link["decision_id"] for link in links] == [decision_id]

    def test_snapshot(self, client):
        self._seed_pattern(client)
        snapshot = client.post("/memory/snapshots").json()
        assert snapshot["total_decisions"] == 4

    def test_feedback_cycle_and_acknowledge(self, client):
        self._seed_pattern(client)
        client.post("/memory/scan")
        cycle = client.post("/feedback/cycle").json()
        assert cycle["recommendations_generated"] == 1

        pending = client.get("/feedback/recommendations/pending").json()
        rec_id = pending[0]["id"]
        assert pending[0]["action"] == "lower_automation_confidence"

        anonymous = client.post(
            f"/feedback/recommendations/{rec_id}/acknowledge", json={"actor": ""}
        )
        assert anonymous.status_code == 422

        ack = client.post(
            f"/feedback/recommendations/{rec_id}/acknowledge", json={"actor": "ops-lead"}
        )
        assert ack.status_code == 200
        assert ack.json()["status"] == "acknowledged"

        again = client.post(
            f"/feedback/recommendations/{rec_id}/acknowledge", json={"actor": "ops-lead"}
        )
        assert again.status_code == 404
        assert client.get("/feedback/state").json()["acknowledged_recommendations"] == 1

    def test_confidence_adjustment(self, client):
        assert client.get("/feedback/confidence/cutover").json()["multiplier"] == 1.0
        response = client.post("/feedback/confidence/cutover", json={"delta": 0.2})
        assert response.json()["multiplier"] == pytest.approx(0.8)
        assert client.post("/feedback/confidence/cutover", json={"delta": 2}).status_code == 422


class TestNarrativeEndpoints:
    def test_narrative(self, client):
        _post_decision(client)
        response = client.post("/narratives", json={
            "query": "why_rollout_failed",
            "context": {"rollout_id": "rollout_42"},
        })
        assert response.status_code == 200
        assert response.json()["headline"].startswith("Rollout rollout_42 was blocked")

    def test_unknown_query(self, client):
        response = client.post("/narratives", json={"query": "why_is_it_friday"})
        assert response.status_code == 422

    def test_risk_report(self, client):
        report = client.get("/risk-report").json()
        assert report["safety_score"] == 100
        assert report["safety_trend"] == "same"


class TestStatusEndpoint:
    def test_status(self, client):
        _post_decision(client)
        status = client.get("/status").json()
        assert status["enabled"] is True
        assert status["decisions"] == 1

    def test_disabled_ingestion(self):
        client = TestClient(create_app(context=PCALContext(PCALSettings(enabled=False))))
        assert _post_decision(client).json() == {"status": "disabled"}
        assert client.get("/status").json()["enabled"] is False
