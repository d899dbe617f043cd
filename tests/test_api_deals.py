"""
Tests for the deal data-entry routes.

Tests cover:
- Packet field resolution endpoint
- Evaluate / save fields / complete section / status endpoints end to end
  over the in-memory store
- Domain error to HTTP status mapping (404, 409, 422)
"""

from fastapi import FastAPI
from fastapi.testclient import TestClient

from deal_workflow.api.auth import verify_api_token
from deal_workflow.api.main import deal_workflow_error_handler
from deal_workflow.api.routes.deals import router
from deal_workflow.clients.memory_client import InMemoryDealSource
from deal_workflow.errors import DealWorkflowError
from deal_workflow.models.participant import DealParticipant
from deal_workflow.service import DealEvaluationService

from conftest import COMPLETE_VALUES, DEAL_ID, PACKET_ID, seed_packet

STAFF = {"role": "csr", "user_id": "user-csr"}
BORROWER = {"role": "borrower", "user_id": "user-p2"}


def _make_app(source: InMemoryDealSource | None = None) -> FastAPI:
    """Build a test app over a seeded in-memory store."""
    app = FastAPI()
    app.include_router(router)
    app.add_exception_handler(DealWorkflowError, deal_workflow_error_handler)

    # Override auth dependency so it never hits real Settings
    async def _noop_auth():
        return None

    app.dependency_overrides[verify_api_token] = _noop_auth

    source = source or seed_packet(InMemoryDealSource())
    app.state.postgres = None
    app.state.source = source
    app.state.service = DealEvaluationService(source)
    return app


def _sequential_source() -> InMemoryDealSource:
    source = seed_packet(InMemoryDealSource())
    source.add_participant(
        DealParticipant(id="p1", deal_id=DEAL_ID, role="broker", user_id="user-p1", sequence_order=1)
    )
    source.add_participant(
        DealParticipant(id="p2", deal_id=DEAL_ID, role="borrower", user_id="user-p2", sequence_order=2)
    )
    return source


class TestPacketFields:
    def test_resolved_fields(self):
        client = TestClient(_make_app())
        response = client.get(f"/packets/{PACKET_ID}/fields")
        assert response.status_code == 200
        body = response.json()
        assert "loan_terms.amount" in body["required_field_keys"]
        assert "ghost.unmapped_key" not in body["visible_field_keys"]

    def test_unknown_packet_is_empty(self):
        client = TestClient(_make_app())
        response = client.get("/packets/nope/fields")
        assert response.status_code == 200
        assert response.json()["visible_field_keys"] == []


class TestEvaluate:
    def test_evaluate(self):
        client = TestClient(_make_app())
        response = client.post(f"/deals/{DEAL_ID}/evaluate", json={"viewer": STAFF})
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "draft"
        assert body["is_complete"] is False
        assert body["values"]["loan_terms.late_charge_days"] == "10"

    def test_unknown_deal_returns_404(self):
        client = TestClient(_make_app())
        response = client.post("/deals/missing/evaluate", json={"viewer": STAFF})
        assert response.status_code == 404
        assert response.json()["error_type"] == "NotFoundError"

    def test_invalid_viewer_returns_422(self):
        client = TestClient(_make_app())
        response = client.post(f"/deals/{DEAL_ID}/evaluate", json={"viewer": {"role": "wizard"}})
        assert response.status_code == 422


class TestSaveFields:
    def test_save_and_recalculate(self):
        source = seed_packet(InMemoryDealSource())
        source.set_values(DEAL_ID, COMPLETE_VALUES)
        client = TestClient(_make_app(source))

        response = client.post(
            f"/deals/{DEAL_ID}/fields",
            json={"viewer": STAFF, "values": {"loan_terms.term_months": "12"}},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["saved_field_keys"] == ["loan_terms.term_months"]
        assert body["calculated_field_keys"] == ["loan_terms.maturity_date"]
        assert body["reverted"] is False

    def test_waiting_participant_gets_409(self):
        client = TestClient(_make_app(_sequential_source()))

        response = client.post(
            f"/deals/{DEAL_ID}/fields",
            json={"viewer": BORROWER, "values": {"borrower.first_name": "Ann"}},
        )

        assert response.status_code == 409
        assert response.json()["context"]["blocking_participant_id"] == "p1"

    def test_field_outside_packet_gets_422(self):
        client = TestClient(_make_app())

        response = client.post(
            f"/deals/{DEAL_ID}/fields",
            json={"viewer": STAFF, "values": {"ghost.unmapped_key": "x"}},
        )

        assert response.status_code == 422
        assert response.json()["error_type"] == "ValidationError"


class TestParticipants:
    def test_start_then_complete_hands_over(self):
        client = TestClient(_make_app(_sequential_source()))

        started = client.post(f"/deals/{DEAL_ID}/participants/p1/start")
        assert started.status_code == 200
        assert started.json()["status"] == "in_progress"

        completed = client.post(
            f"/deals/{DEAL_ID}/participants/p1/complete", json={"viewer": STAFF}
        )
        assert completed.status_code == 200
        assert completed.json()["next_participant"]["id"] == "p2"

    def test_second_completion_gets_409(self):
        client = TestClient(_make_app(_sequential_source()))
        client.post(f"/deals/{DEAL_ID}/participants/p1/complete", json={"viewer": STAFF})

        response = client.post(f"/deals/{DEAL_ID}/participants/p1/complete", json={"viewer": STAFF})

        assert response.status_code == 409
        assert response.json()["error_type"] == "AlreadyCompletedError"

    def test_unknown_participant_gets_404(self):
        client = TestClient(_make_app())
        response = client.post(f"/deals/{DEAL_ID}/participants/ghost/start")
        assert response.status_code == 404


class TestStatus:
    def test_incomplete_deal_cannot_be_marked_ready(self):
        client = TestClient(_make_app())

        response = client.post(f"/deals/{DEAL_ID}/status/ready", json={"viewer": STAFF})

        assert response.status_code == 409
        assert len(response.json()["context"]["missing_fields"]) == 6

    def test_ready_then_generated(self):
        source = seed_packet(InMemoryDealSource())
        source.set_values(DEAL_ID, COMPLETE_VALUES)
        client = TestClient(_make_app(source))

        ready = client.post(f"/deals/{DEAL_ID}/status/ready", json={"viewer": STAFF})
        assert ready.status_code == 200
        assert ready.json()["new_status"] == "ready"

        generated = client.post(f"/deals/{DEAL_ID}/status/generated", json={"viewer": STAFF})
        assert generated.status_code == 200
        assert generated.json()["new_status"] == "generated"

    def test_generated_requires_ready(self):
        client = TestClient(_make_app())
        response = client.post(f"/deals/{DEAL_ID}/status/generated", json={"viewer": STAFF})
        assert response.status_code == 409
