"""
HTTP surface tests against the in-memory store.
Testing: health, record lifecycle, audit view/submit, withdrawal, error payloads
"""

import pytest
from fastapi.testclient import TestClient

from auth import create_access_token
from funding_engine import InMemoryDocumentStore
from server import create_app

YEAR, MONTH = 2024, 6


def headers(user_id, role):
    token = create_access_token({"user_id": user_id, "role": role})
    return {"Authorization": f"Bearer {token}"}


ADMIN = headers("admin-1", "ADMIN")
REPORTER = headers("reporter-1", "REPORTER")
FINANCE = headers("finance-1", "FINANCE")
AUDITOR = headers("auditor-1", "AUDITOR")
OTHER_REPORTER = headers("reporter-2", "REPORTER")


@pytest.fixture
def client():
    with TestClient(create_app(store=InMemoryDocumentStore())) as c:
        yield c


def submit_record(client, kind, key, amount, auth):
    response = client.post(f"/api/funding/{kind}", json={
        "fund_need_key": key, "year": YEAR, "month": MONTH, "amount": amount
    }, headers=auth)
    assert response.status_code == 201, response.text
    record_id = response.json()["_id"]
    response = client.post(f"/api/funding/{kind}/{record_id}/submit", headers=auth)
    assert response.status_code == 200, response.text
    return response.json()


class TestHealthAndAuth:

    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_lifecycle_graph(self, client):
        graph = client.get("/api/lifecycle").json()["graph"]
        assert sorted(graph["PENDING_WITHDRAWAL"]) == ["SUBMITTED", "WITHDRAWN"]

    def test_token_required(self, client):
        response = client.get("/api/funding/predict")
        assert response.status_code in (401, 403)

    def test_invalid_token(self, client):
        response = client.get("/api/funding/predict", headers={"Authorization": "Bearer not-a-token"})
        assert response.status_code == 401

    def test_unknown_kind(self, client):
        response = client.get("/api/funding/payroll", headers=ADMIN)
        assert response.status_code == 422


class TestFundingRecords:

    def test_save_and_submit(self, client):
        record = submit_record(client, "predict", "K1", "1200.50", REPORTER)
        assert record["status"] == "SUBMITTED"
        assert record["amount"] == 1200.5

        stats = client.get("/api/funding/predict/stats", headers=REPORTER).json()
        assert stats["by_status"]["SUBMITTED"] == 1

        history = client.get(f"/api/funding/predict/{record['_id']}/history", headers=REPORTER).json()
        assert len(history["history"]) == 3

    @pytest.mark.parametrize("amount", ["12abc", "1e30", "100000000000000000000000000", "12.345"])
    def test_bad_amount_is_a_validation_error(self, client, amount):
        response = client.post("/api/funding/predict", json={
            "fund_need_key": "K1", "year": YEAR, "month": MONTH, "amount": amount
        }, headers=REPORTER)
        assert response.status_code == 400
        assert response.json()["detail"]["type"] == "validation_error"

    def test_illegal_transition_reports_current_status(self, client):
        record = submit_record(client, "predict", "K1", "10", REPORTER)
        response = client.put(f"/api/funding/predict/{record['_id']}", json={"amount": "20"}, headers=REPORTER)
        assert response.status_code == 409
        assert response.json()["detail"]["current_status"] == "SUBMITTED"

    def test_permission_denied(self, client):
        response = client.post("/api/funding/actual_fin", json={
            "fund_need_key": "K1", "year": YEAR, "month": MONTH
        }, headers=REPORTER)
        assert response.status_code == 403
        assert response.json()["detail"]["type"] == "permission_denied"

    def test_batch_submit_rolls_back(self, client):
        ok = client.post("/api/funding/predict", json={
            "fund_need_key": "K1", "year": YEAR, "month": MONTH, "amount": "5"
        }, headers=REPORTER).json()
        empty = client.post("/api/funding/predict", json={
            "fund_need_key": "K2", "year": YEAR, "month": MONTH
        }, headers=REPORTER).json()

        response = client.post("/api/funding/predict/batch-submit", json={
            "record_ids": [ok["_id"], empty["_id"]]
        }, headers=REPORTER)
        assert response.status_code == 409

        assert client.get(f"/api/funding/predict/{ok['_id']}", headers=REPORTER).json()["status"] == "DRAFT"


class TestAudit:

    def test_view_and_submit(self, client):
        submit_record(client, "actual_user", "K1", "1000.00", REPORTER)
        submit_record(client, "actual_fin", "K1", "950.00", FINANCE)

        view = client.get("/api/audit/view", params={"year": YEAR, "month": MONTH}, headers=AUDITOR).json()
        row = view["rows"][0]
        assert row["has_difference"] is True
        assert row["audit_amount"] is None
        assert view["summary"]["requires_attention"] == 1

        response = client.post("/api/audit/submit", json={
            "year": YEAR, "month": MONTH, "row_ids": ["K1"]
        }, headers=AUDITOR)
        assert response.status_code == 400
        assert response.json()["detail"]["type"] == "incomplete_decision"
        assert response.json()["detail"]["record_ids"] == ["K1"]

        response = client.post("/api/audit/submit", json={
            "year": YEAR, "month": MONTH, "row_ids": ["K1"],
            "decisions": [{"row_id": "K1", "amount": "975"}]
        }, headers=AUDITOR)
        assert response.status_code == 200, response.text
        committed = response.json()
        assert committed["committed"] == 1
        assert committed["rows"][0]["audit_status"] == "APPROVED"
        assert committed["rows"][0]["audit_amount"] == 975.0

    def test_propose_rejects_text(self, client):
        response = client.post("/api/audit/propose", json={"row_id": "K1", "raw_value": "abc"}, headers=AUDITOR)
        assert response.status_code == 400
        cleared = client.post("/api/audit/propose", json={"row_id": "K1", "raw_value": ""}, headers=AUDITOR)
        assert cleared.json()["is_cleared"] is True

    def test_save_draft(self, client):
        submit_record(client, "actual_user", "K1", "1000.00", REPORTER)
        submit_record(client, "actual_fin", "K1", "950.00", FINANCE)

        response = client.post("/api/audit/draft", json={
            "year": YEAR, "month": MONTH, "decisions": [{"row_id": "K1", "amount": 990, "remark": "draft"}]
        }, headers=AUDITOR)
        assert response.status_code == 200, response.text

        view = client.get("/api/audit/view", params={"year": YEAR, "month": MONTH}, headers=AUDITOR).json()
        assert view["rows"][0]["audit_amount"] == 990.0
        assert view["rows"][0]["audit_status"] == "DRAFT"


class TestWithdrawal:

    def test_request_cancel_round_trip(self, client):
        response = client.put("/api/withdrawal-config/actual_user", json={
            "allowed_statuses": ["submitted"], "time_limit": 24, "max_attempts": 3
        }, headers=ADMIN)
        assert response.status_code == 200, response.text

        record = submit_record(client, "actual_user", "K1", "100", REPORTER)

        response = client.post("/api/withdrawal-requests", json={
            "record_id": record["_id"], "module_type": "actual_user", "reason": "Wrong fund type"
        }, headers=REPORTER)
        assert response.status_code == 201, response.text
        assert response.json()["record"]["status"] == "PENDING_WITHDRAWAL"

        response = client.post("/api/withdrawal-requests/cancel", json={"record_id": record["_id"]}, headers=REPORTER)
        assert response.status_code == 200
        assert response.json()["record"]["status"] == "SUBMITTED"

        response = client.post("/api/withdrawal-requests/cancel", json={"record_id": record["_id"]}, headers=REPORTER)
        assert response.status_code == 404

    def test_ineligible_status(self, client):
        client.put("/api/withdrawal-config/actual_user", json={"allowed_statuses": ["SUBMITTED"]}, headers=ADMIN)
        draft = client.post("/api/funding/actual_user", json={
            "fund_need_key": "K1", "year": YEAR, "month": MONTH, "amount": "1"
        }, headers=REPORTER).json()

        response = client.post("/api/withdrawal-requests", json={
            "record_id": draft["_id"], "module_type": "actual_user", "reason": "Wrong fund type"
        }, headers=REPORTER)
        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["type"] == "invalid_status"
        assert detail["current_status"] == "DRAFT"

    def test_policy_writes_are_admin_only(self, client):
        response = client.put("/api/withdrawal-config/predict", json={"allowed_statuses": ["SUBMITTED"]},
                              headers=REPORTER)
        assert response.status_code == 403

        policies = client.get("/api/withdrawal-config", headers=REPORTER).json()["policies"]
        assert policies == []

    def test_requests_are_listed_to_their_requester_and_admins(self, client):
        client.put("/api/withdrawal-config/actual_user", json={"allowed_statuses": ["SUBMITTED"]}, headers=ADMIN)
        record = submit_record(client, "actual_user", "K1", "100", REPORTER)
        request = client.post("/api/withdrawal-requests", json={
            "record_id": record["_id"], "module_type": "actual_user", "reason": "Wrong fund type"
        }, headers=REPORTER).json()["request"]

        own = client.get("/api/withdrawal-requests", headers=REPORTER).json()
        assert [r["_id"] for r in own["items"]] == [request["_id"]]
        assert own["total"] == 1

        others = client.get("/api/withdrawal-requests", params={"requested_by": "reporter-1"},
                            headers=OTHER_REPORTER).json()
        assert others["items"] == []
        assert others["total"] == 0

        response = client.get(f"/api/withdrawal-requests/{request['_id']}", headers=OTHER_REPORTER)
        assert response.status_code == 403

        listed = client.get("/api/withdrawal-requests", params={"page_size": 1}, headers=ADMIN).json()
        assert listed["total"] == 1
        assert listed["total_pages"] == 1

    def test_policy_of_unknown_module_is_rejected(self, client):
        response = client.get("/api/withdrawal-config/payroll", headers=ADMIN)
        assert response.status_code == 400
        assert response.json()["detail"]["type"] == "validation_error"

        response = client.get("/api/withdrawal-config/actual_user", headers=ADMIN)
        assert response.status_code == 200
        assert response.json()["allowed_statuses"] == []
