"""
API tests.

Refusals come back with a machine code and the data needed to correct the request.
"""
from conftest import ACTOR, authority_metadata


def _create_report(client, **overrides):
    body = {"title": "Fake DOP seal", "description": "Seal number not in the registry"}
    body.update(overrides)
    resp = client.post("/api/reports", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


def _transition(client, report_id, target, motive="Checked by the desk", **extra):
    return client.post(
        f"/api/reports/{report_id}/transition",
        json={"target_status": target, "motive": motive, **extra},
    )


class TestReports:

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"

    def test_create_and_get(self, client):
        report = _create_report(client)

        assert report["status"] == "IN_PROGRESS"
        assert report["created_by_id"] == ACTOR
        assert report["awaiting_authority_feedback"] is False
        assert client.get(f"/api/reports/{report['id']}").json()["title"] == "Fake DOP seal"

    def test_actor_header_is_required(self, client):
        resp = client.post(
            "/api/reports", json={"title": "Anonymous"}, headers={"X-Actor-Id": ""}
        )
        assert resp.status_code == 422

    def test_create_in_closed_is_refused(self, client):
        resp = client.post("/api/reports", json={"title": "Skip", "status": "CLOSED"})

        assert resp.status_code == 422
        assert resp.json()["detail"]["code"] == "validation_error"

    def test_list_filters_by_status(self, client):
        draft = _create_report(client, status="DRAFT")
        _create_report(client)

        resp = client.get("/api/reports", params={"status": "DRAFT"})

        assert [r["id"] for r in resp.json()] == [draft["id"]]

    def test_unknown_report(self, client):
        resp = client.get("/api/reports/999")
        assert resp.status_code == 404


class TestTransitions:

    def test_transition_with_inspection_metadata(self, client):
        report = _create_report(client)

        resp = _transition(
            client, report["id"], "UNDER_VERIFICATION",
            metadata={"type": "inspection", "date": "2025-01-10", "location": "Roma"},
        )

        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["report"]["status"] == "UNDER_VERIFICATION"
        assert body["state_change"]["from_status"] == "IN_PROGRESS"
        assert body["created_entity"]["kind"] == "inspection"
        assert body["created_entity"]["location"] == "Roma"
        assert body["created_entity"]["state"] == "PLANNED"

    def test_illegal_transition_returns_legal_set(self, client):
        report = _create_report(client)

        resp = _transition(client, report["id"], "CLOSED")

        assert resp.status_code == 409
        detail = resp.json()["detail"]
        assert detail["code"] == "invalid_transition"
        assert detail["available_transitions"] == ["UNDER_VERIFICATION", "CLARIFICATION_REQUESTED", "ARCHIVED"]

    def test_invalid_metadata_is_422(self, client):
        report = _create_report(client)

        resp = _transition(client, report["id"], "UNDER_VERIFICATION", metadata={"type": "inspection"})

        assert resp.status_code == 422
        assert resp.json()["detail"]["metadata_type"] == "inspection"

    def test_missing_authority_name_is_422(self, client):
        report = _create_report(client)
        _transition(client, report["id"], "UNDER_VERIFICATION")

        resp = _transition(
            client, report["id"], "REPORTED_TO_AUTHORITY",
            metadata=authority_metadata(authority_name=None),
        )

        assert resp.status_code == 422
        assert resp.json()["detail"] == {
            "code": "missing_field",
            "message": "authority_name is required to notify an authority",
            "field": "authority_name",
        }

    def test_stale_expected_status_is_409(self, client):
        report = _create_report(client)

        resp = _transition(client, report["id"], "UNDER_VERIFICATION", expected_status="DRAFT")

        assert resp.status_code == 409
        assert resp.json()["detail"]["code"] == "concurrent_modification"

    def test_overview(self, client):
        report = _create_report(client)
        _transition(client, report["id"], "CLARIFICATION_REQUESTED")

        body = client.get(f"/api/reports/{report['id']}/transition").json()

        assert body["current_status"] == "CLARIFICATION_REQUESTED"
        assert [t["status"] for t in body["available_transitions"]] == [
            "IN_PROGRESS", "UNDER_VERIFICATION", "REPORTED_TO_AUTHORITY", "CLOSED"
        ]
        assert len(body["state_changes"]) == 1

    def test_actions_timeline(self, client):
        report = _create_report(client)
        _transition(client, report["id"], "ARCHIVED", motive="Duplicate")

        types = [a["type"] for a in client.get(f"/api/reports/{report['id']}/actions").json()]

        assert types == ["REPORT_CREATED", "ARCHIVED"]


class TestInspectionFlow:

    def test_plan_record_and_close(self, client):
        report = _create_report(client)
        created = client.post(
            f"/api/reports/{report['id']}/inspections",
            json={"date": "2025-01-20T09:00:00", "location": "Frantoio Rossi"},
        )
        assert created.status_code == 201, created.text
        inspection_id = created.json()["created_entity"]["id"]

        early = client.post(f"/api/reports/{report['id']}/close-from-inspection", json={"note": "Fine"})
        assert early.status_code == 409
        assert early.json()["detail"]["code"] == "invalid_state"

        minutes = client.post(
            f"/api/inspections/{inspection_id}/minutes",
            json={"minutes_text": "Labels and invoices match", "outcome": "Compliant"},
        )
        assert minutes.json()["state"] == "COMPLETED"

        closed = client.post(f"/api/reports/{report['id']}/close-from-inspection", json={"note": "Fine"})
        assert closed.status_code == 200, closed.text
        assert closed.json()["report"]["status"] == "CLOSED"

        inspections = client.get(f"/api/reports/{report['id']}/inspections").json()
        assert inspections[0]["minutes_text"] == "Labels and invoices match"

    def test_inspection_to_authority(self, client):
        report = _create_report(client)
        client.post(
            f"/api/reports/{report['id']}/inspections",
            json={"date": "2025-01-20T09:00:00", "minutes_text": "Seed oil found"},
        )

        resp = client.post(
            f"/api/reports/{report['id']}/inspection-to-authority",
            json={"authority_name": "NAS Bari", "authority_type": "CARABINIERI_NAS", "severity": "CRITICAL"},
        )

        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["report"]["status"] == "REPORTED_TO_AUTHORITY"
        assert body["report"]["awaiting_authority_feedback"] is True
        assert body["created_entity"]["severity"] == "CRITICAL"


class TestClarificationAndAuthority:

    def test_clarification_feedback_escalates(self, client):
        report = _create_report(client)
        created = client.post(
            f"/api/reports/{report['id']}/clarifications",
            json={"subject": "Origin", "questions": ["Where were the olives milled?"], "recipient_category": "PRODUCER"},
        )
        assert created.status_code == 201, created.text
        clarification_id = created.json()["created_entity"]["id"]

        missing = client.post(
            f"/api/clarifications/{clarification_id}/feedback",
            json={"feedback_text": "No answer", "outcome": "ESCALATED_TO_AUTHORITY"},
        )
        assert missing.status_code == 422
        assert missing.json()["detail"]["code"] == "missing_field"

        resp = client.post(
            f"/api/clarifications/{clarification_id}/feedback",
            json={"feedback_text": "No answer", "outcome": "ESCALATED_TO_AUTHORITY", "authority_name": "ICQRF"},
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["report"]["status"] == "REPORTED_TO_AUTHORITY"
        assert resp.json()["authority_notice"]["authority"] == "ICQRF"

        again = client.post(
            f"/api/clarifications/{clarification_id}/feedback",
            json={"feedback_text": "Late", "outcome": "CLOSED"},
        )
        assert again.status_code == 409
        assert again.json()["detail"]["code"] == "already_answered"

        assert client.get(f"/api/clarifications/{clarification_id}").json()["state"] == "ANSWERED"

    def test_free_text_clarification(self, client):
        report = _create_report(client)

        resp = client.post(
            f"/api/reports/{report['id']}/clarifications",
            json={"question": "Please send the harvest register"},
        )

        assert resp.status_code == 201, resp.text
        assert resp.json()["created_entity"]["questions"] == ["Please send the harvest register"]

    def test_notice_needs_a_legal_edge(self, client):
        report = _create_report(client)
        body = {k: v for k, v in authority_metadata().items() if k != "type"}

        resp = client.post(f"/api/reports/{report['id']}/authority-notices", json=body)

        assert resp.status_code == 409
        assert resp.json()["detail"]["code"] == "invalid_transition"
        assert client.get(f"/api/reports/{report['id']}").json()["status"] == "IN_PROGRESS"
        assert client.get(f"/api/reports/{report['id']}/authority-notices").json() == []

    def test_notice_feedback_closes(self, client):
        report = _create_report(client)
        body = {k: v for k, v in authority_metadata().items() if k != "type"}
        _transition(client, report["id"], "UNDER_VERIFICATION")
        created = client.post(f"/api/reports/{report['id']}/authority-notices", json=body)
        assert created.status_code == 201, created.text
        notice_id = created.json()["created_entity"]["id"]

        second = client.post(f"/api/reports/{report['id']}/authority-notices", json=body)
        assert second.status_code == 409
        assert second.json()["detail"]["code"] == "conflicting_pending_notice"

        resp = client.post(f"/api/authority-notices/{notice_id}/feedback", json={"feedback_text": "Fine issued"})

        assert resp.status_code == 200, resp.text
        assert resp.json()["report"]["status"] == "CLOSED"
        assert client.get(f"/api/authority-notices/{notice_id}").json()["state"] == "ANSWERED"
        assert len(client.get(f"/api/reports/{report['id']}/authority-notices").json()) == 1


class TestAttachments:

    def test_register_and_link(self, client):
        report = _create_report(client)
        attachment = client.post(
            "/api/attachments",
            json={"report_id": report["id"], "filename": "label.jpg", "url": "https://files.example/label.jpg"},
        )
        assert attachment.status_code == 201, attachment.text
        attachment_id = attachment.json()["id"]

        resp = _transition(client, report["id"], "UNDER_VERIFICATION", attachment_ids=[attachment_id])
        assert resp.status_code == 200, resp.text

        listed = client.get(f"/api/reports/{report['id']}/attachments").json()
        assert listed[0]["state_change_id"] == resp.json()["state_change"]["id"]

    def test_unknown_attachment_is_404(self, client):
        report = _create_report(client)

        resp = _transition(client, report["id"], "UNDER_VERIFICATION", attachment_ids=[77])

        assert resp.status_code == 404
        assert resp.json()["detail"]["ids"] == [77]
