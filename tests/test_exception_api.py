"""
Tests: Exception API — envelope, principal headers, status codes per error kind.

Drives the blueprint end to end through the Flask test client.
"""

import pytest

BASE = "/api/v1/exceptions"


def _headers(user_id=10, role="vertical_lead", vertical_id=5):
    headers = {"X-User-Id": str(user_id), "X-User-Role": role}
    if vertical_id is not None:
        headers["X-Vertical-Id"] = str(vertical_id)
    return headers


ADMIN = _headers(1, "global_admin", None)
LEAD = _headers(10, "vertical_lead", 5)
STAFF = _headers(20, "staff", 5)
OTHER_STAFF = _headers(21, "staff", 7)


def _create(client, headers=LEAD, **overrides):
    payload = {
        "title": "Card settlement mismatch",
        "description": "Totals differ from the acquirer report",
        "severity": "critical",
        "vertical_id": 5,
    }
    payload.update(overrides)
    res = client.post(BASE, json=payload, headers=headers)
    assert res.status_code == 201, res.get_json()
    return res.get_json()["data"]


# ── Envelope & principal ──────────────────────────────────────────────────────


def test_create_returns_201_envelope(client, sla_rules):
    res = client.post(BASE, json={
        "title": "Card settlement mismatch",
        "description": "Totals differ",
        "severity": "critical",
    }, headers=LEAD)

    body = res.get_json()
    assert res.status_code == 201
    assert body["success"] is True
    assert body["message"] == "Exception created"
    assert body["data"]["vertical_id"] == 5
    assert body["data"]["due_date"] is not None


def test_missing_principal_headers_is_401(client):
    res = client.get(BASE)
    body = res.get_json()
    assert res.status_code == 401
    assert body == {
        "success": False,
        "error": "Missing or invalid principal headers",
        "code": "ERR_UNAUTHORIZED",
    }


def test_unknown_role_header_is_401(client):
    res = client.get(BASE, headers=_headers(role="root"))
    assert res.status_code == 401


def test_health_needs_no_principal(client):
    res = client.get("/api/v1/health")
    assert res.status_code == 200
    assert res.get_json()["status"] == "ok"


def test_liveness_reports_database_and_scheduler(client):
    res = client.get("/api/v1/health/live")
    body = res.get_json()
    assert res.status_code == 200
    assert body["checks"]["database"]["status"] == "ok"
    assert "sla_breach_sweep" in [j["job_name"] for j in body["checks"]["scheduler"]["jobs"]]


# ── Error mapping ─────────────────────────────────────────────────────────────


def test_validation_error_is_422_with_details(client):
    res = client.post(BASE, json={"description": "no title", "vertical_id": 5}, headers=LEAD)
    body = res.get_json()
    assert res.status_code == 422
    assert body["code"] == "ERR_VALIDATION"
    assert body["details"] == {"title": "required"}


@pytest.mark.parametrize("payload", [[1, 2], "title", 42])
def test_non_object_body_is_422(client, payload):
    res = client.post(BASE, json=payload, headers=LEAD)
    body = res.get_json()
    assert res.status_code == 422
    assert body["code"] == "ERR_VALIDATION"
    assert body["error"] == "Request body must be a JSON object"


def test_unrecognized_flag_in_body_is_422(client):
    exc = _create(client)
    res = client.post(f"{BASE}/{exc['id']}/comments", json={"comment": "hi", "is_internal": "sometimes"}, headers=LEAD)
    assert res.status_code == 422
    assert res.get_json()["details"] == {"is_internal": "invalid"}

    res = client.put(f"{BASE}/sla-rules/high", json={"resolution_time_hours": 36, "active": "maybe"}, headers=ADMIN)
    assert res.status_code == 422


def test_non_object_body_on_update_is_422(client):
    exc = _create(client)
    res = client.put(f"{BASE}/{exc['id']}", json=["title"], headers=LEAD)
    assert res.status_code == 422


def test_not_found_is_404(client):
    res = client.get(f"{BASE}/9999", headers=STAFF)
    assert res.status_code == 404
    assert res.get_json()["code"] == "ERR_NOT_FOUND"


def test_cross_vertical_read_is_403(client):
    exc = _create(client)
    res = client.get(f"{BASE}/{exc['id']}", headers=OTHER_STAFF)
    assert res.status_code == 403
    assert res.get_json()["details"] == {"action": "view"}


def test_invalid_transition_reports_current_and_requested(client):
    exc = _create(client)
    res = client.put(f"{BASE}/{exc['id']}/close", headers=LEAD)
    body = res.get_json()
    assert res.status_code == 422
    assert body["details"]["current_status"] == "open"
    assert body["details"]["requested_status"] == "closed"


def test_unknown_route_uses_envelope(client):
    res = client.get("/api/v1/nothing-here", headers=LEAD)
    assert res.status_code == 404
    assert res.get_json()["success"] is False


# ── Workflow over HTTP ────────────────────────────────────────────────────────


def test_lifecycle_over_http(client):
    exc = _create(client)
    eid = exc["id"]

    res = client.put(f"{BASE}/{eid}/assign", json={"assigned_to": 20}, headers=LEAD)
    assert res.get_json()["data"]["status"] == "in_progress"

    res = client.post(f"{BASE}/{eid}/comments", json={"comment": "on it", "is_internal": True}, headers=STAFF)
    assert res.status_code == 201

    res = client.put(f"{BASE}/{eid}/resolve", json={"resolution_notes": "re-ran settlement"}, headers=STAFF)
    assert res.get_json()["data"]["status"] == "resolved"

    res = client.put(f"{BASE}/{eid}/close", headers=STAFF)
    assert res.status_code == 403

    res = client.put(f"{BASE}/{eid}/close", headers=LEAD)
    assert res.get_json()["data"]["status"] == "closed"

    history = client.get(f"{BASE}/{eid}/history", headers=LEAD).get_json()["data"]
    assert [h["action"] for h in history] == ["create", "assign", "comment", "resolve", "close"]

    comments = client.get(f"{BASE}/{eid}/comments?internal_only=true", headers=LEAD).get_json()["data"]
    assert [c["comment"] for c in comments] == ["on it"]


def test_status_endpoint(client):
    exc = _create(client)
    res = client.put(f"{BASE}/{exc['id']}/status", json={"status": "in_progress"}, headers=LEAD)
    assert res.status_code == 200
    assert res.get_json()["data"]["status"] == "in_progress"


def test_escalate_endpoint_and_cap(client):
    exc = _create(client)
    eid = exc["id"]

    res = client.put(f"{BASE}/{eid}/escalate", json={"reason": "board visibility", "escalation_level": 3,
                                                     "escalated_to": 30}, headers=LEAD)
    data = res.get_json()["data"]
    assert data["escalation_level"] == 3
    assert data["assigned_to"] == 30

    res = client.put(f"{BASE}/{eid}/escalate", json={"reason": "again"}, headers=LEAD)
    assert res.status_code == 422
    assert "Maximum escalation level" in res.get_json()["error"]

    escalations = client.get(f"{BASE}/{eid}/escalations", headers=LEAD).get_json()["data"]
    assert len(escalations) == 1


def test_update_endpoint_ignores_status(client):
    exc = _create(client)
    res = client.put(f"{BASE}/{exc['id']}", json={"notes": "vendor ticket 123", "status": "closed"}, headers=LEAD)
    data = res.get_json()["data"]
    assert data["notes"] == "vendor ticket 123"
    assert data["status"] == "open"


def test_delete_only_for_global_admin(client):
    exc = _create(client)
    assert client.delete(f"{BASE}/{exc['id']}", headers=LEAD).status_code == 403

    res = client.delete(f"{BASE}/{exc['id']}", headers=ADMIN)
    assert res.status_code == 200
    assert res.get_json()["data"]["id"] == exc["id"]
    assert client.get(f"{BASE}/{exc['id']}", headers=ADMIN).status_code == 404


# ── Listings & reports ────────────────────────────────────────────────────────


def test_list_returns_items_and_pagination(client):
    for _ in range(3):
        _create(client)
    res = client.get(f"{BASE}?limit=2&severity=critical", headers=LEAD)
    body = res.get_json()
    assert len(body["data"]) == 2
    assert body["pagination"] == {"page": 1, "limit": 2, "total": 3, "total_pages": 2}


def test_list_foreign_vertical_filter_is_403(client):
    res = client.get(f"{BASE}?vertical_id=7", headers=LEAD)
    assert res.status_code == 403


def test_list_bad_limit_is_422(client):
    res = client.get(f"{BASE}?limit=500", headers=LEAD)
    assert res.status_code == 422


def test_list_page_zero_is_422(client):
    res = client.get(f"{BASE}?page=0", headers=LEAD)
    assert res.status_code == 422
    assert res.get_json()["details"] == {"page": 0}


@pytest.mark.parametrize("path", [
    "/statistics", "/overdue", "/escalation-report", "/severity/high",
    "/status/open", "/vertical/5", "/search?q=card",
])
def test_report_endpoints_respond(client, path):
    _create(client)
    res = client.get(f"{BASE}{path}", headers=LEAD)
    assert res.status_code == 200, res.get_json()
    assert res.get_json()["success"] is True


def test_workload_self_only_for_staff(client):
    assert client.get(f"{BASE}/workload/20", headers=STAFF).status_code == 200
    assert client.get(f"{BASE}/workload/10", headers=STAFF).status_code == 403
    assert client.get(f"{BASE}/assigned/10", headers=STAFF).status_code == 403


# ── SLA rules over HTTP ───────────────────────────────────────────────────────


def test_sla_rule_management_requires_global_admin(client):
    res = client.put(f"{BASE}/sla-rules/high", json={"resolution_time_hours": 36}, headers=LEAD)
    assert res.status_code == 403

    res = client.put(f"{BASE}/sla-rules/high", json={"resolution_time_hours": 36}, headers=ADMIN)
    assert res.status_code == 200
    rules = client.get(f"{BASE}/sla-rules", headers=LEAD).get_json()["data"]
    assert [(r["severity"], r["resolution_time_hours"]) for r in rules] == [("high", 36)]


def test_sla_check_endpoint(client):
    _create(client, due_date="2020-01-01T00:00:00Z")
    assert client.post(f"{BASE}/sla-check", headers=LEAD).status_code == 403

    res = client.post(f"{BASE}/sla-check", headers=ADMIN)
    assert res.get_json()["data"]["flagged"] == 1
