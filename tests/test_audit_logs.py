"""Audit sink, audit log browsing and the dashboard."""

from sqlalchemy.exc import SQLAlchemyError

from extensions import db
from models import AuditLog
from services import audit


class TestAuditSink:
    def test_log_event_outside_request(self, app):
        with app.app_context():
            entry = audit.log_event(audit.CREATE_PLAN, resource="plan:1", details={"k": "v"})
            assert entry.id is not None
            assert entry.details["k"] == "v"
            assert entry.details["ipAddress"] is None
            assert "timestamp" in entry.details

    def test_security_event_is_flagged(self, app):
        with app.app_context():
            entry = audit.log_security_event(audit.SUSPICIOUS_ACTIVITY, user_id=7)
            assert entry.resource == "user:7"
            assert entry.details["severity"] == "HIGH"
            assert entry.details["requiresAttention"] is True

    def test_storage_failure_is_swallowed(self, app, monkeypatch):
        def broken_commit():
            raise SQLAlchemyError("disk full")

        with app.app_context():
            monkeypatch.setattr(db.session, "commit", broken_commit)
            assert audit.log_event(audit.LOGOUT) is None
            monkeypatch.undo()
            assert AuditLog.query.filter_by(action=audit.LOGOUT).count() == 0

    def test_forwarded_address(self, app):
        with app.test_request_context(
            "/", headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1", "User-Agent": "probe"}
        ):
            info = audit.request_info()
            assert info == {"ipAddress": "203.0.113.9", "userAgent": "probe"}


class TestAuditLogRoutes:
    def _seed(self, app, sample_data):
        with app.app_context():
            audit.log_event(audit.CREATE_USER, resource="user:1", tenant_id=sample_data["tenant_a"])
            audit.log_event(audit.CREATE_USER, resource="user:2", tenant_id=sample_data["tenant_b"])
            audit.log_event(audit.SYNC_TENANT_PRODUCTS, resource="tenants")

    def test_super_admin_sees_all(self, app, super_client, sample_data):
        self._seed(app, sample_data)
        body = super_client.get("/api/audit-logs?action=CREATE_USER").get_json()
        assert body["pagination"]["total"] == 2

    def test_global_filter(self, app, super_client, sample_data):
        self._seed(app, sample_data)
        body = super_client.get("/api/audit-logs?tenantId=global&resource=tenants").get_json()
        assert [log["action"] for log in body["logs"]] == ["SYNC_TENANT_PRODUCTS"]

    def test_admin_scope(self, app, admin_client, sample_data):
        self._seed(app, sample_data)
        body = admin_client.get("/api/audit-logs").get_json()
        tenants = {log["tenantId"] for log in body["logs"]}
        assert sample_data["tenant_b"] not in tenants
        assert tenants <= {sample_data["tenant_a"], None}

    def test_admin_cannot_escape_scope(self, app, admin_client, sample_data):
        self._seed(app, sample_data)
        body = admin_client.get(f"/api/audit-logs?tenantId={sample_data['tenant_b']}").get_json()
        assert all(log["tenantId"] != sample_data["tenant_b"] for log in body["logs"])

    def test_user_forbidden(self, user_client):
        assert user_client.get("/api/audit-logs").status_code == 403

    def test_pagination(self, app, super_client, sample_data):
        with app.app_context():
            for i in range(5):
                audit.log_event("CUSTOM", resource=f"thing:{i}")
        body = super_client.get("/api/audit-logs?action=CUSTOM&limit=2&page=2").get_json()
        assert body["pagination"] == {"page": 2, "limit": 2, "total": 5, "pages": 3}
        assert len(body["logs"]) == 2

    def test_limit_is_capped(self, super_client):
        body = super_client.get("/api/audit-logs?limit=5000").get_json()
        assert body["pagination"]["limit"] == 100

    def test_search_and_enrichment(self, super_client, sample_data):
        body = super_client.get("/api/audit-logs?search=LOGIN").get_json()
        login = body["logs"][0]
        assert login["action"] == "LOGIN_SUCCESS"
        assert login["user"]["email"] == "root@caleidoscopio.test"

    def test_create_entry(self, app, admin_client, sample_data):
        resp = admin_client.post(
            "/api/audit-logs", json={"action": "EXPORT_REPORT", "resource": "report:1"}
        )
        assert resp.status_code == 201
        log = resp.get_json()["log"]
        assert log["userId"] == sample_data["admin_a"]
        assert log["tenantId"] == sample_data["tenant_a"]

    def test_create_entry_requires_action(self, admin_client):
        assert admin_client.post("/api/audit-logs", json={}).status_code == 400

    def test_stats(self, app, super_client, sample_data):
        self._seed(app, sample_data)
        resp = super_client.get("/api/audit-logs/stats?days=3")
        assert resp.status_code == 200
        body = resp.get_json()
        assert len(body["dailyActivity"]) == 3
        assert body["totals"]["today"] == body["totals"]["total"]
        actions = {a["action"]: a["count"] for a in body["topActions"]}
        assert actions["CREATE_USER"] == 2
        assert body["topUsers"][0]["user"]["email"] == "root@caleidoscopio.test"

    def test_stats_super_admin_only(self, admin_client):
        assert admin_client.get("/api/audit-logs/stats").status_code == 403


class TestDashboard:
    def test_super_admin_stats(self, super_client, sample_data):
        stats = super_client.get("/api/dashboard/stats").get_json()["stats"]
        assert stats["tenants"] == 2
        assert stats["users"] == 4
        assert stats["products"] == 3

    def test_scoped_stats(self, admin_client, sample_data):
        stats = admin_client.get("/api/dashboard/stats").get_json()["stats"]
        assert stats == {"users": 2, "activeUsers": 2, "activeProducts": 1}

    def test_dashboard_page(self, user_client):
        resp = user_client.get("/")
        assert resp.status_code == 200
        assert b"Terapeuta A" in resp.data
