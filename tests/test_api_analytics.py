"""API tests for analytics, escalations, scheduler and health endpoints."""

from datetime import timedelta

from ticket_tracker.services import reconciliation_service as rs

from conftest import BASE_TIME


class TestAnalytics:

    def test_sla_compliance_empty(self, client):
        body = client.get("/api/v1/analytics/sla-compliance").get_json()
        assert body["compliance_rate"] == 100.0
        assert body["lookahead_minutes"] == 60

    def test_sla_compliance_bad_item_type(self, client):
        res = client.get("/api/v1/analytics/sla-compliance?item_type=epic")
        assert res.status_code == 422

    def test_trends(self, client, item):
        rs.reconcile([item("PAY-1"), item("PAY-2")])
        body = client.get(
            "/api/v1/analytics/trends?start=2026-03-01&end=2026-03-14&bucket=week"
        ).get_json()

        assert body["bucket"] == "week"
        assert [b["bucket"] for b in body["series"]] == ["2026-W09", "2026-W10", "2026-W11"]
        assert body["series"][1]["created"] == 2

    def test_trends_default_window(self, client):
        body = client.get("/api/v1/analytics/trends").get_json()
        assert len(body["series"]) == 30

    def test_trends_bad_bucket(self, client):
        res = client.get("/api/v1/analytics/trends?bucket=month")
        assert res.status_code == 422

    def test_rollbacks(self, client, item):
        rs.reconcile([item("PAY-1", status="qa_test")])
        rs.reconcile([item("PAY-1", status="todo", updated_at=BASE_TIME + timedelta(hours=1))])

        body = client.get("/api/v1/analytics/rollbacks?start=2026-03-02T00:00:00Z").get_json()
        assert body["rollback_count"] == 1

    def test_rollbacks_bad_timestamp(self, client):
        res = client.get("/api/v1/analytics/rollbacks?start=yesterday")
        assert res.status_code == 422
        assert res.get_json()["details"] == {"start": "yesterday"}

    def test_team_performance_unknown(self, client):
        assert client.get("/api/v1/analytics/team-performance?team_id=9").status_code == 404

    def test_governance(self, client):
        body = client.get("/api/v1/analytics/governance").get_json()
        assert body["sla"]["total"] == 0
        assert body["breach_aging"]["total_breached"] == 0


class TestEscalationsApi:

    def test_sync_and_list(self, client, item):
        helpdesk = {"source": "freshservice", "item_type": "incident", "status": "open",
                    "project_key": "FRESHSERVICE", "support_level": "L1"}
        rs.reconcile([item("2001", **helpdesk)])
        rs.reconcile([item("2001", **dict(helpdesk, support_level="L2"),
                           updated_at=BASE_TIME + timedelta(hours=1))])

        assert client.post("/api/v1/escalations/sync").get_json()["created"] == 1
        listing = client.get("/api/v1/escalations?to_level=L2").get_json()
        assert listing["total"] == 1
        assert listing["items"][0]["external_key"] == "2001"


class TestSchedulerApi:

    def test_list_jobs(self, client):
        body = client.get("/api/v1/scheduler/jobs").get_json()
        assert body["total"] == 5
        assert body["running"] is False
        assert all(j["db_record"] is not None for j in body["items"])

    def test_run_unknown_job(self, client):
        assert client.post("/api/v1/scheduler/jobs/nope/run").status_code == 404

    def test_run_job(self, client):
        body = client.post("/api/v1/scheduler/jobs/escalation_sync/run").get_json()
        assert body["status"] == "success"

    def test_toggle(self, client):
        res = client.patch("/api/v1/scheduler/jobs/aggregation_refresh", json={"is_enabled": False})
        assert res.status_code == 200
        assert res.get_json()["status"] == "paused"
        assert client.patch("/api/v1/scheduler/jobs/aggregation_refresh",
                            json={}).status_code == 400


class TestHealth:

    def test_ready(self, client):
        res = client.get("/api/v1/health/ready")
        assert res.status_code == 200
        assert res.get_json() == {"status": "ok"}

    def test_live(self, client):
        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        checks = res.get_json()["checks"]
        assert checks["database"]["status"] == "ok"
        assert checks["scheduler"]["status"] == "disabled"
        assert set(checks["sync"]["enabled_sources"]) == {"jira", "freshdesk", "freshservice"}
