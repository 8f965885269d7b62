"""
Sales CRM - Opportunities, scoring and pipelines API tests
Stage transitions, scoring endpoints, fulfilment pipelines and
the weighted pipeline view.
Run: cd backend && pytest tests/test_opportunities_api.py -v
"""

from datetime import datetime, timezone, timedelta

from tests.conftest import auth_h, _db_op

import config


def _create_opportunity(client, user, **extra):
    payload = {"name": "Pump retrofit", "deal_size": 750_000, "probability": 40, "stage": "QUALIFICATION"}
    payload.update(extra)
    r = client.post("/api/opportunities", headers=auth_h(user), json=payload)
    assert r.status_code == 201, r.text
    return r.json()["opportunity"]


def _create_pipeline(client, user, **extra):
    payload = {"name": "Pump order #1", "order_value": 2_000_000, "status": "ORDER_RECEIVED"}
    payload.update(extra)
    r = client.post("/api/pipelines", headers=auth_h(user), json=payload)
    assert r.status_code == 201, r.text
    return r.json()["pipeline"]


# ═══════════════════════════════════════════════════════════════
# 1. OPPORTUNITY CRUD
# ═══════════════════════════════════════════════════════════════

class TestOpportunities:
    def test_create_sets_expected_close(self, client, sales_user):
        opp = _create_opportunity(client, sales_user)
        assert opp["owner_id"] == sales_user["id"]
        assert opp["expected_close_date"] > opp["created_at"]

    def test_validation(self, client, sales_user):
        for bad in ({"name": "X", "probability": 150}, {"name": "X", "stage": "DREAMING"},
                    {"name": "X", "deal_size": -5}):
            r = client.post("/api/opportunities", headers=auth_h(sales_user), json=bad)
            assert r.status_code == 422, bad

    def test_unparseable_dates_rejected(self, client, sales_user, admin_user):
        for field in ("expected_close_date", "next_followup_date"):
            r = client.post("/api/opportunities", headers=auth_h(sales_user), json={"name": "X", field: "soon"})
            assert r.status_code == 422, field
        assert _db_op(config.db.opportunities.count_documents({})) == 0

        opp = _create_opportunity(client, sales_user)
        r = client.put(f"/api/opportunities/{opp['id']}", headers=auth_h(sales_user),
                       json={"expected_close_date": "end of quarter"})
        assert r.status_code == 422
        assert client.get(f"/api/opportunities/{opp['id']}", headers=auth_h(sales_user)).status_code == 200
        assert client.get("/api/analytics/forecast", headers=auth_h(admin_user)).status_code == 200

    def test_offset_close_date_stored_as_utc(self, client, sales_user):
        opp = _create_opportunity(client, sales_user, expected_close_date="2026-12-01T02:00:00+05:30")
        assert opp["expected_close_date"] == "2026-11-30T20:30:00+00:00"

    def test_update_rejects_negative_deal_size(self, client, sales_user):
        opp = _create_opportunity(client, sales_user)
        r = client.put(f"/api/opportunities/{opp['id']}", headers=auth_h(sales_user), json={"deal_size": -1})
        assert r.status_code == 422

    def test_closed_won_sets_won_date(self, client, sales_user):
        opp = _create_opportunity(client, sales_user)
        r = client.put(f"/api/opportunities/{opp['id']}", headers=auth_h(sales_user),
                       json={"stage": "CLOSED_WON"})
        updated = r.json()["opportunity"]
        assert updated["won_date"]
        assert updated["probability"] == 100
        assert updated["stage_changed_at"] >= opp["stage_changed_at"]

        event = _db_op(config.db.event_log.find_one({"action": "stage_change"}))
        assert event["details"]["old_value"] == "QUALIFICATION"
        assert event["details"]["new_value"] == "CLOSED_WON"

    def test_closed_lost_zeroes_probability(self, client, sales_user):
        opp = _create_opportunity(client, sales_user)
        r = client.put(f"/api/opportunities/{opp['id']}", headers=auth_h(sales_user),
                       json={"stage": "CLOSED_LOST", "lost_reason": "Price"})
        assert r.json()["opportunity"]["probability"] == 0
        event = _db_op(config.db.event_log.find_one({"action": "stage_change"}))
        assert event["details"]["reason"] == "Price"

    def test_detail_includes_insights(self, client, sales_user):
        opp = _create_opportunity(client, sales_user)
        r = client.get(f"/api/opportunities/{opp['id']}", headers=auth_h(sales_user))
        assert r.status_code == 200
        body = r.json()
        assert body["followups"] == []
        assert body["weighted"]["stage"] == "QUALIFICATION"
        assert 0 <= body["score"]["total_score"] <= 100
        assert body["sales_insights"]["deal_category"] == "MICRO"
        assert body["sales_insights"]["next_actions"]

    def test_ownership(self, client, sales_user, other_sales_user):
        opp = _create_opportunity(client, sales_user)
        r = client.put(f"/api/opportunities/{opp['id']}", headers=auth_h(other_sales_user),
                       json={"stage": "PROPOSAL"})
        assert r.status_code == 403

    def test_open_only_filter(self, client, sales_user):
        _create_opportunity(client, sales_user)
        _create_opportunity(client, sales_user, name="Done", stage="CLOSED_WON")
        r = client.get("/api/opportunities", params={"open_only": True}, headers=auth_h(sales_user))
        assert [o["name"] for o in r.json()["opportunities"]] == ["Pump retrofit"]


# ═══════════════════════════════════════════════════════════════
# 2. SCORING
# ═══════════════════════════════════════════════════════════════

class TestScoring:
    def test_scores_open_opportunities(self, client, sales_user):
        _create_opportunity(client, sales_user, name="A", deal_size=2_000_000, probability=80)
        _create_opportunity(client, sales_user, name="B", deal_size=5_000, probability=10)
        _create_opportunity(client, sales_user, name="Won", stage="CLOSED_WON")

        r = client.get("/api/opportunities/scoring", headers=auth_h(sales_user))
        assert r.status_code == 200
        body = r.json()
        assert body["count"] == 2
        assert body["opportunities"][0]["name"] == "A"
        assert body["opportunities"][0]["priority"] == "CRITICAL"
        assert body["portfolio"]["total_value"] == 2_005_000

    def test_priority_filter(self, client, sales_user):
        _create_opportunity(client, sales_user, name="A", deal_size=2_000_000, probability=80)
        _create_opportunity(client, sales_user, name="B", deal_size=5_000, probability=10)
        r = client.get("/api/opportunities/scoring", params={"priority": "critical"},
                       headers=auth_h(sales_user))
        assert [o["name"] for o in r.json()["opportunities"]] == ["A"]

    def test_bad_sort(self, client, sales_user):
        r = client.get("/api/opportunities/scoring", params={"sort_by": "name"}, headers=auth_h(sales_user))
        assert r.status_code == 422

    def test_posted_criteria(self, client, sales_user):
        r = client.post("/api/opportunities/scoring", headers=auth_h(sales_user), json=[
            {"id": "x", "name": "Posted", "deal_size": 10_000_000, "probability": 0.9,
             "budget_approved": True, "relationship_strength": "EXCELLENT"},
        ])
        assert r.status_code == 200
        assert r.json()["opportunities"][0]["priority"] == "CRITICAL"

        r = client.post("/api/opportunities/scoring", headers=auth_h(sales_user), json=[
            {"deal_size": 1, "probability": 5},
        ])
        assert r.status_code == 422


# ═══════════════════════════════════════════════════════════════
# 3. PIPELINES / WEIGHTED VIEW
# ═══════════════════════════════════════════════════════════════

class TestPipelines:
    def test_crud_and_status_change(self, client, sales_user):
        pipeline = _create_pipeline(client, sales_user)
        assert pipeline["order_date"]

        r = client.put(f"/api/pipelines/{pipeline['id']}", headers=auth_h(sales_user),
                       json={"status": "SHIPPED", "progress_percentage": 70})
        assert r.json()["pipeline"]["status"] == "SHIPPED"

        detail = client.get(f"/api/pipelines/{pipeline['id']}", headers=auth_h(sales_user)).json()
        assert detail["deal"]["stage"] == "FINAL_APPROVAL"
        assert detail["deal"]["probability"] == 0.7

    def test_invalid_status(self, client, sales_user):
        r = client.post("/api/pipelines", headers=auth_h(sales_user), json={"name": "X", "status": "LOST"})
        assert r.status_code == 422

    def test_unparseable_pipeline_dates(self, client, sales_user):
        for field in ("order_date", "expected_delivery_date"):
            r = client.post("/api/pipelines", headers=auth_h(sales_user), json={"name": "X", field: "asap"})
            assert r.status_code == 422, field

        pipeline = _create_pipeline(client, sales_user)
        r = client.put(f"/api/pipelines/{pipeline['id']}", headers=auth_h(sales_user),
                       json={"payment_date": "when paid"})
        assert r.status_code == 422
        r = client.get("/api/pipelines/weighted", headers=auth_h(sales_user))
        assert r.status_code == 200

    def test_weighted_view(self, client, sales_user, other_sales_user):
        _create_pipeline(client, sales_user)
        _create_pipeline(client, sales_user, name="Delayed", status="DELAYED", order_value=500_000)
        _create_pipeline(client, other_sales_user, name="Not mine")

        r = client.get("/api/pipelines/weighted", params={"period": "quarter"}, headers=auth_h(sales_user))
        assert r.status_code == 200
        body = r.json()
        assert body["period"] == "quarter"
        assert body["metrics"]["total_deals"] == 2
        assert body["metrics"]["total_value"] == 2_500_000
        delayed = [d for d in body["deals"] if d["name"] == "Delayed"][0]
        assert delayed["risk_score"] == 80
        assert delayed["priority"] == "HIGH"
        assert isinstance(body["recommendations"], list)

    def test_weighted_view_period_window(self, client, sales_user):
        old = (datetime.now(timezone.utc) - timedelta(days=100)).isoformat()
        _db_op(config.db.pipelines.insert_one({
            "id": "old", "name": "Old", "owner_id": sales_user["id"], "status": "SHIPPED",
            "order_value": 1, "order_date": old, "updated_at": old, "created_at": old,
        }))
        r = client.get("/api/pipelines/weighted", params={"period": "month"}, headers=auth_h(sales_user))
        assert r.json()["metrics"]["total_deals"] == 0
        r = client.get("/api/pipelines/weighted", params={"period": "year"}, headers=auth_h(sales_user))
        assert r.json()["metrics"]["total_deals"] == 1

    def test_weighted_stage_update(self, client, sales_user):
        opp = _create_opportunity(client, sales_user)
        r = client.post("/api/pipelines/weighted", headers=auth_h(sales_user), json={
            "opportunity_id": opp["id"], "stage": "CLOSED_WON",
        })
        assert r.status_code == 200
        assert r.json()["opportunity"]["won_date"]

    def test_weighted_stage_update_to_lost(self, client, sales_user):
        opp = _create_opportunity(client, sales_user)
        r = client.post("/api/pipelines/weighted", headers=auth_h(sales_user), json={
            "opportunity_id": opp["id"], "stage": "CLOSED_LOST", "lost_reason": "Budget cut",
        })
        assert r.status_code == 200
        updated = r.json()["opportunity"]
        assert updated["probability"] == 0
        assert updated["lost_reason"] == "Budget cut"

    def test_weighted_stage_update_bad_date(self, client, sales_user):
        opp = _create_opportunity(client, sales_user)
        r = client.post("/api/pipelines/weighted", headers=auth_h(sales_user), json={
            "opportunity_id": opp["id"], "stage": "PROPOSAL", "expected_close_date": "Q3",
        })
        assert r.status_code == 422

    def test_weighted_status_update(self, client, sales_user):
        pipeline = _create_pipeline(client, sales_user)
        r = client.put("/api/pipelines/weighted", headers=auth_h(sales_user), json={
            "pipeline_id": pipeline["id"], "status": "PAYMENT_RECEIVED", "notes": "Paid in full",
        })
        assert r.status_code == 200
        assert r.json()["deal"]["stage"] == "CLOSED_WON"
        assert r.json()["pipeline"]["notes"] == "Paid in full"
