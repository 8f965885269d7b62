"""
Sales CRM - Companies, contacts and leads API tests
Validation, ownership isolation and lead conversion.
Run: cd backend && pytest tests/test_leads_api.py -v
"""

from tests.conftest import auth_h, _db_op

import config


def _create_company(client, user, name="Acme Pumps"):
    r = client.post("/api/companies", headers=auth_h(user), json={
        "name": name, "industry": "Manufacturing", "region": "West", "size": "large",
    })
    assert r.status_code == 201
    return r.json()["company"]


def _create_lead(client, user, **extra):
    payload = {"name": "Acme pump upgrade", "source": "Website"}
    payload.update(extra)
    r = client.post("/api/leads", headers=auth_h(user), json=payload)
    assert r.status_code == 201, r.text
    return r.json()["lead"]


# ═══════════════════════════════════════════════════════════════
# 1. COMPANIES / CONTACTS
# ═══════════════════════════════════════════════════════════════

class TestCompanies:
    def test_create_and_detail(self, client, sales_user):
        company = _create_company(client, sales_user)
        assert company["size"] == "LARGE"

        r = client.post("/api/contacts", headers=auth_h(sales_user), json={
            "company_id": company["id"], "name": "Meera", "title": "Purchase Manager",
        })
        assert r.status_code == 201

        detail = client.get(f"/api/companies/{company['id']}", headers=auth_h(sales_user)).json()
        assert [c["name"] for c in detail["contacts"]] == ["Meera"]
        assert detail["lead_count"] == 0

    def test_duplicate_name_case_insensitive(self, client, sales_user):
        _create_company(client, sales_user)
        r = client.post("/api/companies", headers=auth_h(sales_user), json={"name": "acme pumps"})
        assert r.status_code == 409

    def test_invalid_size(self, client, sales_user):
        r = client.post("/api/companies", headers=auth_h(sales_user), json={"name": "X", "size": "HUGE"})
        assert r.status_code == 422

    def test_search(self, client, sales_user):
        _create_company(client, sales_user)
        _create_company(client, sales_user, name="Globex")
        r = client.get("/api/companies/search", params={"q": "acm"}, headers=auth_h(sales_user))
        assert [c["name"] for c in r.json()["companies"]] == ["Acme Pumps"]

    def test_contact_needs_company(self, client, sales_user):
        r = client.post("/api/contacts", headers=auth_h(sales_user), json={
            "company_id": "missing", "name": "Nobody",
        })
        assert r.status_code == 404

    def test_delete_blocked_by_open_opportunity(self, client, sales_user, admin_user):
        company = _create_company(client, sales_user)
        client.post("/api/opportunities", headers=auth_h(sales_user), json={
            "name": "Open deal", "company_id": company["id"], "deal_size": 1000,
        })
        r = client.delete(f"/api/companies/{company['id']}", headers=auth_h(admin_user))
        assert r.status_code == 409


# ═══════════════════════════════════════════════════════════════
# 2. LEADS
# ═══════════════════════════════════════════════════════════════

class TestLeads:
    def test_create_defaults(self, client, sales_user):
        lead = _create_lead(client, sales_user, email="Buyer@Acme.com")
        assert lead["status"] == "NEW"
        assert lead["owner_id"] == sales_user["id"]
        assert lead["email"] == "buyer@acme.com"
        assert lead["converted_opportunity_id"] is None

    def test_validation(self, client, sales_user):
        r = client.post("/api/leads", headers=auth_h(sales_user), json={"name": "No source"})
        assert r.status_code == 422
        r = client.post("/api/leads", headers=auth_h(sales_user), json={
            "name": "Bad", "source": "Web", "status": "MAYBE",
        })
        assert r.status_code == 422
        r = client.post("/api/leads", headers=auth_h(sales_user), json={
            "name": "Bad", "source": "Web", "email": "not-an-email",
        })
        assert r.status_code == 422

    def test_unknown_company(self, client, sales_user):
        r = client.post("/api/leads", headers=auth_h(sales_user), json={
            "name": "Lead", "source": "Web", "company_id": "missing",
        })
        assert r.status_code == 400

    def test_ownership_isolation(self, client, sales_user, other_sales_user, admin_user):
        lead = _create_lead(client, sales_user)

        other = client.get("/api/leads", headers=auth_h(other_sales_user)).json()
        assert other["count"] == 0
        r = client.get(f"/api/leads/{lead['id']}", headers=auth_h(other_sales_user))
        assert r.status_code == 403

        admin = client.get("/api/leads", headers=auth_h(admin_user)).json()
        assert admin["count"] == 1

    def test_status_change_is_logged(self, client, sales_user):
        lead = _create_lead(client, sales_user)
        r = client.put(f"/api/leads/{lead['id']}", headers=auth_h(sales_user), json={"status": "CONTACTED"})
        assert r.status_code == 200
        event = _db_op(config.db.event_log.find_one({"action": "lead_status_change"}))
        assert event["details"] == {"old_value": "NEW", "new_value": "CONTACTED"}

    def test_empty_update(self, client, sales_user):
        lead = _create_lead(client, sales_user)
        r = client.put(f"/api/leads/{lead['id']}", headers=auth_h(sales_user), json={})
        assert r.status_code == 400

    def test_sales_cannot_delete(self, client, sales_user, admin_user):
        lead = _create_lead(client, sales_user)
        assert client.delete(f"/api/leads/{lead['id']}", headers=auth_h(sales_user)).status_code == 403
        assert client.delete(f"/api/leads/{lead['id']}", headers=auth_h(admin_user)).status_code == 200


# ═══════════════════════════════════════════════════════════════
# 3. CONVERSION
# ═══════════════════════════════════════════════════════════════

class TestConversion:
    def test_convert_with_defaults(self, client, sales_user):
        company = _create_company(client, sales_user)
        lead = _create_lead(client, sales_user, company_id=company["id"], estimated_value=450_000)

        r = client.post(f"/api/leads/{lead['id']}/convert", headers=auth_h(sales_user))
        assert r.status_code == 201
        body = r.json()
        opp = body["opportunity"]
        assert opp["name"] == "Acme pump upgrade - Opportunity"
        assert opp["stage"] == "PROSPECTING"
        assert opp["probability"] == 25
        assert opp["deal_size"] == 450_000
        assert opp["company_id"] == company["id"]
        assert opp["lead_id"] == lead["id"]
        assert opp["next_followup_date"] > opp["created_at"]
        assert body["lead"]["status"] == "QUALIFIED"
        assert body["lead"]["converted_opportunity_id"] == opp["id"]

    def test_convert_with_overrides(self, client, sales_user):
        lead = _create_lead(client, sales_user)
        r = client.post(f"/api/leads/{lead['id']}/convert", headers=auth_h(sales_user), json={
            "name": "Big pump deal", "deal_size": 2_000_000, "probability": 60, "stage": "PROPOSAL",
        })
        assert r.status_code == 201
        opp = r.json()["opportunity"]
        assert (opp["name"], opp["deal_size"], opp["probability"], opp["stage"]) == \
            ("Big pump deal", 2_000_000, 60, "PROPOSAL")

    def test_convert_rejects_bad_overrides(self, client, sales_user):
        lead = _create_lead(client, sales_user)
        for bad in ({"expected_close_date": "next month"}, {"next_followup_date": "monday"},
                    {"probability": 140}, {"deal_size": -10}):
            r = client.post(f"/api/leads/{lead['id']}/convert", headers=auth_h(sales_user), json=bad)
            assert r.status_code == 422, bad
        assert _db_op(config.db.opportunities.count_documents({})) == 0

    def test_convert_normalizes_dates(self, client, sales_user):
        lead = _create_lead(client, sales_user)
        r = client.post(f"/api/leads/{lead['id']}/convert", headers=auth_h(sales_user), json={
            "expected_close_date": "2027-01-15", "next_followup_date": "2026-11-03T10:00:00+05:30",
        })
        opp = r.json()["opportunity"]
        assert opp["expected_close_date"] == "2027-01-15T00:00:00+00:00"
        assert opp["next_followup_date"] == "2026-11-03T04:30:00+00:00"

    def test_convert_twice(self, client, sales_user):
        lead = _create_lead(client, sales_user)
        assert client.post(f"/api/leads/{lead['id']}/convert", headers=auth_h(sales_user)).status_code == 201
        r = client.post(f"/api/leads/{lead['id']}/convert", headers=auth_h(sales_user))
        assert r.status_code == 409
        assert _db_op(config.db.opportunities.count_documents({"lead_id": lead["id"]})) == 1

    def test_convert_missing_lead(self, client, sales_user):
        assert client.post("/api/leads/nope/convert", headers=auth_h(sales_user)).status_code == 404

    def test_convert_other_users_lead(self, client, sales_user, other_sales_user):
        lead = _create_lead(client, sales_user)
        r = client.post(f"/api/leads/{lead['id']}/convert", headers=auth_h(other_sales_user))
        assert r.status_code == 403

    def test_deleting_opportunity_frees_lead(self, client, sales_user, admin_user):
        lead = _create_lead(client, sales_user)
        opp = client.post(f"/api/leads/{lead['id']}/convert", headers=auth_h(sales_user)).json()["opportunity"]
        assert client.delete(f"/api/opportunities/{opp['id']}", headers=auth_h(admin_user)).status_code == 200
        assert client.post(f"/api/leads/{lead['id']}/convert", headers=auth_h(sales_user)).status_code == 201
