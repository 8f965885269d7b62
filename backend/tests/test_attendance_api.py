"""
Sales CRM - Attendance API tests
Submission (validation, clock, EXIF, device change, duplicates, follow-up
linking), admin board, review with notifications, amend and tamper check.
Run: cd backend && pytest tests/test_attendance_api.py -v
"""

from datetime import datetime, timezone, timedelta

from tests.conftest import auth_h, _db_op

import config

FINGERPRINT = {
    "user_agent": "Mozilla/5.0 (Linux; Android 14)",
    "timezone": "Asia/Kolkata",
    "language": "en-IN",
    "platform": "Linux armv8l",
    "screen_width": 412,
    "screen_height": 915,
}


def _payload(**extra):
    payload = {
        "note": "Visited Acme plant for the pump retrofit demo",
        "selfie_url": "https://cdn.example.com/selfie.jpg",
        "timeline_url": "https://maps.app.goo.gl/abc123",
        "client_lat": 19.076,
        "client_lng": 72.877,
        "device_fingerprint": FINGERPRINT,
    }
    payload.update(extra)
    return payload


def _submit(client, user, **extra):
    return client.post("/api/attendance", headers=auth_h(user), json=_payload(**extra))


def _iso(**delta) -> str:
    return (datetime.now(timezone.utc) + timedelta(**delta)).isoformat()


# ═══════════════════════════════════════════════════════════════
# 1. SUBMISSION
# ═══════════════════════════════════════════════════════════════

class TestSubmit:
    def test_submit_ok(self, client, sales_user):
        r = _submit(client, sales_user)
        assert r.status_code == 201, r.text
        body = r.json()
        record = body["attendance"]
        assert record["status"] == "SUBMITTED"
        assert record["date_ist"] == config.today_ist()
        assert len(record["device_fingerprint"]) == 64
        assert record["hash"]
        assert body["follow_up"] is None

        today = client.get("/api/attendance/submitted-today", headers=auth_h(sales_user)).json()
        assert today["submitted"] is True
        assert today["attendance"]["id"] == record["id"]

    def test_duplicate_same_day(self, client, sales_user):
        assert _submit(client, sales_user).status_code == 201
        r = _submit(client, sales_user)
        assert r.status_code == 409
        assert r.json()["detail"] == "Attendance already submitted for today"

    def test_validation_errors(self, client, sales_user):
        r = _submit(client, sales_user, selfie_url=None, timeline_url="https://example.com/x")
        assert r.status_code == 400
        detail = r.json()["detail"]
        assert detail["error"] == "Validation failed"
        assert "Selfie is required" in detail["details"]
        assert "Timeline URL must be from Google Maps" in detail["details"]
        assert _db_op(config.db.attendance.count_documents({})) == 0

    def test_client_clock_skew(self, client, sales_user):
        r = _submit(client, sales_user, client_submitted_at=_iso(hours=-30))
        assert r.status_code == 400
        assert r.json()["detail"] == {
            "error": "Time validation failed",
            "details": ["Submitted time is too far from server time"],
        }

    def test_malformed_timestamps(self, client, sales_user):
        for field in ("client_submitted_at", "exif_taken_at"):
            r = _submit(client, sales_user, **{field: "garbage"})
            assert r.status_code == 400, field
            assert r.json()["detail"]["error"] == "Time validation failed"
        assert _db_op(config.db.attendance.count_documents({})) == 0

    def test_offset_exif_within_tolerance(self, client, sales_user):
        ist = timezone(timedelta(hours=5, minutes=30))
        taken = datetime.now(timezone.utc).replace(microsecond=0) - timedelta(minutes=5)
        r = _submit(client, sales_user, exif_taken_at=taken.astimezone(ist).isoformat(),
                    client_submitted_at=datetime.now(ist).isoformat())
        assert r.status_code == 201
        record = r.json()["attendance"]
        assert record.get("flags") is None
        assert record["exif_taken_at"] == taken.isoformat()

    def test_exif_mismatch_flags(self, client, sales_user):
        r = _submit(client, sales_user, exif_taken_at=_iso(hours=-6))
        assert r.status_code == 201
        body = r.json()
        assert body["attendance"]["status"] == "AUTO_FLAGGED"
        assert body["attendance"]["flags"] == ["exif_mismatch"]
        assert "Photo EXIF timestamp suggests the photo may not have been taken today" in body["warnings"]

    def test_device_change_flags(self, client, sales_user):
        yesterday = (datetime.strptime(config.today_ist(), "%Y-%m-%d") - timedelta(days=1)).strftime("%Y-%m-%d")
        _db_op(config.db.attendance.insert_one({
            "id": "prev", "user_id": sales_user["id"], "date_ist": yesterday,
            "device_fingerprint": "a" * 64, "status": "APPROVED",
        }))
        r = _submit(client, sales_user)
        assert r.status_code == 201
        assert r.json()["attendance"]["status"] == "AUTO_FLAGGED"
        assert "device_change" in r.json()["attendance"]["flags"]

    def test_same_device_not_flagged(self, client, sales_user):
        from models import DeviceFingerprint
        from services.attendance_validation import hash_device_fingerprint

        yesterday = (datetime.strptime(config.today_ist(), "%Y-%m-%d") - timedelta(days=1)).strftime("%Y-%m-%d")
        fp = DeviceFingerprint(**FINGERPRINT).dict()
        _db_op(config.db.attendance.insert_one({
            "id": "prev", "user_id": sales_user["id"], "date_ist": yesterday,
            "device_fingerprint": hash_device_fingerprint(fp), "status": "APPROVED",
        }))
        r = _submit(client, sales_user)
        assert r.json()["attendance"]["status"] == "SUBMITTED"

    def test_server_fingerprint_fallback(self, client, sales_user):
        r = _submit(client, sales_user, device_fingerprint=None)
        assert r.status_code == 201
        assert r.json()["attendance"]["device_info"]["platform"] == "server"

    def test_requires_auth(self, client):
        assert client.post("/api/attendance", json=_payload()).status_code == 401


# ═══════════════════════════════════════════════════════════════
# 2. FOLLOW-UP LINKING
# ═══════════════════════════════════════════════════════════════

class TestFollowupLink:
    def test_new_followup_created(self, client, sales_user):
        r = _submit(client, sales_user, follow_up={
            "mode": "new", "action_type": "MEETING", "description": "Demo for plant head",
            "next_action_date": _iso(days=2), "priority": "high",
        })
        assert r.status_code == 201, r.text
        followup = r.json()["follow_up"]
        assert followup["source"] == "attendance"
        assert followup["urgency_level"] == "HIGH"
        assert r.json()["attendance"]["followup_id"] == followup["id"]

    def test_incomplete_new_followup(self, client, sales_user):
        r = _submit(client, sales_user, follow_up={"mode": "new", "action_type": "CALL"})
        assert r.status_code == 400
        assert r.json()["detail"] == "Follow-up details are incomplete."

    def test_invalid_schedule(self, client, sales_user):
        r = _submit(client, sales_user, follow_up={
            "action_type": "CALL", "description": "x", "next_action_date": "next tuesday",
        })
        assert r.status_code == 400
        assert r.json()["detail"] == "Follow-up schedule is invalid."

    def test_new_followup_bad_link_leaves_no_record(self, client, sales_user):
        r = _submit(client, sales_user, follow_up={
            "action_type": "CALL", "description": "x", "next_action_date": _iso(days=1), "lead_id": "nope",
        })
        assert r.status_code == 400
        assert _db_op(config.db.attendance.count_documents({})) == 0

    def test_existing_followup_linked(self, client, sales_user):
        created = client.post("/api/daily-followups", headers=auth_h(sales_user), json={
            "action_type": "CALL", "action_description": "Call buyer", "follow_up_date": _iso(days=1),
            "notes": "Bring price list",
        }).json()["followup"]

        r = _submit(client, sales_user, follow_up={"mode": "existing", "id": created["id"]})
        assert r.status_code == 201
        followup = r.json()["follow_up"]
        assert followup["notes"].startswith("Bring price list\n\nLinked with attendance submission on ")
        assert followup["attendance_id"] == r.json()["attendance"]["id"]

    def test_existing_followup_of_other_user(self, client, sales_user, other_sales_user):
        created = client.post("/api/daily-followups", headers=auth_h(other_sales_user), json={
            "action_type": "CALL", "action_description": "Call buyer", "follow_up_date": _iso(days=1),
        }).json()["followup"]
        r = _submit(client, sales_user, follow_up={"mode": "existing", "id": created["id"]})
        assert r.status_code == 403
        assert r.json()["detail"] == "Selected follow-up not found or access denied."

    def test_existing_followup_not_today(self, client, sales_user):
        _db_op(config.db.daily_follow_ups.insert_one({
            "id": "old-f", "created_by_id": sales_user["id"], "status": "SCHEDULED",
            "created_at": _iso(days=-3), "follow_up_date": _iso(days=-1),
        }))
        r = _submit(client, sales_user, follow_up={"mode": "existing", "id": "old-f"})
        assert r.status_code == 400
        assert r.json()["detail"] == "The selected follow-up is not scheduled for today."

    def test_existing_without_id(self, client, sales_user):
        r = _submit(client, sales_user, follow_up={"mode": "existing"})
        assert r.status_code == 400
        assert r.json()["detail"] == "Please select a valid follow-up for today."


# ═══════════════════════════════════════════════════════════════
# 3. ADMIN BOARD / REVIEW
# ═══════════════════════════════════════════════════════════════

class TestReview:
    def test_admin_board(self, client, sales_user, other_sales_user, admin_user):
        _submit(client, sales_user)
        r = client.get("/api/attendance", params={"date": config.today_ist()}, headers=auth_h(admin_user))
        body = r.json()
        assert body["summary"]["submitted"] == 1
        assert body["summary"]["total_users"] == 3
        assert body["summary"]["missing"] == 2
        missing = {u["id"] for u in body["missing_users"]}
        assert other_sales_user["id"] in missing
        assert sales_user["id"] not in missing

    def test_sales_sees_only_own(self, client, sales_user, other_sales_user):
        _submit(client, sales_user)
        _submit(client, other_sales_user)
        body = client.get("/api/attendance", params={"date": config.today_ist()},
                          headers=auth_h(sales_user)).json()
        assert body["count"] == 1
        assert body["records"][0]["user_id"] == sales_user["id"]

        record_id = body["records"][0]["id"]
        assert client.get(f"/api/attendance/{record_id}", headers=auth_h(other_sales_user)).status_code == 403

    def test_approve_notifies_owner(self, client, sales_user, admin_user):
        record = _submit(client, sales_user).json()["attendance"]
        r = client.post("/api/attendance/approve", headers=auth_h(admin_user), json={
            "attendance_ids": [record["id"]], "action": "approve", "notes": "Looks good",
        })
        assert r.status_code == 200
        assert r.json() == {
            "success": True, "updated_count": 1,
            "message": "Successfully approved 1 attendance record(s)",
        }

        stored = _db_op(config.db.attendance.find_one({"id": record["id"]}))
        assert stored["status"] == "APPROVED"
        assert stored["reviewer_name"] == "Admin User"
        assert stored["approved_at"]

        notes = client.get("/api/notifications", headers=auth_h(sales_user)).json()
        assert notes["notifications"][0]["type"] == "attendance_reviewed"
        assert notes["notifications"][0]["data"]["status"] == "APPROVED"

        again = client.post("/api/attendance/approve", headers=auth_h(admin_user), json={
            "attendance_ids": [record["id"]], "action": "approve",
        })
        assert again.json()["updated_count"] == 0

    def test_reject_message(self, client, sales_user, admin_user):
        record = _submit(client, sales_user).json()["attendance"]
        r = client.post("/api/attendance/approve", headers=auth_h(admin_user), json={
            "attendance_ids": [record["id"]], "action": "reject",
        })
        assert r.json()["message"] == "Successfully rejected 1 attendance record(s)"
        assert _db_op(config.db.event_log.count_documents({"action": "attendance_rejected"})) == 1

    def test_review_requires_admin(self, client, sales_user, make_user):
        record = _submit(client, sales_user).json()["attendance"]
        manager = make_user("manager")
        for user in (sales_user, manager):
            r = client.post("/api/attendance/approve", headers=auth_h(user), json={
                "attendance_ids": [record["id"]], "action": "approve",
            })
            assert r.status_code == 403

    def test_review_payload_validation(self, client, admin_user):
        r = client.post("/api/attendance/approve", headers=auth_h(admin_user),
                        json={"attendance_ids": [], "action": "approve"})
        assert r.status_code == 422
        r = client.post("/api/attendance/approve", headers=auth_h(admin_user),
                        json={"attendance_ids": ["x"], "action": "maybe"})
        assert r.status_code == 422


# ═══════════════════════════════════════════════════════════════
# 4. AMEND / TAMPER
# ═══════════════════════════════════════════════════════════════

class TestAmend:
    def test_amend_rehashes(self, client, sales_user):
        record = _submit(client, sales_user).json()["attendance"]
        r = client.put(f"/api/attendance/{record['id']}", headers=auth_h(sales_user),
                       json={"note": "Visited Acme plant and Globex office"})
        assert r.status_code == 200
        amended = r.json()["attendance"]
        assert amended["status"] == "AMENDED"
        assert amended["previous_status"] == "SUBMITTED"
        assert amended["hash"] != record["hash"]

        detail = client.get(f"/api/attendance/{record['id']}", headers=auth_h(sales_user)).json()
        assert detail["tampered"] is False

    def test_amend_invalid(self, client, sales_user):
        record = _submit(client, sales_user).json()["attendance"]
        r = client.put(f"/api/attendance/{record['id']}", headers=auth_h(sales_user), json={"note": "x"})
        assert r.status_code == 400
        assert r.json()["detail"]["error"] == "Validation failed"

    def test_cannot_amend_approved(self, client, sales_user, admin_user):
        record = _submit(client, sales_user).json()["attendance"]
        client.post("/api/attendance/approve", headers=auth_h(admin_user), json={
            "attendance_ids": [record["id"]], "action": "approve",
        })
        r = client.put(f"/api/attendance/{record['id']}", headers=auth_h(sales_user),
                       json={"note": "Changed my mind about the visit"})
        assert r.status_code == 400

    def test_cannot_amend_past_day(self, client, sales_user):
        _db_op(config.db.attendance.insert_one({
            "id": "old", "user_id": sales_user["id"], "date_ist": "2020-01-01", "status": "SUBMITTED",
        }))
        r = client.put("/api/attendance/old", headers=auth_h(sales_user), json={"note": "late edit here"})
        assert r.status_code == 400
        assert r.json()["detail"] == "Only today's attendance can be amended"

    def test_tamper_detected(self, client, sales_user):
        record = _submit(client, sales_user).json()["attendance"]
        _db_op(config.db.attendance.update_one({"id": record["id"]}, {"$set": {"note": "rewritten"}}))
        detail = client.get(f"/api/attendance/{record['id']}", headers=auth_h(sales_user)).json()
        assert detail["tampered"] is True

    def test_recent(self, client, sales_user):
        _submit(client, sales_user)
        body = client.get("/api/attendance/recent", params={"days": 3}, headers=auth_h(sales_user)).json()
        assert body["count"] == 1
