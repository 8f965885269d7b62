"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Sales CRM - Routes Attendance                                               ║
║                                                                              ║
║  One record per user per IST day. Submission flow:                           ║
║    1. follow-up payload check (optional link)                                ║
║    2. field validation (errors -> 400, warnings kept)                        ║
║    3. client clock skew -> 400                                               ║
║    4. EXIF / device change -> warning + AUTO_FLAGGED                         ║
║    5. duplicate (user, date_ist) -> 409                                      ║
║    6. record hash for tamper detection                                       ║
║  Review: admins approve / reject in bulk, users are notified in-app.         ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import uuid
import logging
from datetime import datetime, timezone, timedelta
from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Optional
from pymongo.errors import DuplicateKeyError

from config import (
    db,
    now_iso,
    parse_iso,
    today_ist,
    to_ist,
    DEVICE_HISTORY_DAYS,
)
from models import (
    AttendanceStatus,
    AMENDABLE_STATUSES,
    AttendanceSubmit,
    AttendanceAmend,
    AttendanceApprove,
    FollowUpCreate,
    URGENCY_LEVELS,
)
from routes.auth import get_current_user
from routes.daily_followups import create_followup_document, check_followup_links
from services.event_logger import log_event
from services.notifier import notify_user
from services.permissions import require_permission, require_admin, is_admin
from services.attendance_validation import (
    validate_attendance_submission,
    server_fingerprint,
    hash_device_fingerprint,
    generate_record_hash,
    detect_tampering,
    validate_exif_timestamp,
    check_device_change,
    check_client_clock,
)

logger = logging.getLogger("attendance")

router = APIRouter(prefix="/attendance", tags=["Attendance"])

EXIF_WARNING = "Photo EXIF timestamp suggests the photo may not have been taken today"
DEVICE_WARNING = "Device differs from the one used in recent submissions"


# ==================== HELPERS ====================

def _parse_follow_up(payload: Optional[dict]) -> Optional[dict]:
    """
    Normalize the optional follow-up payload.
    mode=existing -> {"mode": "existing", "id"}
    mode=new      -> {"mode": "new", "data": FollowUpCreate}
    """
    if not payload:
        return None

    mode = payload.get("mode") or "new"
    if mode == "existing":
        followup_id = payload.get("id") or payload.get("followup_id")
        if not followup_id or not isinstance(followup_id, str):
            raise HTTPException(status_code=400, detail="Please select a valid follow-up for today.")
        return {"mode": "existing", "id": followup_id}

    action_type = payload.get("action_type") or payload.get("follow_up_type")
    description = payload.get("description") or payload.get("action_description")
    scheduled = payload.get("next_action_date") or payload.get("follow_up_date")
    if not action_type or not description or not scheduled:
        raise HTTPException(status_code=400, detail="Follow-up details are incomplete.")

    try:
        parse_iso(scheduled)
    except ValueError:
        raise HTTPException(status_code=400, detail="Follow-up schedule is invalid.")

    priority = str(payload.get("priority") or payload.get("urgency_level") or "MEDIUM").upper()
    try:
        data = FollowUpCreate(
            action_type=action_type,
            action_description=description,
            follow_up_date=scheduled,
            urgency_level=priority if priority in URGENCY_LEVELS else "MEDIUM",
            notes=payload.get("notes"),
            lead_id=payload.get("lead_id"),
            opportunity_id=payload.get("opportunity_id"),
            pipeline_id=payload.get("pipeline_id"),
        )
    except ValueError:
        raise HTTPException(status_code=400, detail="Follow-up details are incomplete.")
    return {"mode": "new", "data": data}


async def _today_followup_or_error(followup_id: str, user: dict, date_ist: str) -> dict:
    followup = await db.daily_follow_ups.find_one({"id": followup_id}, {"_id": 0})
    if not followup or (not is_admin(user) and followup.get("created_by_id") != user["id"]):
        raise HTTPException(status_code=403, detail="Selected follow-up not found or access denied.")

    created = parse_iso(followup.get("created_at"))
    if not created or to_ist(created).strftime("%Y-%m-%d") != date_ist:
        raise HTTPException(status_code=400, detail="The selected follow-up is not scheduled for today.")
    return followup


def _link_note(existing: Optional[str], now: datetime) -> str:
    note = f"Linked with attendance submission on {to_ist(now).strftime('%a, %d %b %H:%M')}"
    if not existing:
        return note
    return existing if note in existing else f"{existing}\n\n{note}"


async def _recent_device_hashes(user_id: str, date_ist: str) -> list:
    since = (datetime.strptime(date_ist, "%Y-%m-%d") - timedelta(days=DEVICE_HISTORY_DAYS)).strftime("%Y-%m-%d")
    records = await db.attendance.find(
        {"user_id": user_id, "date_ist": {"$gte": since, "$lt": date_ist}},
        {"_id": 0, "device_fingerprint": 1}
    ).to_list(100)
    return [r.get("device_fingerprint") for r in records]


async def _get_attendance_or_404(attendance_id: str, user: dict) -> dict:
    record = await db.attendance.find_one({"id": attendance_id}, {"_id": 0})
    if not record:
        raise HTTPException(status_code=404, detail="Attendance record not found")
    if not is_admin(user) and record.get("user_id") != user["id"]:
        raise HTTPException(status_code=403, detail="Access denied")
    return record


def _validation_error(error: str, details: list):
    return HTTPException(status_code=400, detail={"error": error, "details": details})


# ==================== SUBMIT ====================

@router.post("", status_code=201)
async def submit_attendance(
    data: AttendanceSubmit,
    user: dict = Depends(require_permission("attendance.submit"))
):
    now = datetime.now(timezone.utc)
    date_ist = today_ist(now)

    try:
        client_time = parse_iso(data.client_submitted_at)
        exif_taken = parse_iso(data.exif_taken_at)
    except ValueError:
        raise _validation_error(
            "Time validation failed", ["client_submitted_at and exif_taken_at must be ISO 8601 timestamps"]
        )

    follow_up = _parse_follow_up(data.follow_up)
    linked_followup = None
    if follow_up and follow_up["mode"] == "existing":
        linked_followup = await _today_followup_or_error(follow_up["id"], user, date_ist)
    elif follow_up:
        await check_followup_links(follow_up["data"])

    record = {
        "id": str(uuid.uuid4()),
        "user_id": user["id"],
        "user_name": user.get("name"),
        "date_ist": date_ist,
        "submitted_at_utc": now.isoformat(),
        "note": data.note.strip(),
        "timeline_url": data.timeline_url,
        "timeline_screenshot_url": data.timeline_screenshot_url,
        "selfie_url": data.selfie_url,
        "client_lat": data.client_lat,
        "client_lng": data.client_lng,
        "client_accuracy_m": data.client_accuracy_m,
        "client_address": data.client_address,
        "client_city": data.client_city,
        "client_state": data.client_state,
        "client_country": data.client_country,
        "exif_taken_at": exif_taken.isoformat() if exif_taken else None,
        "status": AttendanceStatus.SUBMITTED.value,
    }

    fingerprint = data.device_fingerprint.dict() if data.device_fingerprint else server_fingerprint()
    record["device_fingerprint"] = hash_device_fingerprint(fingerprint)
    record["device_info"] = fingerprint

    validation = await validate_attendance_submission(record, fingerprint, now)
    if not validation.is_valid:
        logger.info(f"[ATTENDANCE] rejected user={user.get('email')} errors={validation.errors}")
        raise _validation_error("Validation failed", validation.errors)

    if not check_client_clock(client_time, now):
        raise _validation_error("Time validation failed", ["Submitted time is too far from server time"])

    flags = []
    if not validate_exif_timestamp(exif_taken, now):
        validation.warnings.append(EXIF_WARNING)
        flags.append("exif_mismatch")

    recent_hashes = await _recent_device_hashes(user["id"], date_ist)
    if check_device_change(record["device_fingerprint"], recent_hashes):
        validation.warnings.append(DEVICE_WARNING)
        flags.append("device_change")

    if flags:
        record["status"] = AttendanceStatus.AUTO_FLAGGED.value
        record["flags"] = flags
    record["warnings"] = validation.warnings

    if await db.attendance.find_one({"user_id": user["id"], "date_ist": date_ist}):
        raise HTTPException(status_code=409, detail="Attendance already submitted for today")

    record["hash"] = generate_record_hash(record)
    try:
        await db.attendance.insert_one(record)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Attendance already submitted for today")
    record.pop("_id", None)

    followup_doc = None
    if follow_up and follow_up["mode"] == "new":
        followup_doc = await create_followup_document(follow_up["data"], user, source="attendance")
        await db.attendance.update_one({"id": record["id"]}, {"$set": {"followup_id": followup_doc["id"]}})
        record["followup_id"] = followup_doc["id"]
    elif linked_followup:
        await db.daily_follow_ups.update_one(
            {"id": linked_followup["id"]},
            {"$set": {
                "notes": _link_note(linked_followup.get("notes"), now),
                "attendance_id": record["id"],
                "updated_at": now_iso(),
            }}
        )
        followup_doc = await db.daily_follow_ups.find_one({"id": linked_followup["id"]}, {"_id": 0})
        await db.attendance.update_one({"id": record["id"]}, {"$set": {"followup_id": linked_followup["id"]}})
        record["followup_id"] = linked_followup["id"]

    await log_event("attendance_submit", "attendance", record["id"], user=user,
                    details={"date_ist": date_ist, "status": record["status"], "flags": flags},
                    related={"followup_id": record.get("followup_id")})
    logger.info(f"[ATTENDANCE] submitted user={user.get('email')} date={date_ist} status={record['status']}")

    return {
        "success": True,
        "attendance": record,
        "warnings": validation.warnings,
        "metadata": validation.metadata,
        "follow_up": followup_doc,
    }


# ==================== READ ====================

@router.get("")
async def list_attendance(
    date: Optional[str] = None,
    user_id: Optional[str] = None,
    user: dict = Depends(get_current_user)
):
    """
    Admin + date (no user_id): the day's board with missing users and a summary.
    Otherwise the caller's own records (admins may pass user_id).
    """
    if is_admin(user) and date and not user_id:
        records = await db.attendance.find({"date_ist": date}, {"_id": 0}).to_list(5000)
        users = await db.users.find(
            {"is_active": {"$ne": False}}, {"_id": 0, "password": 0, "permissions": 0}
        ).to_list(5000)
        submitted_ids = {r["user_id"] for r in records}
        missing = [u for u in users if u["id"] not in submitted_ids]

        def _count(status):
            return len([r for r in records if r.get("status") == status])

        return {
            "date": date,
            "records": records,
            "missing_users": missing,
            "summary": {
                "total_users": len(users),
                "submitted": len(records),
                "approved": _count("APPROVED"),
                "rejected": _count("REJECTED"),
                "flagged": _count("AUTO_FLAGGED"),
                "amended": _count("AMENDED"),
                "missing": len(missing),
            },
        }

    query = {"user_id": user_id if (user_id and is_admin(user)) else user["id"]}
    if date:
        query["date_ist"] = date
    records = await db.attendance.find(query, {"_id": 0}).sort("date_ist", -1).to_list(1000)
    return {"records": records, "count": len(records)}


@router.get("/submitted-today")
async def submitted_today(user: dict = Depends(get_current_user)):
    record = await db.attendance.find_one(
        {"user_id": user["id"], "date_ist": today_ist()}, {"_id": 0}
    )
    return {"submitted": record is not None, "attendance": record}


@router.get("/recent")
async def recent_attendance(
    days: int = Query(7, ge=1, le=90),
    user_id: Optional[str] = None,
    user: dict = Depends(get_current_user)
):
    target = user_id if (user_id and is_admin(user)) else user["id"]
    since = (datetime.strptime(today_ist(), "%Y-%m-%d") - timedelta(days=days - 1)).strftime("%Y-%m-%d")
    records = await db.attendance.find(
        {"user_id": target, "date_ist": {"$gte": since}}, {"_id": 0}
    ).sort("date_ist", -1).to_list(days)
    return {"records": records, "count": len(records), "since": since}


@router.get("/{attendance_id}")
async def get_attendance(attendance_id: str, user: dict = Depends(get_current_user)):
    record = await _get_attendance_or_404(attendance_id, user)
    record["tampered"] = detect_tampering(record)
    if record["tampered"]:
        logger.warning(f"[ATTENDANCE_TAMPER] record={attendance_id} hash mismatch")
    return record


# ==================== AMEND ====================

@router.put("/{attendance_id}")
async def amend_attendance(
    attendance_id: str,
    data: AttendanceAmend,
    user: dict = Depends(require_permission("attendance.submit"))
):
    record = await _get_attendance_or_404(attendance_id, user)
    if record["user_id"] != user["id"]:
        raise HTTPException(status_code=403, detail="Only the owner can amend an attendance record")
    if record["date_ist"] != today_ist():
        raise HTTPException(status_code=400, detail="Only today's attendance can be amended")
    if record.get("status") not in AMENDABLE_STATUSES:
        raise HTTPException(
            status_code=400,
            detail=f"Attendance in status {record.get('status')} cannot be amended"
        )

    changes = {k: v for k, v in data.dict().items() if v is not None}
    if not changes:
        raise HTTPException(status_code=400, detail="No data to update")

    amended = {**record, **changes}
    validation = await validate_attendance_submission(amended, record.get("device_info"))
    if not validation.is_valid:
        raise _validation_error("Validation failed", validation.errors)

    changes.update({
        "status": AttendanceStatus.AMENDED.value,
        "amended_at": now_iso(),
        "previous_status": record.get("status"),
        "warnings": validation.warnings,
    })
    amended.update(changes)
    changes["hash"] = generate_record_hash(amended)

    await db.attendance.update_one({"id": attendance_id}, {"$set": changes})
    await log_event("attendance_amend", "attendance", attendance_id, user=user,
                    details={"fields": sorted(k for k in data.dict() if getattr(data, k) is not None)})

    updated = await db.attendance.find_one({"id": attendance_id}, {"_id": 0})
    return {"success": True, "attendance": updated, "warnings": validation.warnings}


# ==================== REVIEW ====================

@router.post("/approve")
async def review_attendance(
    data: AttendanceApprove,
    user: dict = Depends(require_admin())
):
    target_status = AttendanceStatus.APPROVED.value if data.action == "approve" else AttendanceStatus.REJECTED.value
    now = now_iso()

    records = await db.attendance.find(
        {"id": {"$in": data.attendance_ids}, "status": {"$ne": target_status}}, {"_id": 0}
    ).to_list(len(data.attendance_ids))

    update = {
        "status": target_status,
        "reviewed_by": user["id"],
        "reviewer_name": user.get("name"),
        "reviewed_at": now,
        "review_notes": data.notes,
    }
    if target_status == AttendanceStatus.APPROVED.value:
        update["approved_at"] = now

    updated_ids = [r["id"] for r in records]
    if updated_ids:
        await db.attendance.update_many({"id": {"$in": updated_ids}}, {"$set": update})

    for record in records:
        await log_event(f"attendance_{target_status.lower()}", "attendance", record["id"], user=user,
                        details={"notes": data.notes, "date_ist": record.get("date_ist")})
        owner = await db.users.find_one({"id": record["user_id"]}, {"_id": 0, "password": 0})
        if owner:
            await notify_user(owner, "attendance_reviewed",
                              data={"attendance_id": record["id"], "status": target_status,
                                    "date_ist": record.get("date_ist"), "notes": data.notes})

    done = "approved" if data.action == "approve" else "rejected"
    logger.info(f"[ATTENDANCE_REVIEW] {data.action} {len(updated_ids)} record(s) by {user.get('email')}")
    return {
        "success": True,
        "updated_count": len(updated_ids),
        "message": f"Successfully {done} {len(updated_ids)} attendance record(s)",
    }
