"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Sales CRM - Routes Daily Follow-ups                                         ║
║                                                                              ║
║  Scheduled touchpoints (call, email, meeting, ...) linked to a lead,         ║
║  an opportunity or a pipeline. Listing enriches every follow-up with         ║
║  overdue state, priority, effectiveness and notification timing.             ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import uuid
import logging
from datetime import datetime, timezone, timedelta
from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Optional, List

from config import db, now_iso
from models import FollowUpCreate, FollowUpUpdate, OverdueAcknowledge
from services.event_logger import log_event
from services.permissions import require_permission, is_admin, ensure_owner
from services.sales_insights import (
    DEFAULT_COMPLETION_MINUTES,
    enrich_followup,
    followup_analytics,
    calculate_followup_effectiveness,
    calculate_days_to_deadline,
    generate_next_action_recommendations,
)

logger = logging.getLogger("followups")

router = APIRouter(prefix="/daily-followups", tags=["Follow-ups"])

_PERIOD_DAYS = {"week": 7, "month": 30, "year": 365}


async def _get_followup_or_404(followup_id: str, user: dict) -> dict:
    followup = await db.daily_follow_ups.find_one({"id": followup_id}, {"_id": 0})
    if not followup:
        raise HTTPException(status_code=404, detail="Follow-up not found")
    ensure_owner(user, followup, field="created_by_id")
    return followup


async def linked_names_for(followups: List[dict]) -> dict:
    """{"lead": {id: name}, "opportunity": {...}, "pipeline": {...}} for the linked records"""
    names = {}
    for key, collection in (("lead", db.leads), ("opportunity", db.opportunities), ("pipeline", db.pipelines)):
        ids = list({f[f"{key}_id"] for f in followups if f.get(f"{key}_id")})
        if not ids:
            continue
        docs = await collection.find({"id": {"$in": ids}}, {"_id": 0, "id": 1, "name": 1}).to_list(len(ids))
        names[key] = {d["id"]: d.get("name") for d in docs}
    return names


async def check_followup_links(data: FollowUpCreate):
    if data.lead_id and not await db.leads.find_one({"id": data.lead_id}):
        raise HTTPException(status_code=400, detail="Linked lead not found")
    if data.opportunity_id and not await db.opportunities.find_one({"id": data.opportunity_id}):
        raise HTTPException(status_code=400, detail="Linked opportunity not found")
    if data.pipeline_id and not await db.pipelines.find_one({"id": data.pipeline_id}):
        raise HTTPException(status_code=400, detail="Linked pipeline not found")


async def create_followup_document(data: FollowUpCreate, user: dict, source: str = "manual") -> dict:
    """Validate links and insert a SCHEDULED follow-up (shared with attendance)"""
    await check_followup_links(data)

    now = now_iso()
    followup = {
        "id": str(uuid.uuid4()),
        **data.dict(),
        "assigned_to": data.assigned_to or user.get("name") or user.get("email"),
        "status": "SCHEDULED",
        "created_by_id": user["id"],
        "source": source,
        "overdue_notified": False,
        "created_at": now,
        "updated_at": now,
    }
    await db.daily_follow_ups.insert_one(followup)
    followup.pop("_id", None)

    await _sync_next_followup(followup, followup["follow_up_date"])
    await log_event("followup_create", "followup", followup["id"], user=user,
                    details={"action_type": followup["action_type"], "source": source},
                    related={"lead_id": followup.get("lead_id"),
                             "opportunity_id": followup.get("opportunity_id")})
    return followup


async def _sync_next_followup(followup: dict, date: str):
    """Mirror the next follow-up date onto the linked lead / opportunity"""
    if followup.get("lead_id"):
        await db.leads.update_one({"id": followup["lead_id"]}, {"$set": {"next_followup_date": date}})
    if followup.get("opportunity_id"):
        await db.opportunities.update_one(
            {"id": followup["opportunity_id"]}, {"$set": {"next_followup_date": date}}
        )


# ==================== LIST ====================

@router.get("")
async def list_followups(
    status: Optional[str] = None,
    assigned_to: Optional[str] = None,
    user_id: Optional[str] = None,
    lead_id: Optional[str] = None,
    opportunity_id: Optional[str] = None,
    company_id: Optional[str] = None,
    period: Optional[str] = Query(None, pattern="^(week|month|year)$"),
    show_overdue: bool = False,
    require_acknowledgement: bool = False,
    user: dict = Depends(require_permission("followups.view"))
):
    now = datetime.now(timezone.utc)
    query = {}
    if not is_admin(user):
        query["created_by_id"] = user["id"]
    elif user_id:
        query["created_by_id"] = user_id

    if status and status != "all":
        query["status"] = status
    if assigned_to:
        query["assigned_to"] = assigned_to
    if lead_id:
        query["lead_id"] = lead_id
    if opportunity_id:
        query["opportunity_id"] = opportunity_id
    if company_id:
        query["company_id"] = company_id
    if period:
        query["follow_up_date"] = {"$gte": (now - timedelta(days=_PERIOD_DAYS[period])).isoformat()}

    docs = await db.daily_follow_ups.find(query, {"_id": 0}).sort("created_at", -1).to_list(2000)
    names = await linked_names_for(docs)
    followups = [enrich_followup(d, now, names) for d in docs]

    if show_overdue:
        followups = [f for f in followups if f["is_overdue"]]
    if require_acknowledgement:
        followups = [f for f in followups if f["is_overdue"] and not f.get("overdue_acknowledged_at")]

    return {
        "followups": followups,
        "count": len(followups),
        "analytics": followup_analytics(followups),
    }


# ==================== CREATE / UPDATE / DELETE ====================

@router.post("", status_code=201)
async def create_followup(
    data: FollowUpCreate,
    user: dict = Depends(require_permission("followups.edit"))
):
    followup = await create_followup_document(data, user)
    names = await linked_names_for([followup])
    return {"success": True, "followup": enrich_followup(followup, linked_names=names)}


@router.put("/{followup_id}")
async def update_followup(
    followup_id: str,
    data: FollowUpUpdate,
    user: dict = Depends(require_permission("followups.edit"))
):
    existing = await _get_followup_or_404(followup_id, user)

    update_data = {k: v for k, v in data.dict().items() if v is not None}
    update_data.pop("completion_minutes", None)
    update_data.pop("deal_value", None)

    effective_status = update_data.get("status", existing.get("status"))
    effectiveness = existing.get("effectiveness_score")
    if effective_status == "COMPLETED" and not effectiveness:
        effectiveness = calculate_followup_effectiveness(
            update_data.get("response_received", existing.get("response_received", False)),
            update_data.get("response_quality") or existing.get("response_quality") or "GOOD",
            data.completion_minutes if data.completion_minutes is not None else DEFAULT_COMPLETION_MINUTES,
            update_data.get("action_type", existing.get("action_type")),
            data.deal_value or existing.get("deal_value") or 0,
        )
        update_data["effectiveness_score"] = effectiveness
    if effective_status == "COMPLETED" and existing.get("status") != "COMPLETED":
        update_data["completed_at"] = now_iso()

    update_data["updated_at"] = now_iso()
    await db.daily_follow_ups.update_one({"id": followup_id}, {"$set": update_data})

    if data.next_action_date:
        await _sync_next_followup(existing, data.next_action_date)
    if "completed_at" in update_data:
        await log_event("followup_complete", "followup", followup_id, user=user,
                        details={"effectiveness_score": effectiveness},
                        related={"lead_id": existing.get("lead_id"),
                                 "opportunity_id": existing.get("opportunity_id")})

    days_ahead = calculate_days_to_deadline(data.next_action_date) if data.next_action_date else 0
    recommendations = generate_next_action_recommendations(
        effective_status, days_ahead, 1, 0,
        "LOW" if effective_status == "COMPLETED" else "MEDIUM"
    )

    updated = await db.daily_follow_ups.find_one({"id": followup_id}, {"_id": 0})
    return {
        "success": True,
        "followup": updated,
        "effectiveness_score": effectiveness,
        "recommendations": recommendations,
        "analytics": {
            "status": effective_status,
            "effectiveness": f"{effectiveness}% effective" if effectiveness else "Not rated",
            "next_action": data.next_action_date or "No follow-up needed",
        },
    }


@router.post("/{followup_id}/acknowledge-overdue")
async def acknowledge_overdue(
    followup_id: str,
    data: OverdueAcknowledge,
    user: dict = Depends(require_permission("followups.edit"))
):
    await _get_followup_or_404(followup_id, user)

    await db.daily_follow_ups.update_one(
        {"id": followup_id},
        {"$set": {
            "overdue_reason": data.reason,
            "overdue_acknowledged_at": now_iso(),
            "overdue_acknowledged_by": user["id"],
            "updated_at": now_iso(),
        }}
    )
    await log_event("followup_overdue_ack", "followup", followup_id, user=user,
                    details={"reason": data.reason})

    updated = await db.daily_follow_ups.find_one({"id": followup_id}, {"_id": 0})
    return {"success": True, "followup": updated}


@router.delete("/{followup_id}")
async def delete_followup(
    followup_id: str,
    user: dict = Depends(require_permission("followups.edit"))
):
    await _get_followup_or_404(followup_id, user)
    await db.daily_follow_ups.delete_one({"id": followup_id})
    await log_event("followup_delete", "followup", followup_id, user=user)
    return {"success": True}
