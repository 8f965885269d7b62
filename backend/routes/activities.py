"""
Sales CRM - Routes Activities
Logged sales touchpoints (calls, emails, meetings, site visits, notes).
Activity counts drive the relationship strength used by scoring and segmentation.
"""

import uuid
from datetime import datetime, timezone
from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Optional

from config import db, now_iso
from models import ActivityCreate, ACTIVITY_TYPES
from services.permissions import require_permission, owner_filter
from services.weighted_pipeline import resolve_period_start

router = APIRouter(prefix="/activities", tags=["Activities"])


@router.get("")
async def list_activities(
    type: Optional[str] = None,
    lead_id: Optional[str] = None,
    opportunity_id: Optional[str] = None,
    company_id: Optional[str] = None,
    limit: int = 100,
    skip: int = 0,
    user: dict = Depends(require_permission("leads.view"))
):
    query = owner_filter(user, field="user_id")
    if type:
        query["type"] = type.upper()
    if lead_id:
        query["lead_id"] = lead_id
    if opportunity_id:
        query["opportunity_id"] = opportunity_id
    if company_id:
        query["company_id"] = company_id

    activities = await db.activities.find(
        query, {"_id": 0}
    ).sort("occurred_at", -1).skip(skip).limit(limit).to_list(limit)
    total = await db.activities.count_documents(query)

    return {"activities": activities, "count": len(activities), "total": total}


@router.post("", status_code=201)
async def create_activity(
    data: ActivityCreate,
    user: dict = Depends(require_permission("leads.edit"))
):
    if not (data.lead_id or data.opportunity_id or data.company_id):
        raise HTTPException(status_code=400, detail="An activity must be linked to a lead, opportunity or company")

    company_id = data.company_id
    if data.opportunity_id:
        opportunity = await db.opportunities.find_one({"id": data.opportunity_id}, {"_id": 0})
        if not opportunity:
            raise HTTPException(status_code=400, detail="Opportunity not found")
        company_id = company_id or opportunity.get("company_id")
    if data.lead_id:
        lead = await db.leads.find_one({"id": data.lead_id}, {"_id": 0})
        if not lead:
            raise HTTPException(status_code=400, detail="Lead not found")
        company_id = company_id or lead.get("company_id")

    now = now_iso()
    activity = {
        "id": str(uuid.uuid4()),
        **data.dict(),
        "company_id": company_id,
        "occurred_at": data.occurred_at or now,
        "user_id": user["id"],
        "created_at": now,
    }
    await db.activities.insert_one(activity)
    activity.pop("_id", None)

    # Keep the linked opportunity "active" for the weighted probability decay
    if data.opportunity_id:
        await db.opportunities.update_one(
            {"id": data.opportunity_id}, {"$set": {"last_activity_at": activity["occurred_at"]}}
        )

    return {"success": True, "activity": activity}


@router.get("/summary")
async def activity_summary(
    period: str = Query("month", pattern="^(week|month|quarter|year)$"),
    user: dict = Depends(require_permission("leads.view"))
):
    since = resolve_period_start(period, datetime.now(timezone.utc)).isoformat()
    query = owner_filter(user, field="user_id")
    query["occurred_at"] = {"$gte": since}

    by_type = {t: 0 for t in ACTIVITY_TYPES}
    activities = await db.activities.find(query, {"_id": 0, "type": 1}).to_list(10000)
    for activity in activities:
        by_type[activity["type"]] = by_type.get(activity["type"], 0) + 1

    return {"period": period, "since": since, "total": len(activities), "by_type": by_type}
