"""
Sales CRM - Routes Event Log (audit trail)
"""

import re
from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Optional
from config import db
from services.permissions import require_permission

router = APIRouter(prefix="/event-log", tags=["EventLog"])


@router.get("")
async def list_events(
    action: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    user: Optional[str] = Query(None, alias="user_filter"),
    search: Optional[str] = None,
    limit: int = 100,
    skip: int = 0,
    current_user: dict = Depends(require_permission("activity.view"))
):
    """List events with filters"""
    query = {}
    clauses = []
    if action:
        query["action"] = action
    if entity_type:
        query["entity_type"] = entity_type
    if entity_id:
        clauses.append({"$or": [
            {"entity_id": entity_id},
            {"related.lead_id": entity_id},
            {"related.opportunity_id": entity_id},
            {"related.company_id": entity_id},
            {"related.followup_id": entity_id}
        ]})
    if user:
        query["user"] = {"$regex": re.escape(user), "$options": "i"}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        clauses.append({"$or": [
            {"action": pattern},
            {"details.reason": pattern},
            {"user": pattern}
        ]})
    if clauses:
        query["$and"] = clauses

    events = await db.event_log.find(
        query, {"_id": 0}
    ).sort("created_at", -1).skip(skip).limit(limit).to_list(limit)

    total = await db.event_log.count_documents(query)

    return {"events": events, "count": len(events), "total": total}


@router.get("/actions")
async def list_action_types(
    current_user: dict = Depends(require_permission("activity.view"))
):
    """Distinct action types present in the log"""
    actions = await db.event_log.distinct("action")
    return {"actions": sorted(actions)}


@router.get("/{event_id}")
async def get_event(
    event_id: str,
    current_user: dict = Depends(require_permission("activity.view"))
):
    event = await db.event_log.find_one({"id": event_id}, {"_id": 0})
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    return event
