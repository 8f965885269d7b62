"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Sales CRM - Routes Opportunities                                            ║
║                                                                              ║
║  Owner-scoped CRUD on deals + multi-factor scoring                           ║
║  probability is stored as a percentage (0-100)                               ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import uuid
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Optional, List

from config import db, now_iso, parse_iso
from models import OpportunityCreate, OpportunityUpdate, ScoringCriteria
from services.event_logger import log_event
from services.permissions import require_permission, owner_filter, ensure_owner
from services.weighted_pipeline import deal_from_opportunity, calculate_expected_close_date
from services.opportunity_scoring import (
    CLOSED_STAGES,
    calculate_opportunity_score,
    criteria_from_opportunity,
    score_opportunities,
    sort_by_priority,
    sort_by_risk,
    sort_by_score,
    filter_by_priority,
    calculate_portfolio_metrics,
)
from services.sales_insights import (
    categorize_deal_value,
    calculate_urgency_level,
    assess_deal_health,
    calculate_conversion_probability,
    calculate_days_to_deadline,
    generate_next_action_recommendations,
)

logger = logging.getLogger("opportunities")

router = APIRouter(prefix="/opportunities", tags=["Opportunities"])

_SORTERS = {"score": sort_by_score, "priority": sort_by_priority, "risk": sort_by_risk}


async def _get_opportunity_or_404(opportunity_id: str, user: dict) -> dict:
    opportunity = await db.opportunities.find_one({"id": opportunity_id}, {"_id": 0})
    if not opportunity:
        raise HTTPException(status_code=404, detail="Opportunity not found")
    ensure_owner(user, opportunity)
    return opportunity


async def _scoring_context(opportunity: dict, now: datetime) -> dict:
    """Contacts, activity count and overdue follow-ups feeding the scoring criteria"""
    contacts = []
    if opportunity.get("company_id"):
        contacts = await db.contacts.find(
            {"company_id": opportunity["company_id"]}, {"_id": 0}
        ).to_list(200)
    activity_count = await db.activities.count_documents({"opportunity_id": opportunity["id"]})
    overdue = await db.daily_follow_ups.count_documents({
        "opportunity_id": opportunity["id"],
        "status": "SCHEDULED",
        "follow_up_date": {"$lt": now.isoformat()},
    })
    return criteria_from_opportunity(opportunity, contacts, activity_count, overdue, now)


def _sales_insights(opportunity: dict, followups: List[dict], now: datetime) -> dict:
    value = opportunity.get("deal_size") or 0
    category = categorize_deal_value(value)
    days_to_deadline = None
    if opportunity.get("expected_close_date"):
        days_to_deadline = calculate_days_to_deadline(opportunity["expected_close_date"], now)
    urgency = calculate_urgency_level(days_to_deadline, category)

    touched = [f.get("completed_at") or f.get("created_at") for f in followups]
    touched.append(opportunity.get("updated_at"))
    last_touch = max(t for t in touched if t)
    last_activity_days = max(0, (now - parse_iso(last_touch)).days)
    created = parse_iso(opportunity.get("created_at")) or now
    status = "CLOSED" if opportunity.get("stage") in CLOSED_STAGES else "ONGOING"

    return {
        "deal_category": category,
        "urgency_level": urgency,
        "days_to_deadline": days_to_deadline,
        "deal_health": assess_deal_health(status, last_activity_days, len(followups)),
        "conversion_probability": calculate_conversion_probability(
            category, (now - created).days, len(followups), last_activity_days, urgency
        ),
        "next_actions": generate_next_action_recommendations(
            status, last_activity_days, len(followups), value, urgency
        ),
    }


# ==================== SCORING ====================

@router.get("/scoring")
async def score_open_opportunities(
    sort_by: str = Query("score", pattern="^(score|priority|risk)$"),
    priority: Optional[str] = None,
    user: dict = Depends(require_permission("opportunities.view"))
):
    """Score every open opportunity visible to the user"""
    now = datetime.now(timezone.utc)
    query = owner_filter(user)
    query["stage"] = {"$nin": list(CLOSED_STAGES)}
    opportunities = await db.opportunities.find(query, {"_id": 0}).to_list(1000)

    items = []
    for opp in opportunities:
        items.append({
            "id": opp["id"],
            "name": opp.get("name"),
            "criteria": await _scoring_context(opp, now),
        })

    scored = _SORTERS[sort_by](score_opportunities(items))
    if priority:
        scored = filter_by_priority(scored, priority.upper())

    return {
        "opportunities": scored,
        "count": len(scored),
        "portfolio": calculate_portfolio_metrics(scored),
    }


@router.post("/scoring")
async def score_posted_criteria(
    criteria: List[ScoringCriteria],
    user: dict = Depends(require_permission("opportunities.view"))
):
    items = [
        {"id": c.id, "name": c.name, "criteria": c.dict(exclude={"id", "name"})}
        for c in criteria
    ]
    scored = sort_by_score(score_opportunities(items))
    return {"opportunities": scored, "portfolio": calculate_portfolio_metrics(scored)}


# ==================== CRUD ====================

@router.get("")
async def list_opportunities(
    stage: Optional[str] = None,
    company_id: Optional[str] = None,
    open_only: bool = False,
    limit: int = 200,
    skip: int = 0,
    user: dict = Depends(require_permission("opportunities.view"))
):
    query = owner_filter(user)
    if stage:
        query["stage"] = stage
    elif open_only:
        query["stage"] = {"$nin": list(CLOSED_STAGES)}
    if company_id:
        query["company_id"] = company_id

    opportunities = await db.opportunities.find(
        query, {"_id": 0}
    ).sort("updated_at", -1).skip(skip).limit(limit).to_list(limit)
    total = await db.opportunities.count_documents(query)

    return {"opportunities": opportunities, "count": len(opportunities), "total": total}


@router.post("", status_code=201)
async def create_opportunity(
    data: OpportunityCreate,
    user: dict = Depends(require_permission("opportunities.edit"))
):
    if data.company_id and not await db.companies.find_one({"id": data.company_id}):
        raise HTTPException(status_code=400, detail="Company not found")

    now = datetime.now(timezone.utc)
    opportunity = {
        "id": str(uuid.uuid4()),
        **data.dict(),
        "owner_id": user["id"],
        "stage_changed_at": now.isoformat(),
        "created_at": now.isoformat(),
        "updated_at": now.isoformat(),
    }
    if not opportunity["expected_close_date"]:
        opportunity["expected_close_date"] = calculate_expected_close_date(data.stage, now).isoformat()
    if data.stage == "CLOSED_WON":
        opportunity["won_date"] = now.isoformat()

    await db.opportunities.insert_one(opportunity)
    opportunity.pop("_id", None)

    await log_event("opportunity_create", "opportunity", opportunity["id"], user=user,
                    details={"name": opportunity["name"], "stage": opportunity["stage"]},
                    related={"company_id": opportunity.get("company_id")})
    return {"success": True, "opportunity": opportunity}


@router.get("/{opportunity_id}")
async def get_opportunity(
    opportunity_id: str,
    user: dict = Depends(require_permission("opportunities.view"))
):
    opportunity = await _get_opportunity_or_404(opportunity_id, user)
    now = datetime.now(timezone.utc)

    followups = await db.daily_follow_ups.find(
        {"opportunity_id": opportunity_id}, {"_id": 0}
    ).sort("follow_up_date", -1).to_list(200)

    opportunity["followups"] = followups
    opportunity["weighted"] = deal_from_opportunity(opportunity, now=now)
    opportunity["score"] = calculate_opportunity_score(await _scoring_context(opportunity, now))
    opportunity["sales_insights"] = _sales_insights(opportunity, followups, now)
    return opportunity


@router.put("/{opportunity_id}")
async def update_opportunity(
    opportunity_id: str,
    data: OpportunityUpdate,
    user: dict = Depends(require_permission("opportunities.edit"))
):
    opportunity = await _get_opportunity_or_404(opportunity_id, user)

    update_data = {k: v for k, v in data.dict().items() if v is not None}
    if not update_data:
        raise HTTPException(status_code=400, detail="No data to update")

    now = now_iso()
    new_stage = update_data.get("stage")
    if new_stage and new_stage != opportunity.get("stage"):
        update_data["stage_changed_at"] = now
        if new_stage == "CLOSED_WON":
            update_data["won_date"] = now
            update_data["probability"] = 100
        elif new_stage == "CLOSED_LOST":
            update_data["probability"] = 0
    update_data["updated_at"] = now

    await db.opportunities.update_one({"id": opportunity_id}, {"$set": update_data})

    if "stage_changed_at" in update_data:
        await log_event("stage_change", "opportunity", opportunity_id, user=user,
                        details={"old_value": opportunity.get("stage"), "new_value": new_stage,
                                 "reason": update_data.get("lost_reason")})
        logger.info(f"[STAGE] opportunity={opportunity_id} {opportunity.get('stage')} -> {new_stage}")

    updated = await db.opportunities.find_one({"id": opportunity_id}, {"_id": 0})
    return {"success": True, "opportunity": updated}


@router.delete("/{opportunity_id}")
async def delete_opportunity(
    opportunity_id: str,
    user: dict = Depends(require_permission("opportunities.delete"))
):
    opportunity = await _get_opportunity_or_404(opportunity_id, user)
    await db.opportunities.delete_one({"id": opportunity_id})
    await db.leads.update_many(
        {"converted_opportunity_id": opportunity_id},
        {"$set": {"converted_opportunity_id": None, "updated_at": now_iso()}}
    )
    await log_event("opportunity_delete", "opportunity", opportunity_id, user=user,
                    details={"name": opportunity.get("name")})
    return {"success": True}
