"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Sales CRM - Routes Leads                                                    ║
║                                                                              ║
║  Owner-scoped CRUD + conversion into an opportunity                          ║
║  A lead converts once: converted_opportunity_id is the lock                  ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import re
import uuid
import logging
from datetime import datetime, timezone, timedelta
from fastapi import APIRouter, Depends, HTTPException, Body
from typing import Optional

from config import db, now_iso
from models import LeadCreate, LeadUpdate, LeadConvert, LeadStatus
from services.event_logger import log_event
from services.permissions import require_permission, owner_filter, ensure_owner
from services.weighted_pipeline import DealStage, calculate_expected_close_date

logger = logging.getLogger("leads")

router = APIRouter(prefix="/leads", tags=["Leads"])

CONVERSION_FOLLOWUP_DAYS = 7
CONVERSION_PROBABILITY = 25


async def _get_lead_or_404(lead_id: str, user: dict) -> dict:
    lead = await db.leads.find_one({"id": lead_id}, {"_id": 0})
    if not lead:
        raise HTTPException(status_code=404, detail="Lead not found")
    ensure_owner(user, lead)
    return lead


async def _check_company(company_id: Optional[str]):
    if company_id and not await db.companies.find_one({"id": company_id}):
        raise HTTPException(status_code=400, detail="Company not found")


@router.get("")
async def list_leads(
    status: Optional[str] = None,
    company_id: Optional[str] = None,
    q: Optional[str] = None,
    limit: int = 200,
    skip: int = 0,
    user: dict = Depends(require_permission("leads.view"))
):
    query = owner_filter(user)
    if status:
        query["status"] = status
    if company_id:
        query["company_id"] = company_id
    if q:
        pattern = {"$regex": re.escape(q), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"contact_name": pattern}, {"email": pattern}]

    leads = await db.leads.find(
        query, {"_id": 0}
    ).sort("created_at", -1).skip(skip).limit(limit).to_list(limit)
    total = await db.leads.count_documents(query)

    return {"leads": leads, "count": len(leads), "total": total}


@router.post("", status_code=201)
async def create_lead(
    data: LeadCreate,
    user: dict = Depends(require_permission("leads.edit"))
):
    await _check_company(data.company_id)

    lead = {
        "id": str(uuid.uuid4()),
        **data.dict(),
        "owner_id": user["id"],
        "converted_opportunity_id": None,
        "created_at": now_iso(),
        "updated_at": now_iso(),
    }
    await db.leads.insert_one(lead)
    lead.pop("_id", None)

    await log_event("lead_create", "lead", lead["id"], user=user,
                    details={"name": lead["name"], "source": lead["source"]},
                    related={"company_id": lead.get("company_id")})
    return {"success": True, "lead": lead}


@router.get("/{lead_id}")
async def get_lead(
    lead_id: str,
    user: dict = Depends(require_permission("leads.view"))
):
    lead = await _get_lead_or_404(lead_id, user)
    if lead.get("company_id"):
        lead["company"] = await db.companies.find_one({"id": lead["company_id"]}, {"_id": 0})
    return lead


@router.put("/{lead_id}")
async def update_lead(
    lead_id: str,
    data: LeadUpdate,
    user: dict = Depends(require_permission("leads.edit"))
):
    lead = await _get_lead_or_404(lead_id, user)

    update_data = {k: v for k, v in data.dict().items() if v is not None}
    if not update_data:
        raise HTTPException(status_code=400, detail="No data to update")
    await _check_company(update_data.get("company_id"))
    update_data["updated_at"] = now_iso()

    await db.leads.update_one({"id": lead_id}, {"$set": update_data})

    if "status" in update_data and update_data["status"] != lead.get("status"):
        await log_event("lead_status_change", "lead", lead_id, user=user,
                        details={"old_value": lead.get("status"), "new_value": update_data["status"]})

    updated = await db.leads.find_one({"id": lead_id}, {"_id": 0})
    return {"success": True, "lead": updated}


@router.delete("/{lead_id}")
async def delete_lead(
    lead_id: str,
    user: dict = Depends(require_permission("leads.delete"))
):
    lead = await _get_lead_or_404(lead_id, user)
    await db.leads.delete_one({"id": lead_id})
    await log_event("lead_delete", "lead", lead_id, user=user, details={"name": lead.get("name")})
    return {"success": True}


# ==================== CONVERSION ====================

@router.post("/{lead_id}/convert", status_code=201)
async def convert_lead(
    lead_id: str,
    data: Optional[LeadConvert] = Body(None),
    user: dict = Depends(require_permission("opportunities.edit"))
):
    """
    Convert a lead into an opportunity.

    Defaults: "<lead> - Opportunity", PROSPECTING, 25%, follow-up in 7 days.
    The lead moves to QUALIFIED and keeps the opportunity id.
    """
    lead = await _get_lead_or_404(lead_id, user)
    if lead.get("converted_opportunity_id"):
        raise HTTPException(status_code=409, detail="Lead has already been converted")

    data = data or LeadConvert()
    now = datetime.now(timezone.utc)
    stage = data.stage or DealStage.PROSPECTING.value

    opportunity = {
        "id": str(uuid.uuid4()),
        "name": data.name or f"{lead['name']} - Opportunity",
        "company_id": lead.get("company_id"),
        "lead_id": lead_id,
        "owner_id": lead.get("owner_id", user["id"]),
        "deal_size": data.deal_size if data.deal_size is not None else (lead.get("estimated_value") or 0),
        "probability": data.probability if data.probability is not None else CONVERSION_PROBABILITY,
        "stage": stage,
        "stage_changed_at": now.isoformat(),
        "expected_close_date": data.expected_close_date or calculate_expected_close_date(stage, now).isoformat(),
        "next_followup_date": data.next_followup_date or (now + timedelta(days=CONVERSION_FOLLOWUP_DAYS)).isoformat(),
        "competitors": [],
        "budget_approved": False,
        "notes": lead.get("notes"),
        "created_at": now.isoformat(),
        "updated_at": now.isoformat(),
    }
    await db.opportunities.insert_one(opportunity)
    opportunity.pop("_id", None)

    # Guarded update: a concurrent conversion loses here
    result = await db.leads.update_one(
        {"id": lead_id, "converted_opportunity_id": None},
        {"$set": {
            "status": LeadStatus.QUALIFIED.value,
            "converted_opportunity_id": opportunity["id"],
            "converted_at": now.isoformat(),
            "updated_at": now.isoformat(),
        }}
    )
    if not result.modified_count:
        await db.opportunities.delete_one({"id": opportunity["id"]})
        raise HTTPException(status_code=409, detail="Lead has already been converted")

    await log_event("lead_convert", "lead", lead_id, user=user,
                    details={"opportunity_name": opportunity["name"]},
                    related={"opportunity_id": opportunity["id"], "company_id": lead.get("company_id")})
    logger.info(f"[LEAD_CONVERT] lead={lead_id} -> opportunity={opportunity['id']}")

    updated_lead = await db.leads.find_one({"id": lead_id}, {"_id": 0})
    return {"success": True, "lead": updated_lead, "opportunity": opportunity}
