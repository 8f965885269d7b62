"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Sales CRM - Routes Companies                                                ║
║                                                                              ║
║  CRUD for customer companies (shared across the sales team)                  ║
║  Detail view carries contacts + lead / opportunity counts                    ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import re
import uuid
import logging
from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Optional

from config import db, now_iso
from models import CompanyCreate, CompanyUpdate
from services.event_logger import log_event
from services.permissions import require_permission

logger = logging.getLogger("companies")

router = APIRouter(prefix="/companies", tags=["Companies"])


def _name_regex(value: str) -> dict:
    return {"$regex": re.escape(value), "$options": "i"}


@router.get("")
async def list_companies(
    q: Optional[str] = None,
    region: Optional[str] = None,
    industry: Optional[str] = None,
    limit: int = Query(200, le=1000),
    skip: int = 0,
    user: dict = Depends(require_permission("companies.view"))
):
    query = {}
    if q:
        query["name"] = _name_regex(q)
    if region:
        query["region"] = region
    if industry:
        query["industry"] = industry

    companies = await db.companies.find(
        query, {"_id": 0}
    ).sort("name", 1).skip(skip).limit(limit).to_list(limit)
    total = await db.companies.count_documents(query)

    return {"companies": companies, "count": len(companies), "total": total}


@router.get("/search")
async def search_companies(
    q: str = Query(..., min_length=1),
    user: dict = Depends(require_permission("companies.view"))
):
    """Typeahead search, 10 results max"""
    companies = await db.companies.find(
        {"name": _name_regex(q)},
        {"_id": 0, "id": 1, "name": 1, "industry": 1, "region": 1}
    ).sort("name", 1).limit(10).to_list(10)
    return {"companies": companies}


@router.post("", status_code=201)
async def create_company(
    data: CompanyCreate,
    user: dict = Depends(require_permission("companies.edit"))
):
    existing = await db.companies.find_one(
        {"name": {"$regex": f"^{re.escape(data.name)}$", "$options": "i"}}
    )
    if existing:
        raise HTTPException(status_code=409, detail="A company with this name already exists")

    company = {
        "id": str(uuid.uuid4()),
        **data.dict(),
        "created_by_id": user["id"],
        "created_at": now_iso(),
        "updated_at": now_iso(),
    }
    await db.companies.insert_one(company)
    company.pop("_id", None)

    await log_event("company_create", "company", company["id"], user=user,
                    details={"name": company["name"]})
    logger.info(f"[COMPANY] created {company['name']} by {user.get('email')}")

    return {"success": True, "company": company}


@router.get("/{company_id}")
async def get_company(
    company_id: str,
    user: dict = Depends(require_permission("companies.view"))
):
    company = await db.companies.find_one({"id": company_id}, {"_id": 0})
    if not company:
        raise HTTPException(status_code=404, detail="Company not found")

    company["contacts"] = await db.contacts.find(
        {"company_id": company_id}, {"_id": 0}
    ).sort("name", 1).to_list(500)
    company["lead_count"] = await db.leads.count_documents({"company_id": company_id})
    company["opportunity_count"] = await db.opportunities.count_documents({"company_id": company_id})

    return company


@router.put("/{company_id}")
async def update_company(
    company_id: str,
    data: CompanyUpdate,
    user: dict = Depends(require_permission("companies.edit"))
):
    company = await db.companies.find_one({"id": company_id})
    if not company:
        raise HTTPException(status_code=404, detail="Company not found")

    update_data = {k: v for k, v in data.dict().items() if v is not None}
    if not update_data:
        raise HTTPException(status_code=400, detail="No data to update")
    update_data["updated_at"] = now_iso()

    await db.companies.update_one({"id": company_id}, {"$set": update_data})
    await log_event("company_update", "company", company_id, user=user,
                    details={k: v for k, v in update_data.items() if k != "updated_at"})

    updated = await db.companies.find_one({"id": company_id}, {"_id": 0})
    return {"success": True, "company": updated}


@router.delete("/{company_id}")
async def delete_company(
    company_id: str,
    user: dict = Depends(require_permission("companies.delete"))
):
    company = await db.companies.find_one({"id": company_id})
    if not company:
        raise HTTPException(status_code=404, detail="Company not found")

    open_opportunities = await db.opportunities.count_documents({
        "company_id": company_id,
        "stage": {"$nin": ["CLOSED_WON", "CLOSED_LOST"]}
    })
    if open_opportunities:
        raise HTTPException(
            status_code=409,
            detail=f"Company has {open_opportunities} open opportunities"
        )

    await db.contacts.delete_many({"company_id": company_id})
    await db.companies.delete_one({"id": company_id})
    await log_event("company_delete", "company", company_id, user=user,
                    details={"name": company.get("name")})

    return {"success": True}
