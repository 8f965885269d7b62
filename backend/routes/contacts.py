"""
Sales CRM - Routes Contacts
People at a customer company. Titles feed the decision-maker check of the
opportunity scoring.
"""

import uuid
from fastapi import APIRouter, Depends, HTTPException
from typing import Optional

from config import db, now_iso
from models import ContactCreate, ContactUpdate
from services.permissions import require_permission

router = APIRouter(prefix="/contacts", tags=["Contacts"])


@router.get("")
async def list_contacts(
    company_id: Optional[str] = None,
    user: dict = Depends(require_permission("companies.view"))
):
    query = {"company_id": company_id} if company_id else {}
    contacts = await db.contacts.find(query, {"_id": 0}).sort("name", 1).to_list(1000)
    return {"contacts": contacts, "count": len(contacts)}


@router.post("", status_code=201)
async def create_contact(
    data: ContactCreate,
    user: dict = Depends(require_permission("companies.edit"))
):
    if not await db.companies.find_one({"id": data.company_id}):
        raise HTTPException(status_code=404, detail="Company not found")

    contact = {
        "id": str(uuid.uuid4()),
        **data.dict(),
        "created_by_id": user["id"],
        "created_at": now_iso(),
        "updated_at": now_iso(),
    }
    await db.contacts.insert_one(contact)
    contact.pop("_id", None)
    return {"success": True, "contact": contact}


@router.put("/{contact_id}")
async def update_contact(
    contact_id: str,
    data: ContactUpdate,
    user: dict = Depends(require_permission("companies.edit"))
):
    if not await db.contacts.find_one({"id": contact_id}):
        raise HTTPException(status_code=404, detail="Contact not found")

    update_data = {k: v for k, v in data.dict().items() if v is not None}
    if not update_data:
        raise HTTPException(status_code=400, detail="No data to update")
    update_data["updated_at"] = now_iso()

    await db.contacts.update_one({"id": contact_id}, {"$set": update_data})
    updated = await db.contacts.find_one({"id": contact_id}, {"_id": 0})
    return {"success": True, "contact": updated}


@router.delete("/{contact_id}")
async def delete_contact(
    contact_id: str,
    user: dict = Depends(require_permission("companies.edit"))
):
    result = await db.contacts.delete_one({"id": contact_id})
    if not result.deleted_count:
        raise HTTPException(status_code=404, detail="Contact not found")
    return {"success": True}
