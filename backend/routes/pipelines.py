"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Sales CRM - Routes Pipelines                                                ║
║                                                                              ║
║  Fulfilment pipelines (order -> delivery -> payment) + weighted view         ║
║  GET  /pipelines/weighted   deals, metrics, recommendations for a period     ║
║  POST /pipelines/weighted   move an opportunity to another stage             ║
║  PUT  /pipelines/weighted   move a pipeline to another status                ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import uuid
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Optional

from config import db, now_iso
from models import PipelineCreate, PipelineUpdate, WeightedStageUpdate, WeightedStatusUpdate
from services.event_logger import log_event
from services.permissions import require_permission, owner_filter, ensure_owner
from services.weighted_pipeline import (
    deal_from_pipeline,
    generate_pipeline_metrics,
    generate_recommendations,
    calculate_expected_close_date,
    resolve_period_start,
)

logger = logging.getLogger("pipelines")

router = APIRouter(prefix="/pipelines", tags=["Pipelines"])


async def _get_pipeline_or_404(pipeline_id: str, user: dict) -> dict:
    pipeline = await db.pipelines.find_one({"id": pipeline_id}, {"_id": 0})
    if not pipeline:
        raise HTTPException(status_code=404, detail="Pipeline not found")
    ensure_owner(user, pipeline)
    return pipeline


# ==================== WEIGHTED PIPELINE ====================

@router.get("/weighted")
async def get_weighted_pipeline(
    period: str = Query("month", pattern="^(week|month|quarter|year)$"),
    user: dict = Depends(require_permission("pipelines.view"))
):
    now = datetime.now(timezone.utc)
    since = resolve_period_start(period, now).isoformat()

    query = owner_filter(user)
    query["$or"] = [{"updated_at": {"$gte": since}}, {"order_date": {"$gte": since}}]
    pipelines = await db.pipelines.find(query, {"_id": 0}).to_list(2000)

    deals = [deal_from_pipeline(p, now) for p in pipelines]
    metrics = generate_pipeline_metrics(deals, now)

    return {
        "deals": deals,
        "metrics": metrics,
        "recommendations": generate_recommendations(metrics, deals),
        "period": period,
    }


@router.post("/weighted")
async def update_opportunity_stage(
    data: WeightedStageUpdate,
    user: dict = Depends(require_permission("opportunities.edit"))
):
    opportunity = await db.opportunities.find_one({"id": data.opportunity_id}, {"_id": 0})
    if not opportunity:
        raise HTTPException(status_code=404, detail="Opportunity not found")
    ensure_owner(user, opportunity)

    now = datetime.now(timezone.utc)
    update_data = {
        "stage": data.stage,
        "expected_close_date": data.expected_close_date
        or calculate_expected_close_date(data.stage, now).isoformat(),
        "updated_at": now.isoformat(),
    }
    if data.stage != opportunity.get("stage"):
        update_data["stage_changed_at"] = now.isoformat()
        if data.stage == "CLOSED_WON":
            update_data["won_date"] = now.isoformat()
            update_data["probability"] = 100
        elif data.stage == "CLOSED_LOST":
            update_data["probability"] = 0
            if data.lost_reason:
                update_data["lost_reason"] = data.lost_reason

    await db.opportunities.update_one({"id": data.opportunity_id}, {"$set": update_data})
    await log_event("stage_change", "opportunity", data.opportunity_id, user=user,
                    details={"old_value": opportunity.get("stage"), "new_value": data.stage,
                             "reason": data.lost_reason})

    updated = await db.opportunities.find_one({"id": data.opportunity_id}, {"_id": 0})
    return {"success": True, "opportunity": updated}


@router.put("/weighted")
async def update_pipeline_status(
    data: WeightedStatusUpdate,
    user: dict = Depends(require_permission("pipelines.edit"))
):
    pipeline = await _get_pipeline_or_404(data.pipeline_id, user)

    update_data = {"status": data.status, "updated_at": now_iso()}
    if data.status != pipeline.get("status"):
        update_data["status_changed_at"] = update_data["updated_at"]
    if data.notes is not None:
        update_data["notes"] = data.notes

    await db.pipelines.update_one({"id": data.pipeline_id}, {"$set": update_data})
    await log_event("pipeline_status_change", "pipeline", data.pipeline_id, user=user,
                    details={"old_value": pipeline.get("status"), "new_value": data.status})

    updated = await db.pipelines.find_one({"id": data.pipeline_id}, {"_id": 0})
    return {"success": True, "pipeline": updated, "deal": deal_from_pipeline(updated)}


# ==================== CRUD ====================

@router.get("")
async def list_pipelines(
    status: Optional[str] = None,
    company_id: Optional[str] = None,
    limit: int = 200,
    skip: int = 0,
    user: dict = Depends(require_permission("pipelines.view"))
):
    query = owner_filter(user)
    if status:
        query["status"] = status
    if company_id:
        query["company_id"] = company_id

    pipelines = await db.pipelines.find(
        query, {"_id": 0}
    ).sort("updated_at", -1).skip(skip).limit(limit).to_list(limit)
    total = await db.pipelines.count_documents(query)

    return {"pipelines": pipelines, "count": len(pipelines), "total": total}


@router.post("", status_code=201)
async def create_pipeline(
    data: PipelineCreate,
    user: dict = Depends(require_permission("pipelines.edit"))
):
    if data.company_id and not await db.companies.find_one({"id": data.company_id}):
        raise HTTPException(status_code=400, detail="Company not found")
    if data.opportunity_id and not await db.opportunities.find_one({"id": data.opportunity_id}):
        raise HTTPException(status_code=400, detail="Opportunity not found")

    now = now_iso()
    pipeline = {
        "id": str(uuid.uuid4()),
        **data.dict(),
        "order_date": data.order_date or now,
        "owner_id": user["id"],
        "status_changed_at": now,
        "created_at": now,
        "updated_at": now,
    }
    await db.pipelines.insert_one(pipeline)
    pipeline.pop("_id", None)

    await log_event("pipeline_create", "pipeline", pipeline["id"], user=user,
                    details={"name": pipeline["name"], "status": pipeline["status"]},
                    related={"opportunity_id": pipeline.get("opportunity_id"),
                             "company_id": pipeline.get("company_id")})
    return {"success": True, "pipeline": pipeline}


@router.get("/{pipeline_id}")
async def get_pipeline(
    pipeline_id: str,
    user: dict = Depends(require_permission("pipelines.view"))
):
    pipeline = await _get_pipeline_or_404(pipeline_id, user)
    pipeline["deal"] = deal_from_pipeline(pipeline)
    return pipeline


@router.put("/{pipeline_id}")
async def update_pipeline(
    pipeline_id: str,
    data: PipelineUpdate,
    user: dict = Depends(require_permission("pipelines.edit"))
):
    pipeline = await _get_pipeline_or_404(pipeline_id, user)

    update_data = {k: v for k, v in data.dict().items() if v is not None}
    if not update_data:
        raise HTTPException(status_code=400, detail="No data to update")
    update_data["updated_at"] = now_iso()
    if update_data.get("status") and update_data["status"] != pipeline.get("status"):
        update_data["status_changed_at"] = update_data["updated_at"]

    await db.pipelines.update_one({"id": pipeline_id}, {"$set": update_data})

    if "status_changed_at" in update_data:
        await log_event("pipeline_status_change", "pipeline", pipeline_id, user=user,
                        details={"old_value": pipeline.get("status"), "new_value": update_data["status"]})

    updated = await db.pipelines.find_one({"id": pipeline_id}, {"_id": 0})
    return {"success": True, "pipeline": updated}


@router.delete("/{pipeline_id}")
async def delete_pipeline(
    pipeline_id: str,
    user: dict = Depends(require_permission("pipelines.edit"))
):
    pipeline = await _get_pipeline_or_404(pipeline_id, user)
    await db.pipelines.delete_one({"id": pipeline_id})
    await log_event("pipeline_delete", "pipeline", pipeline_id, user=user,
                    details={"name": pipeline.get("name")})
    return {"success": True}
