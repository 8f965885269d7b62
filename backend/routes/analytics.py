"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Sales CRM - Routes Analytics                                                ║
║                                                                              ║
║  /analytics/dashboard          KPIs for the caller (owner scoped)            ║
║  /analytics/segmentation       k-means / RFM / behavioral customer segments  ║
║  /analytics/forecast           weighted sales forecast for a period          ║
║  /analytics/revenue-forecast   12-month revenue projection                   ║
║  /analytics/velocity-forecast  deals closed per month projection             ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Optional

from config import db, today_ist
from models import VALID_LEAD_STATUSES
from services.permissions import require_permission, owner_filter, is_admin
from services.weighted_pipeline import (
    STAGE_ORDER,
    deal_from_opportunity,
    generate_pipeline_metrics,
    resolve_period_start,
)
from services.opportunity_scoring import CLOSED_STAGES
from services.customer_segmentation import (
    build_customers,
    perform_kmeans_segmentation,
    perform_rfm_segmentation,
    perform_behavioral_segmentation,
)
from services.predictive_analytics import (
    FORECAST_PERIODS,
    forecast_revenue,
    monthly_revenue_history,
    forecast_pipeline_velocity,
    monthly_closed_history,
    generate_sales_forecast,
)
from services.sales_insights import (
    enrich_followup,
    followup_analytics,
    calculate_sales_performance,
)

logger = logging.getLogger("analytics")

router = APIRouter(prefix="/analytics", tags=["Analytics"])


async def _opportunities(user: dict) -> list:
    return await db.opportunities.find(owner_filter(user), {"_id": 0}).to_list(10000)


def _open_deals(opportunities: list, now: datetime) -> list:
    return [deal_from_opportunity(o, now=now) for o in opportunities if o.get("stage") not in CLOSED_STAGES]


# ==================== DASHBOARD ====================

@router.get("/dashboard")
async def dashboard(
    period: str = Query("month", pattern="^(week|month|quarter|year)$"),
    user: dict = Depends(require_permission("dashboard.view"))
):
    now = datetime.now(timezone.utc)
    since = resolve_period_start(period, now).isoformat()

    leads = await db.leads.find(owner_filter(user), {"_id": 0, "status": 1}).to_list(10000)
    leads_by_status = {s: 0 for s in VALID_LEAD_STATUSES}
    for lead in leads:
        leads_by_status[lead.get("status", "NEW")] = leads_by_status.get(lead.get("status", "NEW"), 0) + 1

    opportunities = await _opportunities(user)
    opportunities_by_stage = {}
    for stage in STAGE_ORDER:
        count = len([o for o in opportunities if o.get("stage") == stage])
        if count:
            opportunities_by_stage[stage] = count

    deals = _open_deals(opportunities, now)
    metrics = generate_pipeline_metrics(deals, now)

    followup_query = {} if is_admin(user) else {"created_by_id": user["id"]}
    followup_query["follow_up_date"] = {"$gte": since}
    followup_docs = await db.daily_follow_ups.find(followup_query, {"_id": 0}).to_list(5000)
    followup_stats = followup_analytics([enrich_followup(f, now) for f in followup_docs])

    period_opps = [o for o in opportunities if (o.get("updated_at") or "") >= since]
    won = [o for o in period_opps if o.get("stage") == "CLOSED_WON"]
    closed = [o for o in period_opps if o.get("stage") in CLOSED_STAGES]
    performance = calculate_sales_performance(
        len(won),
        len(period_opps),
        sum(o.get("deal_size") or 0 for o in won) / len(won) if won else 0,
        len(won) / len(closed) if closed else 0,
        followup_stats["average_effectiveness"],
    )

    result = {
        "period": period,
        "since": since,
        "leads": {"total": len(leads), "by_status": leads_by_status},
        "opportunities": {"total": len(opportunities), "by_stage": opportunities_by_stage},
        "pipeline": {
            "open_deals": metrics["total_deals"],
            "total_value": metrics["total_value"],
            "weighted_value": metrics["weighted_value"],
            "average_probability": metrics["average_probability"],
        },
        "followups": followup_stats,
        "performance": performance,
    }

    if is_admin(user):
        date = today_ist(now)
        records = await db.attendance.find({"date_ist": date}, {"_id": 0, "status": 1}).to_list(5000)
        active_users = await db.users.count_documents({"is_active": {"$ne": False}})
        result["attendance_today"] = {
            "date": date,
            "submitted": len(records),
            "flagged": len([r for r in records if r.get("status") == "AUTO_FLAGGED"]),
            "missing": max(0, active_users - len(records)),
        }

    return result


# ==================== SEGMENTATION ====================

@router.get("/segmentation")
async def customer_segmentation(
    algorithm: str = Query("kmeans", pattern="^(kmeans|rfm|behavioral)$"),
    k: int = Query(4, ge=1, le=20),
    seed: Optional[int] = None,
    user: dict = Depends(require_permission("analytics.view"))
):
    now = datetime.now(timezone.utc)
    companies = await db.companies.find({}, {"_id": 0}).to_list(10000)
    opportunities = await db.opportunities.find({}, {"_id": 0}).to_list(50000)
    activities = await db.activities.find({}, {"_id": 0, "company_id": 1, "created_at": 1}).to_list(100000)
    customers = build_customers(companies, opportunities, activities, now)

    try:
        if algorithm == "rfm":
            result = perform_rfm_segmentation(customers)
        elif algorithm == "behavioral":
            result = perform_behavioral_segmentation(customers)
        else:
            result = perform_kmeans_segmentation(customers, k=k, seed=seed)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(f"[SEGMENTATION] {algorithm} customers={len(customers)} segments={len(result['segments'])}")
    result["customer_count"] = len(customers)
    return result


# ==================== FORECASTS ====================

@router.get("/forecast")
async def sales_forecast(
    period: str = Query("quarter", pattern="^(week|month|quarter|year)$"),
    confidence: float = Query(0.8, gt=0, le=1),
    user: dict = Depends(require_permission("analytics.view"))
):
    now = datetime.now(timezone.utc)
    deals = _open_deals(await _opportunities(user), now)
    return generate_sales_forecast(deals, period, confidence, now)


@router.get("/revenue-forecast")
async def revenue_forecast(
    periods: int = Query(FORECAST_PERIODS, ge=1, le=36),
    user: dict = Depends(require_permission("analytics.view"))
):
    opportunities = await _opportunities(user)
    history = monthly_revenue_history(opportunities)
    return {
        "history": history,
        "forecast": forecast_revenue(history, periods),
        "baseline": len(history) < 3,
    }


@router.get("/velocity-forecast")
async def velocity_forecast(user: dict = Depends(require_permission("analytics.view"))):
    now = datetime.now(timezone.utc)
    opportunities = await _opportunities(user)
    history = monthly_closed_history(opportunities)
    current = [{"stage": o["stage"]} for o in opportunities if o.get("stage") not in CLOSED_STAGES]
    return {
        "history": history,
        "open_deals": len(current),
        "forecast": forecast_pipeline_velocity(current, history, now),
        "baseline": len(history) < 3,
    }
