"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Sales CRM - Weighted Pipeline                                               ║
║                                                                              ║
║  Stage-weighted deal probability:                                            ║
║  base × quality × time decay × size × progression, clamped to [min, max]     ║
║  + velocity, risk score, priority, 6-month forecast, recommendations         ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import math
from enum import Enum
from datetime import datetime, timezone, timedelta
from typing import Dict, List, Optional

from config import parse_iso


class DealStage(str, Enum):
    # Early
    LEAD_GENERATED = "LEAD_GENERATED"
    INITIAL_CONTACT = "INITIAL_CONTACT"
    NEEDS_ANALYSIS = "NEEDS_ANALYSIS"
    # Qualification
    PROSPECTING = "PROSPECTING"
    QUALIFICATION = "QUALIFICATION"
    VALUE_PROPOSITION = "VALUE_PROPOSITION"
    # Solution
    PROPOSAL_PREPARATION = "PROPOSAL_PREPARATION"
    PROPOSAL = "PROPOSAL"
    PROPOSAL_REVIEW = "PROPOSAL_REVIEW"
    # Commitment
    NEGOTIATION = "NEGOTIATION"
    CONTRACT_REVIEW = "CONTRACT_REVIEW"
    FINAL_APPROVAL = "FINAL_APPROVAL"
    # Closed
    CLOSED_WON = "CLOSED_WON"
    CLOSED_LOST = "CLOSED_LOST"
    # Special
    ON_HOLD = "ON_HOLD"
    CANCELLED = "CANCELLED"
    LOST_TO_COMPETITOR = "LOST_TO_COMPETITOR"


VALID_STAGES = [s.value for s in DealStage]
STAGE_ORDER = VALID_STAGES

# (base, min, max, avg_days_in_stage, conversion_rate)
_PROBABILITY_TABLE = {
    "LEAD_GENERATED": (0.01, 0.005, 0.03, 7, 0.10),
    "INITIAL_CONTACT": (0.03, 0.01, 0.08, 14, 0.15),
    "NEEDS_ANALYSIS": (0.05, 0.02, 0.12, 21, 0.25),
    "PROSPECTING": (0.08, 0.03, 0.18, 30, 0.30),
    "QUALIFICATION": (0.25, 0.15, 0.40, 45, 0.45),
    "VALUE_PROPOSITION": (0.35, 0.25, 0.50, 30, 0.55),
    "PROPOSAL_PREPARATION": (0.45, 0.30, 0.60, 20, 0.60),
    "PROPOSAL": (0.60, 0.40, 0.80, 30, 0.70),
    "PROPOSAL_REVIEW": (0.65, 0.45, 0.85, 14, 0.75),
    "NEGOTIATION": (0.75, 0.60, 0.90, 20, 0.85),
    "CONTRACT_REVIEW": (0.80, 0.70, 0.95, 10, 0.90),
    "FINAL_APPROVAL": (0.85, 0.75, 0.98, 7, 0.95),
    "CLOSED_WON": (1.0, 1.0, 1.0, 1, 1.0),
    "CLOSED_LOST": (0.0, 0.0, 0.0, 1, 0.0),
    "ON_HOLD": (0.10, 0.05, 0.20, 60, 0.20),
    "CANCELLED": (0.0, 0.0, 0.0, 1, 0.0),
    "LOST_TO_COMPETITOR": (0.0, 0.0, 0.0, 1, 0.0),
}

STAGE_PROBABILITIES: Dict[str, dict] = {
    stage: {
        "stage": stage,
        "base_probability": row[0],
        "min_probability": row[1],
        "max_probability": row[2],
        "average_days_in_stage": row[3],
        "conversion_rate": row[4],
    }
    for stage, row in _PROBABILITY_TABLE.items()
}

QUALITY_MULTIPLIERS = {"HIGH": 1.2, "MEDIUM": 1.0, "LOW": 0.8}

QUALIFIED_STAGES = {
    "PROSPECTING", "QUALIFICATION", "VALUE_PROPOSITION",
    "PROPOSAL_PREPARATION", "PROPOSAL", "PROPOSAL_REVIEW",
    "NEGOTIATION", "CONTRACT_REVIEW", "FINAL_APPROVAL",
}
LOST_STAGES = {"CLOSED_LOST", "CANCELLED", "LOST_TO_COMPETITOR"}
CONVERSION_STAGES = {"QUALIFICATION", "PROPOSAL", "NEGOTIATION", "CLOSED_WON"}

# Forward path used for expected close dates
FORWARD_STAGES = [s for s in STAGE_ORDER if s in QUALIFIED_STAGES or s in (
    "LEAD_GENERATED", "INITIAL_CONTACT", "NEEDS_ANALYSIS", "CLOSED_WON"
)]

FORECAST_ACCURACY = 0.85
DEFAULT_SALES_CYCLE_DAYS = 60


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def _days_between(later: datetime, earlier) -> float:
    earlier_dt = parse_iso(earlier)
    if not earlier_dt:
        return 0.0
    return (later - earlier_dt).total_seconds() / 86400


def _whole_days_since(now: datetime, earlier) -> int:
    """Elapsed whole days, floored"""
    return max(0, math.floor(_days_between(now, earlier)))


# ==================== PROBABILITY ====================

def get_stage_base_probability(stage: str) -> float:
    cfg = STAGE_PROBABILITIES.get(stage)
    return cfg["base_probability"] if cfg else 0.1


def get_all_stages() -> List[dict]:
    return [STAGE_PROBABILITIES[s] for s in STAGE_ORDER]


def calculate_weighted_probability(
    stage: str,
    value: float,
    days_in_stage: float,
    last_activity,
    quality: str = "MEDIUM",
    now: datetime = None
) -> float:
    """
    Weighted probability of a deal, clamped to the stage min/max.
    Unknown stage -> 0.1
    """
    cfg = STAGE_PROBABILITIES.get(stage)
    if not cfg:
        return 0.1

    probability = cfg["base_probability"]
    probability *= QUALITY_MULTIPLIERS.get(quality, 1.0)

    days_since_activity = _whole_days_since(_now(now), last_activity)
    probability *= max(0.7, 1 - days_since_activity / 90)

    if value > 1_000_000:
        probability *= 0.9
    elif value < 100_000:
        probability *= 1.1

    progression_ratio = days_in_stage / cfg["average_days_in_stage"]
    probability *= 0.95 if progression_ratio > 1 else 1.05

    probability = max(cfg["min_probability"], min(cfg["max_probability"], probability))
    return round(probability, 2)


def assess_deal_quality(
    value: float,
    competitor_count: int,
    decision_maker_access: bool,
    budget_confirmed: bool
) -> str:
    score = 0
    if value > 1_000_000:
        score += 25
    elif value > 500_000:
        score += 20
    elif value > 100_000:
        score += 15
    else:
        score += 10

    if competitor_count == 0:
        score += 25
    elif competitor_count <= 2:
        score += 15
    else:
        score += 5

    score += 25 if decision_maker_access else 10
    score += 25 if budget_confirmed else 5

    if score >= 75:
        return "HIGH"
    if score >= 50:
        return "MEDIUM"
    return "LOW"


def calculate_expected_close_date(stage: str, now: datetime = None) -> datetime:
    """Sum of average durations of the remaining forward stages"""
    current = _now(now)
    if stage not in FORWARD_STAGES or stage == "CLOSED_WON":
        return current
    idx = FORWARD_STAGES.index(stage)
    remaining = FORWARD_STAGES[idx + 1:]
    total_days = sum(STAGE_PROBABILITIES[s]["average_days_in_stage"] for s in remaining)
    return current + timedelta(days=total_days)


# ==================== VELOCITY ====================

def calculate_velocity_metrics(deals: List[dict]) -> dict:
    qualified = [d for d in deals if d.get("stage") in QUALIFIED_STAGES]
    won = [d for d in deals if d.get("stage") == "CLOSED_WON"]
    lost = [d for d in deals if d.get("stage") in LOST_STAGES]

    closed = len(won) + len(lost)
    win_rate = len(won) / closed if closed else 0.0
    if win_rate == 0 and deals:
        avg_prob = sum(d.get("probability", 0) for d in deals) / len(deals)
        win_rate = min(0.95, max(0.05, avg_prob))

    total_value = sum(d.get("value", 0) for d in qualified)
    average_deal_size = total_value / len(qualified) if qualified else 0.0

    cycle_samples = []
    for d in won:
        sample = d.get("sales_cycle_days") or d.get("pipeline_age_days") or d.get("days_in_stage")
        if sample and sample > 0:
            cycle_samples.append(sample)
    if not cycle_samples:
        cycle_samples = [d["pipeline_age_days"] for d in deals if (d.get("pipeline_age_days") or 0) > 0]

    cycle = sum(cycle_samples) / len(cycle_samples) if cycle_samples else DEFAULT_SALES_CYCLE_DAYS
    cycle = max(cycle, 1)

    n = len(qualified)
    velocity_per_day = (n * average_deal_size * win_rate) / cycle
    return {
        "qualified_opportunities": n,
        "average_deal_size": average_deal_size,
        "win_rate": win_rate,
        "sales_cycle_length_days": round(cycle),
        "velocity_per_day": velocity_per_day,
        "velocity_per_month": velocity_per_day * 30,
        "expected_deals_per_month": (n * win_rate * 30) / cycle,
    }


# ==================== RISK / PRIORITY ====================

def calculate_risk_score(deal: dict, now: datetime = None) -> int:
    cfg = STAGE_PROBABILITIES.get(deal.get("stage"))
    risk = 0

    if deal.get("value", 0) > 500_000:
        risk += 20
    if cfg and deal.get("days_in_stage", 0) > cfg["average_days_in_stage"] * 1.5:
        risk += 25
    if deal.get("probability", 0) < 0.3:
        risk += 30
    if _whole_days_since(_now(now), deal.get("last_activity")) > 30:
        risk += 25

    return min(100, risk)


def calculate_priority(deal: dict) -> str:
    score = (
        deal.get("weighted_value", 0) * 0.4
        + deal.get("probability", 0) * 100 * 0.3
        + (100 - deal.get("risk_score", 0)) * 0.3
    )
    if score > 70:
        return "HIGH"
    if score > 40:
        return "MEDIUM"
    return "LOW"


# ==================== METRICS ====================

def generate_pipeline_metrics(deals: List[dict], now: datetime = None) -> dict:
    current = _now(now)
    total_value = sum(d.get("value", 0) for d in deals)
    weighted_value = sum(d.get("weighted_value", 0) for d in deals)
    average_probability = (
        sum(d.get("probability", 0) for d in deals) / len(deals) if deals else 0.0
    )

    stage_distribution = []
    for stage in STAGE_ORDER:
        stage_deals = [d for d in deals if d.get("stage") == stage]
        stage_distribution.append({
            "stage": stage,
            "count": len(stage_deals),
            "value": sum(d.get("value", 0) for d in stage_deals),
            "weighted_value": sum(d.get("weighted_value", 0) for d in stage_deals),
            "probability": get_stage_base_probability(stage),
        })

    monthly_forecast = []
    for offset in range(6):
        year = current.year + (current.month - 1 + offset) // 12
        month = (current.month - 1 + offset) % 12 + 1
        month_deals = []
        for d in deals:
            close = parse_iso(d.get("expected_close_date"))
            if close and close.year == year and close.month == month:
                month_deals.append(d)
        label = datetime(year, month, 1).strftime("%b %Y")
        monthly_forecast.append({
            "month": label,
            "value": sum(d.get("value", 0) for d in month_deals),
            "weighted_value": sum(d.get("weighted_value", 0) for d in month_deals),
            "deal_count": len(month_deals),
            "confidence": sum(d.get("probability", 0) for d in month_deals) / len(month_deals)
            if month_deals else 0.0,
        })

    conversion_rate = (
        len([d for d in deals if d.get("stage") in CONVERSION_STAGES]) / len(deals)
        if deals else 0.0
    )
    velocity = calculate_velocity_metrics(deals)

    return {
        "total_deals": len(deals),
        "total_value": total_value,
        "weighted_value": weighted_value,
        "average_probability": average_probability,
        "stage_distribution": stage_distribution,
        "monthly_forecast": monthly_forecast,
        "conversion_rate": conversion_rate,
        "velocity": velocity["velocity_per_month"],
        "velocity_details": velocity,
        "forecast_accuracy": FORECAST_ACCURACY,
    }


def generate_recommendations(metrics: dict, deals: List[dict]) -> List[str]:
    recommendations = []

    if metrics.get("conversion_rate", 0) < 0.3:
        recommendations.append("Improve lead qualification process to increase conversion rates")

    high_risk = [d for d in deals if d.get("risk_score", 0) > 70]
    if high_risk:
        recommendations.append(
            f"{len(high_risk)} deals have high risk scores - review and take action"
        )

    stagnant = [d for d in deals if d.get("days_in_stage", 0) > 60]
    if stagnant:
        recommendations.append(f"{len(stagnant)} deals have been stagnant for over 60 days")

    if metrics.get("forecast_accuracy", 1) < 0.8:
        recommendations.append("Review forecasting accuracy and adjust probability calculations")

    velocity = metrics.get("velocity_details") or {}
    if velocity:
        deals_per_month = velocity.get("expected_deals_per_month", 0)
        if deals_per_month < 1:
            recommendations.append(
                "Pipeline velocity is critically low - accelerate movement of qualified deals"
            )
        elif deals_per_month < 3:
            recommendations.append(
                "Pipeline velocity is below target - streamline stage handoffs to close more deals each month"
            )
        if velocity.get("velocity_per_month", 0) < velocity.get("average_deal_size", 0):
            recommendations.append(
                "Monthly revenue velocity trails average deal size - focus on shortening the sales cycle"
            )

    return recommendations


# ==================== PIPELINE STATUS MAPPING ====================

_PIPELINE_STATUS_STAGE = {
    "ORDER_RECEIVED": "PROPOSAL",
    "ORDER_PROCESSING": "PROPOSAL",
    "CONTRACT_SIGNING": "PROPOSAL",
    "PRODUCTION_STARTED": "NEGOTIATION",
    "QUALITY_CHECK": "NEGOTIATION",
    "PACKING_SHIPPING": "FINAL_APPROVAL",
    "SHIPPED": "FINAL_APPROVAL",
    "DELIVERED": "CLOSED_WON",
    "INSTALLATION_STARTED": "CLOSED_WON",
    "INSTALLATION_COMPLETE": "CLOSED_WON",
    "PAYMENT_RECEIVED": "CLOSED_WON",
    "PROJECT_COMPLETE": "CLOSED_WON",
    "ON_HOLD": "ON_HOLD",
    "DELAYED": "ON_HOLD",
    "CANCELLED": "CANCELLED",
    "DISPUTED": "CANCELLED",
    "LOST_TO_COMPETITOR": "LOST_TO_COMPETITOR",
}

PIPELINE_STATUSES = list(_PIPELINE_STATUS_STAGE.keys())


def pipeline_status_to_stage(status: str) -> str:
    return _PIPELINE_STATUS_STAGE.get(status, "PROPOSAL")


def pipeline_status_risk(status: str) -> int:
    if status in ("PROJECT_COMPLETE", "PAYMENT_RECEIVED"):
        return 10
    if status in ("ON_HOLD", "DELAYED", "DISPUTED"):
        return 80
    if status in ("CANCELLED", "LOST_TO_COMPETITOR"):
        return 100
    return 50


def pipeline_status_priority(status: str, value: float) -> str:
    if value > 5_000_000 or status in ("DELAYED", "DISPUTED"):
        return "HIGH"
    if value < 1_000_000:
        return "LOW"
    return "MEDIUM"


def resolve_period_start(period: str, now: datetime = None) -> datetime:
    days = {"week": 7, "quarter": 90, "year": 365}.get(period, 30)
    return _now(now) - timedelta(days=days)


# ==================== DEAL BUILDERS ====================

def deal_from_opportunity(opportunity: dict, last_activity=None, now: datetime = None) -> dict:
    """Weighted deal view of a stored opportunity"""
    current = _now(now)
    stage = opportunity.get("stage", "PROSPECTING")
    value = opportunity.get("deal_size") or 0
    last_activity = last_activity or opportunity.get("last_activity_at") or opportunity.get("updated_at")
    days_in_stage = max(0.0, _days_between(current, opportunity.get("stage_changed_at") or opportunity.get("created_at")))
    pipeline_age = max(0.0, _days_between(current, opportunity.get("created_at")))

    competitors = opportunity.get("competitors") or []
    quality = assess_deal_quality(
        value, len(competitors), False, bool(opportunity.get("budget_approved"))
    )
    probability = calculate_weighted_probability(stage, value, days_in_stage, last_activity, quality, current)

    deal = {
        "id": opportunity.get("id"),
        "name": opportunity.get("name"),
        "company_id": opportunity.get("company_id"),
        "owner_id": opportunity.get("owner_id"),
        "value": value,
        "stage": stage,
        "probability": probability,
        "weighted_value": value * probability,
        "days_in_stage": round(days_in_stage),
        "last_activity": last_activity,
        "expected_close_date": opportunity.get("expected_close_date")
        or calculate_expected_close_date(stage, current).isoformat(),
        "pipeline_age_days": round(pipeline_age),
        "quality": quality,
    }
    won = parse_iso(opportunity.get("won_date"))
    created = parse_iso(opportunity.get("created_at"))
    if stage == "CLOSED_WON" and won and created:
        deal["sales_cycle_days"] = max(0, (won - created).days)
    deal["risk_score"] = calculate_risk_score(deal, current)
    deal["priority"] = calculate_priority(deal)
    return deal


def deal_from_pipeline(pipeline: dict, now: datetime = None) -> dict:
    """Weighted deal view of a fulfilment pipeline (status-based risk and priority)"""
    current = _now(now)
    status = pipeline.get("status", "ORDER_RECEIVED")
    stage = pipeline_status_to_stage(status)
    value = pipeline.get("order_value") or 0
    last_activity = pipeline.get("updated_at") or pipeline.get("created_at")
    days_in_stage = max(0.0, _days_between(current, pipeline.get("status_changed_at") or pipeline.get("created_at")))

    progress = pipeline.get("progress_percentage") or 0
    if progress > 0:
        probability = progress / 100
    else:
        probability = calculate_weighted_probability(stage, value, days_in_stage, last_activity, "MEDIUM", current)

    return {
        "id": pipeline.get("id"),
        "name": pipeline.get("name"),
        "company_id": pipeline.get("company_id"),
        "opportunity_id": pipeline.get("opportunity_id"),
        "owner_id": pipeline.get("owner_id"),
        "status": status,
        "value": value,
        "stage": stage,
        "probability": probability,
        "weighted_value": value * probability,
        "days_in_stage": round(days_in_stage),
        "last_activity": last_activity,
        "expected_close_date": pipeline.get("expected_delivery_date")
        or calculate_expected_close_date(stage, current).isoformat(),
        "pipeline_age_days": round(max(0.0, _days_between(current, pipeline.get("order_date") or pipeline.get("created_at")))),
        "risk_score": pipeline_status_risk(status),
        "priority": pipeline_status_priority(status, value),
    }
