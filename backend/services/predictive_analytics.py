"""
Sales CRM - Predictive Analytics
Revenue forecast (exponential smoothing + linear trend + seasonality),
conversion probability prediction, pipeline velocity forecast and the
weighted sales forecast served by /analytics/forecast.
"""

import math
import logging
from datetime import datetime, timezone
from typing import Dict, List

from config import parse_iso
from services.weighted_pipeline import STAGE_ORDER

logger = logging.getLogger("predictive")

FORECAST_PERIODS = 12
SMOOTHING_ALPHA = 0.3
Z_95 = 1.96
BASELINE_DEALS_PER_MONTH = 6.5

_CONVERSION_STAGE_PROBABILITIES = {
    "PROSPECTING": 0.05,
    "QUALIFICATION": 0.25,
    "PROPOSAL": 0.60,
    "NEGOTIATION": 0.85,
    "CLOSED_WON": 1.00,
    "CLOSED_LOST": 0.00,
}

_CLOSURE_RATES = {
    "PROSPECTING": 0.1,
    "QUALIFICATION": 0.3,
    "PROPOSAL": 0.6,
    "NEGOTIATION": 0.8,
    "CLOSED_WON": 1.0,
    "CLOSED_LOST": 0.0,
}

PERIOD_MONTHS = {"week": 0.25, "month": 1, "quarter": 3, "year": 12}


def add_months(year: int, month: int, offset: int) -> tuple:
    index = year * 12 + (month - 1) + offset
    return index // 12, index % 12 + 1


def month_key(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


# ==================== REVENUE FORECAST ====================

def _trend(values: List[float]) -> float:
    """Least-squares slope over the period index"""
    n = len(values)
    if n < 2:
        return 0.0
    sum_x = n * (n - 1) / 2
    sum_y = sum(values)
    sum_xy = sum(i * v for i, v in enumerate(values))
    sum_xx = sum(i * i for i in range(n))
    denom = n * sum_xx - sum_x * sum_x
    return (n * sum_xy - sum_x * sum_y) / denom if denom else 0.0


def _seasonality(values: List[float]) -> List[float]:
    if len(values) < 12:
        return [1.0]
    last_year = values[-12:]
    avg = sum(last_year) / 12
    if avg == 0:
        return [1.0]
    return [v / avg for v in last_year]


def _sample_variance(values: List[float]) -> float:
    if len(values) < 2:
        return 0.0
    mean = sum(values) / len(values)
    return sum((v - mean) ** 2 for v in values) / (len(values) - 1)


def baseline_revenue_forecast(periods: int, now: datetime = None) -> List[dict]:
    current = now or datetime.now(timezone.utc)
    forecasts = []
    for i in range(1, periods + 1):
        year, month = add_months(current.year, current.month, i)
        forecasts.append({
            "period": month_key(year, month),
            "predicted": 100_000 + i * 5_000,
            "upper_bound": 150_000 + i * 10_000,
            "lower_bound": 50_000 + i * 2_500,
            "confidence": max(0.2, 0.8 - i * 0.05),
        })
    return forecasts


def forecast_revenue(history: List[dict], periods: int = FORECAST_PERIODS, now: datetime = None) -> List[dict]:
    """
    history: [{"period": "YYYY-MM", "revenue": float}] in chronological order.
    Fewer than 3 points -> baseline forecast.
    """
    if len(history) < 3:
        logger.info(f"[FORECAST] {len(history)} data points, using baseline revenue forecast")
        return baseline_revenue_forecast(periods, now)

    values = [h["revenue"] for h in history]
    smoothed = values[0]
    for value in values[1:]:
        smoothed = SMOOTHING_ALPHA * value + (1 - SMOOTHING_ALPHA) * smoothed

    trend = _trend(values)
    seasonality = _seasonality(values)
    std_dev = math.sqrt(_sample_variance(values))

    last_year, last_month = (int(p) for p in history[-1]["period"].split("-")[:2])
    forecasts = []
    for i in range(1, periods + 1):
        year, month = add_months(last_year, last_month, i)
        predicted = (smoothed + trend * i) * (seasonality[i % len(seasonality)] or 1)
        margin = Z_95 * std_dev * math.sqrt(i)
        confidence = max(0.1, 1 - margin / predicted) if predicted > 0 else 0.1
        forecasts.append({
            "period": month_key(year, month),
            "predicted": max(0, predicted),
            "upper_bound": max(0, predicted + margin),
            "lower_bound": max(0, predicted - margin),
            "confidence": confidence,
        })
    return forecasts


def monthly_revenue_history(opportunities: List[dict]) -> List[dict]:
    """Won revenue per month, chronological, gaps filled with 0"""
    buckets: Dict[str, float] = {}
    for opp in opportunities:
        if opp.get("stage") != "CLOSED_WON":
            continue
        won = parse_iso(opp.get("won_date") or opp.get("updated_at"))
        if not won:
            continue
        key = month_key(won.year, won.month)
        buckets[key] = buckets.get(key, 0) + (opp.get("deal_size") or 0)

    if not buckets:
        return []

    keys = sorted(buckets)
    year, month = (int(p) for p in keys[0].split("-"))
    end = keys[-1]
    history = []
    while True:
        key = month_key(year, month)
        history.append({"period": key, "revenue": buckets.get(key, 0)})
        if key == end:
            break
        year, month = add_months(year, month, 1)
    return history


# ==================== CONVERSION ====================

def predict_conversion_probability(
    deal_value: float,
    days_in_stage: float,
    stage: str,
    competitor_count: int,
    relationship_strength: str
) -> float:
    probability = _CONVERSION_STAGE_PROBABILITIES.get(stage, 0.1)

    if deal_value > 1_000_000:
        probability *= 0.9
    elif deal_value > 500_000:
        probability *= 0.95
    elif deal_value < 50_000:
        probability *= 1.1

    probability *= max(0.7, 1 - days_in_stage / 180)

    if competitor_count > 3:
        probability *= 0.7
    elif competitor_count > 1:
        probability *= 0.85

    probability *= {"EXCELLENT": 1.2, "STRONG": 1.1, "WEAK": 0.8}.get(relationship_strength, 1.0)

    return min(0.95, max(0.01, probability))


# ==================== VELOCITY ====================

def baseline_velocity_forecast(now: datetime = None) -> List[dict]:
    current = now or datetime.now(timezone.utc)
    forecasts = []
    for i in range(1, FORECAST_PERIODS + 1):
        year, month = add_months(current.year, current.month, i)
        forecasts.append({
            "period": month_key(year, month),
            "predicted": BASELINE_DEALS_PER_MONTH,
            "upper_bound": 12,
            "lower_bound": 2,
            "confidence": max(0.3, 0.9 - i * 0.06),
        })
    return forecasts


def forecast_pipeline_velocity(
    current_deals: List[dict],
    history: List[dict],
    now: datetime = None
) -> List[dict]:
    """
    current_deals: [{"stage": ...}]
    history: [{"period": ..., "deals_closed": int}]
    """
    if len(history) < 3:
        return baseline_velocity_forecast(now)

    avg_velocity = sum(h["deals_closed"] for h in history) / len(history)
    by_stage: Dict[str, int] = {}
    for deal in current_deals:
        by_stage[deal["stage"]] = by_stage.get(deal["stage"], 0) + 1

    current = now or datetime.now(timezone.utc)
    forecasts = []
    for month_offset in range(1, FORECAST_PERIODS + 1):
        year, month = add_months(current.year, current.month, month_offset)
        predicted = sum(
            count * _CLOSURE_RATES.get(stage, 0.1) / month_offset
            for stage, count in by_stage.items()
        )
        predicted += avg_velocity * 0.3
        forecasts.append({
            "period": month_key(year, month),
            "predicted": predicted,
            "upper_bound": predicted * 1.3,
            "lower_bound": predicted * 0.7,
            "confidence": 0.75 - month_offset * 0.05,
        })
    return forecasts


def monthly_closed_history(opportunities: List[dict]) -> List[dict]:
    history = monthly_revenue_history(opportunities)
    counts: Dict[str, int] = {}
    for opp in opportunities:
        if opp.get("stage") != "CLOSED_WON":
            continue
        won = parse_iso(opp.get("won_date") or opp.get("updated_at"))
        if won:
            key = month_key(won.year, won.month)
            counts[key] = counts.get(key, 0) + 1
    return [{"period": h["period"], "deals_closed": counts.get(h["period"], 0)} for h in history]


# ==================== SALES FORECAST ====================

def generate_sales_forecast(
    deals: List[dict],
    period: str = "quarter",
    confidence: float = 0.8,
    now: datetime = None
) -> dict:
    """
    deals: weighted deals (value, weighted_value, stage, probability,
    risk_score, days_in_stage, expected_close_date)
    """
    current = now or datetime.now(timezone.utc)
    months = PERIOD_MONTHS.get(period, 3)
    horizon = math.ceil(months)
    end_year, end_month = add_months(current.year, current.month, horizon)

    relevant = []
    for deal in deals:
        close = parse_iso(deal.get("expected_close_date"))
        if not close or (close.year, close.month) <= (end_year, end_month):
            relevant.append(deal)

    weighted = sum(d.get("weighted_value", 0) for d in relevant)

    monthly_breakdown = []
    for i in range(horizon):
        year, month = add_months(current.year, current.month, i)
        month_deals = []
        for d in relevant:
            close = parse_iso(d.get("expected_close_date"))
            if close and close.year == year and close.month == month:
                month_deals.append(d)
        monthly_breakdown.append({
            "month": datetime(year, month, 1).strftime("%b %Y"),
            "forecast": sum(d.get("value", 0) for d in month_deals),
            "weighted_forecast": sum(d.get("weighted_value", 0) for d in month_deals) * confidence,
            "deals": len(month_deals),
        })

    return {
        "period": period,
        "total_forecast": sum(d.get("value", 0) for d in relevant),
        "weighted_forecast": weighted * confidence,
        "confidence": confidence * 100,
        "deals_count": len(relevant),
        "stage_breakdown": {
            stage: len([d for d in relevant if d.get("stage") == stage]) for stage in STAGE_ORDER
        },
        "monthly_breakdown": monthly_breakdown,
        "risk_analysis": {
            "high_risk_deals": len([d for d in relevant if d.get("risk_score", 0) > 70]),
            "low_confidence_deals": len([d for d in relevant if d.get("probability", 0) < 0.3]),
            "overdue_deals": len([d for d in relevant if d.get("days_in_stage", 0) > 90]),
        },
    }
