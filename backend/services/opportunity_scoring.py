"""
Sales CRM - Opportunity Scoring
Weighted multi-criteria score (deal size, probability, urgency, competition,
relationship, budget, timing) -> priority, risk level and recommendation.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional

from config import parse_iso

WEIGHTS = {
    "deal_size": 0.25,
    "probability": 0.20,
    "urgency": 0.15,
    "competition": 0.10,
    "relationship": 0.10,
    "budget": 0.10,
    "timing": 0.10,
}

PRIORITY_ORDER = {"CRITICAL": 4, "HIGH": 3, "MEDIUM": 2, "LOW": 1}
RISK_ORDER = PRIORITY_ORDER

URGENCY_LEVELS = ["LOW", "MEDIUM", "HIGH", "CRITICAL"]
RELATIONSHIP_LEVELS = ["WEAK", "MODERATE", "STRONG", "EXCELLENT"]
TIMING_LEVELS = ["POOR", "FAIR", "GOOD", "EXCELLENT"]

_URGENCY_SCORES = {"CRITICAL": 100, "HIGH": 80, "MEDIUM": 60, "LOW": 40}
_RELATIONSHIP_SCORES = {"EXCELLENT": 100, "STRONG": 80, "MODERATE": 60, "WEAK": 40}
_TIMING_SCORES = {"EXCELLENT": 100, "GOOD": 80, "FAIR": 60, "POOR": 40}
_COMPETITION_SCORES = {0: 100, 1: 80, 2: 60, 3: 40}

# Titles that count as decision makers on a company contact
DECISION_MAKER_KEYWORDS = ("director", "manager", "head", "chief", "ceo", "cfo", "cto")

# Stages that are no longer open for scoring
CLOSED_STAGES = ("CLOSED_WON", "CLOSED_LOST", "CANCELLED", "LOST_TO_COMPETITOR")


# ==================== COMPONENT SCORES ====================

def urgency_score(urgency: str, days_in_pipeline: float) -> float:
    score = _URGENCY_SCORES.get(urgency, 50)
    if days_in_pipeline > 90:
        score *= 0.8
    elif days_in_pipeline < 30:
        score *= 1.1
    return min(100, max(0, score))


def competition_score(competitor_count: int) -> int:
    return _COMPETITION_SCORES.get(competitor_count, 20)


def relationship_score(strength: str) -> int:
    return _RELATIONSHIP_SCORES.get(strength, 50)


def budget_score(approved: bool) -> int:
    return 100 if approved else 30


def timing_score(timing: str) -> int:
    return _TIMING_SCORES.get(timing, 50)


def normalize_deal_size(deal_size: float) -> int:
    """Deal size on a 0-100 scale (INR buckets)"""
    if deal_size >= 10_000_000:  # 1Cr+
        return 100
    if deal_size >= 5_000_000:   # 50L+
        return 90
    if deal_size >= 1_000_000:   # 10L+
        return 80
    if deal_size >= 500_000:     # 5L+
        return 70
    if deal_size >= 100_000:     # 1L+
        return 60
    if deal_size >= 50_000:
        return 50
    if deal_size >= 10_000:
        return 40
    return 20


# ==================== PRIORITY / RISK ====================

def determine_priority(score: float, criteria: dict) -> str:
    deal_size = criteria.get("deal_size", 0)
    probability = criteria.get("probability", 0)

    if criteria.get("urgency") == "CRITICAL" and score > 70:
        return "CRITICAL"
    if deal_size > 1_000_000 and probability > 0.7:
        return "CRITICAL"
    if score > 85:
        return "CRITICAL"

    if score > 75:
        return "HIGH"
    if deal_size > 500_000 and probability > 0.5:
        return "HIGH"

    if score > 60:
        return "MEDIUM"
    return "LOW"


def assess_risk_level(criteria: dict, score: float) -> str:
    risk = 0
    if criteria.get("competitor_count", 0) > 3:
        risk += 30
    if not criteria.get("budget_approved"):
        risk += 25
    if criteria.get("relationship_strength") == "WEAK":
        risk += 20
    if criteria.get("probability", 0) < 0.3:
        risk += 25
    if criteria.get("days_in_pipeline", 0) > 90:
        risk += 20
    if criteria.get("market_timing") == "POOR":
        risk += 15

    if score > 80:
        risk -= 20
    elif score < 50:
        risk += 20

    risk = min(100, max(0, risk))

    if risk > 70:
        return "CRITICAL"
    if risk > 50:
        return "HIGH"
    if risk > 30:
        return "MEDIUM"
    return "LOW"


def generate_recommendation(criteria: dict, priority: str) -> str:
    recommendations = []

    if priority == "CRITICAL":
        recommendations.append("URGENT: Schedule immediate executive meeting and prepare proposal")
    elif priority == "HIGH":
        recommendations.append("HIGH PRIORITY: Contact decision maker within 24 hours")
    elif priority == "MEDIUM":
        recommendations.append("MEDIUM: Follow up within 3-5 business days")
    else:
        recommendations.append("LOW: Monitor and nurture relationship")

    if criteria.get("competitor_count", 0) > 2:
        recommendations.append("HIGH COMPETITION: Differentiate value proposition and accelerate timeline")
    if not criteria.get("budget_approved"):
        recommendations.append("BUDGET UNCERTAIN: Focus on ROI demonstration and cost-benefit analysis")
    if criteria.get("relationship_strength") == "WEAK":
        recommendations.append("BUILD RELATIONSHIP: Schedule discovery call to understand needs better")
    if criteria.get("days_in_pipeline", 0) > 60:
        recommendations.append("STAGNANT: Re-engage with fresh value proposition or update status")

    return " | ".join(recommendations)


# ==================== SCORING ====================

def calculate_opportunity_score(criteria: dict) -> dict:
    """
    Score a single opportunity.

    criteria keys: deal_size, probability (0-1), days_in_pipeline,
    competitor_count, decision_maker_access, budget_approved,
    relationship_strength, urgency, market_timing
    """
    urgency = urgency_score(criteria.get("urgency"), criteria.get("days_in_pipeline", 0))
    competition = competition_score(criteria.get("competitor_count", 0))
    relationship = relationship_score(criteria.get("relationship_strength"))
    budget = budget_score(criteria.get("budget_approved", False))
    timing = timing_score(criteria.get("market_timing"))
    deal_size = normalize_deal_size(criteria.get("deal_size", 0))
    probability = criteria.get("probability", 0) * 100

    total = (
        deal_size * WEIGHTS["deal_size"]
        + probability * WEIGHTS["probability"]
        + urgency * WEIGHTS["urgency"]
        + competition * WEIGHTS["competition"]
        + relationship * WEIGHTS["relationship"]
        + budget * WEIGHTS["budget"]
        + timing * WEIGHTS["timing"]
    )

    priority = determine_priority(total, criteria)
    risk_level = assess_risk_level(criteria, total)

    return {
        "total_score": round(total, 2),
        "deal_size": criteria.get("deal_size", 0),
        "probability": criteria.get("probability", 0),
        "urgency_score": urgency,
        "competition_score": competition,
        "relationship_score": relationship,
        "budget_score": budget,
        "timing_score": timing,
        "priority": priority,
        "risk_level": risk_level,
        "recommendation": generate_recommendation(criteria, priority),
    }


def score_opportunities(opportunities: List[dict]) -> List[dict]:
    """opportunities: [{id, name, criteria}]"""
    scored = []
    for opp in opportunities:
        result = calculate_opportunity_score(opp["criteria"])
        result["id"] = opp["id"]
        result["name"] = opp["name"]
        scored.append(result)
    return scored


def sort_by_priority(scored: List[dict]) -> List[dict]:
    return sorted(
        scored,
        key=lambda s: (PRIORITY_ORDER.get(s["priority"], 0), s["total_score"]),
        reverse=True,
    )


def sort_by_risk(scored: List[dict]) -> List[dict]:
    return sorted(scored, key=lambda s: RISK_ORDER.get(s["risk_level"], 0), reverse=True)


def sort_by_score(scored: List[dict]) -> List[dict]:
    return sorted(scored, key=lambda s: s["total_score"], reverse=True)


def filter_by_priority(scored: List[dict], priority: str) -> List[dict]:
    return [s for s in scored if s["priority"] == priority]


def calculate_portfolio_metrics(scored: List[dict]) -> dict:
    average = sum(s["total_score"] for s in scored) / len(scored) if scored else 0

    priority_distribution: Dict[str, int] = {}
    risk_distribution: Dict[str, int] = {}
    for s in scored:
        priority_distribution[s["priority"]] = priority_distribution.get(s["priority"], 0) + 1
        risk_distribution[s["risk_level"]] = risk_distribution.get(s["risk_level"], 0) + 1

    return {
        "average_score": round(average, 2),
        "priority_distribution": priority_distribution,
        "risk_distribution": risk_distribution,
        "total_value": sum(s["deal_size"] for s in scored),
        "high_priority_value": sum(
            s["deal_size"] for s in scored if s["priority"] in ("CRITICAL", "HIGH")
        ),
        "at_risk_value": sum(
            s["deal_size"] for s in scored if s["risk_level"] in ("HIGH", "CRITICAL")
        ),
    }


# ==================== CRITERIA FROM STORED DOCUMENTS ====================

def relationship_from_activity_count(count: int) -> str:
    if count > 10:
        return "EXCELLENT"
    if count > 5:
        return "STRONG"
    if count > 2:
        return "MODERATE"
    return "WEAK"


def has_decision_maker(contacts: List[dict]) -> bool:
    for contact in contacts:
        title = (contact.get("title") or "").lower()
        if any(k in title for k in DECISION_MAKER_KEYWORDS):
            return True
    return False


def criteria_from_opportunity(
    opportunity: dict,
    contacts: List[dict],
    activity_count: int,
    overdue_followups: int,
    now: Optional[datetime] = None
) -> dict:
    """Build scoring criteria from an opportunity document and its context"""
    current = now or datetime.now(timezone.utc)
    created = parse_iso(opportunity.get("created_at"))
    days_in_pipeline = (current - created).days if created else 0

    if overdue_followups > 3:
        urgency = "CRITICAL"
    elif overdue_followups > 0:
        urgency = "HIGH"
    elif days_in_pipeline > 30:
        urgency = "MEDIUM"
    else:
        urgency = "LOW"

    competitors = opportunity.get("competitors") or []
    if isinstance(competitors, str):
        competitors = [c for c in competitors.split(",") if c.strip()]

    return {
        "deal_size": opportunity.get("deal_size") or 0,
        "probability": (opportunity.get("probability") or 0) / 100,
        "days_in_pipeline": days_in_pipeline,
        "competitor_count": len(competitors),
        "decision_maker_access": has_decision_maker(contacts),
        "budget_approved": bool(opportunity.get("budget_approved")),
        "relationship_strength": relationship_from_activity_count(activity_count),
        "urgency": urgency,
        "market_timing": opportunity.get("market_timing") or "GOOD",
    }
