"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Sales CRM - Sales Insights                                                  ║
║                                                                              ║
║  Deal categorisation, urgency and health, conversion estimate,               ║
║  follow-up effectiveness, deadline compliance, notification timing,          ║
║  sales performance grade and follow-up enrichment                            ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import math
from datetime import datetime, timezone, timedelta
from typing import List, Optional

from config import parse_iso, to_ist, IST

DEAL_CATEGORIES = ["MICRO", "SMALL", "MEDIUM", "LARGE", "ENTERPRISE"]
URGENCY_LEVELS = ["LOW", "MEDIUM", "HIGH", "CRITICAL"]
RESPONSE_QUALITIES = ["POOR", "FAIR", "GOOD", "VERY_GOOD", "EXCELLENT"]

_SIZE_MULTIPLIERS = {"MICRO": 0.7, "SMALL": 0.8, "MEDIUM": 1.0, "LARGE": 1.2, "ENTERPRISE": 1.4}
_URGENCY_MULTIPLIERS = {"CRITICAL": 1.3, "HIGH": 1.2, "MEDIUM": 1.0, "LOW": 0.9}
_QUALITY_MULTIPLIERS = {"POOR": 0.5, "FAIR": 0.7, "GOOD": 1.0, "VERY_GOOD": 1.2, "EXCELLENT": 1.4}
_ACTION_TYPE_MULTIPLIERS = {"CALL": 1.2, "MEETING": 1.3, "SITE_VISIT": 1.4, "EMAIL": 0.9, "MESSAGE": 0.8}

# Completion time assumed when the follow-up carries none (minutes)
DEFAULT_COMPLETION_MINUTES = 30


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


# ==================== DEAL CATEGORISATION ====================

def categorize_deal_value(value: float) -> str:
    if value < 1_000_000:
        return "MICRO"
    if value < 5_000_000:
        return "SMALL"
    if value < 20_000_000:
        return "MEDIUM"
    if value < 100_000_000:
        return "LARGE"
    return "ENTERPRISE"


def calculate_urgency_level(days_to_deadline: Optional[int], category: str) -> str:
    if days_to_deadline is None:
        return "LOW"
    if category == "ENTERPRISE" and days_to_deadline <= 7:
        return "CRITICAL"
    if category == "LARGE" and days_to_deadline <= 14:
        return "HIGH"
    if days_to_deadline <= 30:
        return "MEDIUM"
    return "LOW"


def assess_deal_health(status: str, last_activity_days: float, followup_count: int) -> str:
    if status == "ONGOING" and last_activity_days <= 3 and followup_count >= 3:
        return "EXCELLENT"
    if last_activity_days <= 7 and followup_count >= 1:
        return "GOOD"
    if last_activity_days <= 14:
        return "FAIR"
    if last_activity_days <= 30:
        return "POOR"
    return "CRITICAL"


def calculate_conversion_probability(
    category: str,
    days_active: float,
    followup_count: int,
    last_activity_days: float,
    urgency: str
) -> int:
    """Conversion estimate on a 0-100 scale"""
    probability = 50 * _SIZE_MULTIPLIERS.get(category, 1.0)

    if followup_count >= 5:
        probability += 15
    elif followup_count >= 3:
        probability += 10
    elif followup_count >= 1:
        probability += 5

    if last_activity_days <= 1:
        probability += 10
    elif last_activity_days <= 3:
        probability += 5
    elif last_activity_days <= 7:
        probability += 2
    elif last_activity_days > 14:
        probability -= 10

    probability *= _URGENCY_MULTIPLIERS.get(urgency, 1.0)
    probability *= max(0.7, 1 - (days_active / 365) * 0.3)

    return min(100, max(0, round(probability)))


# ==================== DEADLINES ====================

def calculate_days_to_deadline(deadline, now: datetime = None) -> int:
    return math.ceil((parse_iso(deadline) - _now(now)).total_seconds() / 86400)


def calculate_days_pending(start, now: datetime = None) -> int:
    return math.floor((_now(now) - parse_iso(start)).total_seconds() / 86400)


def is_overdue(deadline, now: datetime = None) -> bool:
    return _now(now) > parse_iso(deadline)


def calculate_compliance_status(deadline, status: str, reminder_count: int, now: datetime = None) -> dict:
    if is_overdue(deadline, now):
        if status == "PENDING":
            return {"status": "BREACHED", "recommendation": "Immediate escalation required - deadline exceeded"}
        return {"status": "COMPLIANT", "recommendation": "Deadline was met"}

    days = calculate_days_to_deadline(deadline, now)
    if days <= 1:
        if reminder_count > 0:
            return {"status": "WARNING", "recommendation": "Final reminder sent"}
        return {"status": "CRITICAL", "recommendation": "Send urgent reminder"}
    if days <= 7:
        if reminder_count > 0:
            return {"status": "COMPLIANT", "recommendation": "Regular monitoring"}
        return {"status": "WARNING", "recommendation": "Send reminder"}
    return {"status": "COMPLIANT", "recommendation": "Monitor regularly"}


def calculate_next_reminder_date(deadline, reminder_count: int = 0, now: datetime = None) -> datetime:
    current = _now(now)
    deadline_dt = parse_iso(deadline)
    days = calculate_days_to_deadline(deadline_dt, current)

    if days > 30:
        return deadline_dt - timedelta(days=30)
    if days <= 1:
        return current + timedelta(hours=2)
    if days <= 3:
        return current + timedelta(days=1)
    if days <= 7:
        return current + timedelta(days=3)

    intervals = [14, 7, 3, 1]
    before = intervals[reminder_count] if reminder_count < len(intervals) else 1
    return deadline_dt - timedelta(days=before)


# ==================== NOTIFICATIONS ====================

def optimize_notification_time(
    preferred_hour: int = 10,
    active_days: List[int] = None,
    now: datetime = None
) -> datetime:
    """
    Next slot at preferred_hour (IST) on an active weekday.
    active_days use isoweekday numbering (1 = Monday).
    """
    active_days = active_days or [1, 2, 3, 4, 5]
    current = to_ist(_now(now))
    slot = current.replace(hour=preferred_hour, minute=0, second=0, microsecond=0)
    if current > slot:
        slot += timedelta(days=1)
    while slot.isoweekday() not in active_days:
        slot += timedelta(days=1)
    return IST.normalize(slot).astimezone(timezone.utc)


def build_notification_message(
    user_name: str,
    notification_type: str,
    deal_value: float = None,
    days_to_deadline: int = None,
    urgency: str = "MEDIUM"
) -> dict:
    greeting = f"Hi {user_name}" if user_name else "Hello"
    value = f"Rs {deal_value:,.0f}" if deal_value else None

    if notification_type == "deal_deadline":
        if urgency == "CRITICAL":
            return {
                "title": "CRITICAL: Deal Deadline Today!",
                "message": f"{greeting}, your {value or 'high-value'} deal deadline expires today. Immediate action required!",
                "priority": "urgent",
                "action_required": True,
            }
        return {
            "title": "Deal Deadline Approaching",
            "message": f"{greeting}, your {value or 'deal'} deadline is in "
                       f"{days_to_deadline if days_to_deadline is not None else 'a few'} days.",
            "priority": "high",
            "action_required": True,
        }
    if notification_type == "follow_up_overdue":
        return {
            "title": "Overdue Follow-up",
            "message": f"{greeting}, you have overdue follow-ups that need immediate attention.",
            "priority": "high",
            "action_required": True,
        }
    if notification_type == "new_opportunity":
        return {
            "title": "New Sales Opportunity",
            "message": f"{greeting}, a {value or 'new'} opportunity has been assigned to you.",
            "priority": "medium",
            "action_required": False,
        }
    if notification_type == "deal_won":
        return {
            "title": "Deal Won!",
            "message": f"{greeting}, congratulations! Your {value or 'deal'} has been won.",
            "priority": "medium",
            "action_required": False,
        }
    if notification_type == "attendance_reminder":
        return {
            "title": "Attendance Reminder",
            "message": f"{greeting}, you have not submitted today's attendance yet.",
            "priority": "high",
            "action_required": True,
        }
    if notification_type == "attendance_reviewed":
        return {
            "title": "Attendance Reviewed",
            "message": f"{greeting}, your attendance has been reviewed.",
            "priority": "medium",
            "action_required": False,
        }
    return {
        "title": "CRM Update",
        "message": f"{greeting}, you have a new CRM notification.",
        "priority": "low",
        "action_required": False,
    }


# ==================== EFFECTIVENESS / PERFORMANCE ====================

def calculate_followup_effectiveness(
    response_received: bool,
    response_quality: str,
    completion_minutes: float,
    action_type: str,
    deal_value: float
) -> int:
    score = 50
    if response_received:
        score += 30
        score *= _QUALITY_MULTIPLIERS.get(response_quality, 1.0)
    else:
        score -= 20

    if completion_minutes <= 5:
        score += 10
    elif completion_minutes <= 15:
        score += 5
    elif completion_minutes > 60:
        score -= 10

    if deal_value > 5_000_000:
        score += 5

    score *= _ACTION_TYPE_MULTIPLIERS.get(action_type, 1.0)
    return min(100, max(0, round(score)))


def calculate_sales_performance(
    deals_won: int,
    total_deals: int,
    average_deal_size: float,
    conversion_rate: float,
    followup_effectiveness: float
) -> dict:
    score = 0
    recommendations = []

    if conversion_rate > 0.8:
        score += 30
    elif conversion_rate > 0.6:
        score += 20
    elif conversion_rate > 0.4:
        score += 10
    else:
        recommendations.append("Focus on improving conversion rates")

    if deals_won > 10:
        score += 20
    elif deals_won > 5:
        score += 15
    elif deals_won > 2:
        score += 10
    else:
        recommendations.append("Increase deal closing volume")

    if average_deal_size > 2_000_000:
        score += 25
    elif average_deal_size > 1_000_000:
        score += 20
    elif average_deal_size > 500_000:
        score += 15
    else:
        recommendations.append("Target higher-value deals")

    if followup_effectiveness > 80:
        score += 25
    elif followup_effectiveness > 60:
        score += 20
    elif followup_effectiveness > 40:
        score += 15
    else:
        recommendations.append("Improve follow-up effectiveness")

    if score >= 90:
        grade = "A+ (Outstanding)"
    elif score >= 80:
        grade = "A (Excellent)"
    elif score >= 70:
        grade = "B (Good)"
    elif score >= 60:
        grade = "C (Average)"
    elif score >= 50:
        grade = "D (Below Average)"
    else:
        grade = "F (Needs Improvement)"

    return {"score": score, "grade": grade, "recommendations": recommendations, "total_deals": total_deals}


def generate_next_action_recommendations(
    deal_status: str,
    last_activity_days: float,
    followup_count: int,
    deal_value: float,
    urgency: str
) -> List[str]:
    recommendations = []

    if deal_status == "BIDDING" and last_activity_days > 7:
        recommendations.append(
            f"Schedule follow-up call - deal has been inactive for {last_activity_days} days"
        )
    if followup_count == 0 and deal_value > 1_000_000:
        recommendations.append("High-value deal needs immediate follow-up")
    if urgency == "CRITICAL":
        recommendations.append("URGENT: Schedule immediate client meeting")
    if last_activity_days > 14:
        recommendations.append("Deal at risk - send personalized email to re-engage")
    if deal_value > 5_000_000 and followup_count < 3:
        recommendations.append("Enterprise deal requires more touchpoints")

    if not recommendations:
        recommendations.append("Continue regular follow-ups to maintain momentum")
    return recommendations


# ==================== FOLLOW-UP ENRICHMENT ====================

def followup_linked_type(doc: dict) -> str:
    if doc.get("opportunity_id"):
        return "OPPORTUNITY"
    if doc.get("lead_id"):
        return "LEAD"
    if doc.get("pipeline_id"):
        return "PIPELINE"
    return "NONE"


def enrich_followup(doc: dict, now: datetime = None, linked_names: dict = None) -> dict:
    """
    Add computed fields to a stored follow-up.
    linked_names: {"opportunity": {id: name}, "lead": {...}, "pipeline": {...}}
    """
    current = _now(now)
    linked_names = linked_names or {}
    follow_up_date = parse_iso(doc.get("follow_up_date"))
    created = parse_iso(doc.get("created_at"))

    overdue = doc.get("status") == "SCHEDULED" and follow_up_date is not None and follow_up_date < current
    is_today = created is not None and to_ist(created).date() == to_ist(current).date()
    days_until = math.ceil((follow_up_date - current).total_seconds() / 86400) if follow_up_date else 0
    days_overdue = math.ceil((current - follow_up_date).total_seconds() / 86400) if overdue else 0

    priority = doc.get("urgency_level") or (
        "CRITICAL" if overdue else "HIGH" if is_today else "MEDIUM" if days_until <= 1 else "LOW"
    )

    effectiveness = doc.get("effectiveness_score")
    if doc.get("status") == "COMPLETED" and not effectiveness:
        effectiveness = calculate_followup_effectiveness(
            doc.get("response_received", False),
            doc.get("response_quality") or "GOOD",
            DEFAULT_COMPLETION_MINUTES,
            doc.get("action_type"),
            0,
        )

    recommendations = generate_next_action_recommendations(
        doc.get("status"), days_until, 1, 0, "CRITICAL" if overdue else "MEDIUM"
    )
    optimal_time = optimize_notification_time(now=current)

    linked_type = followup_linked_type(doc)
    linked_name = None
    if linked_type != "NONE":
        key = linked_type.lower()
        linked_id = doc.get(f"{key}_id")
        linked_name = linked_names.get(key, {}).get(linked_id) or f"{linked_type.title()} #{linked_id}"

    enriched = dict(doc)
    enriched.update({
        "is_overdue": overdue,
        "is_today": is_today,
        "days_overdue": days_overdue,
        "days_until_follow_up": days_until,
        "priority": priority,
        "effectiveness_score": effectiveness,
        "recommendations": recommendations,
        "optimal_notification_time": optimal_time.isoformat(),
        "smart_insights": {
            "timing_optimization": f"Best time to contact: {to_ist(optimal_time).strftime('%H:%M')} IST",
            "effectiveness": f"{effectiveness}% effective" if effectiveness else "Not rated yet",
            "risk_level": "HIGH" if overdue else "MEDIUM" if days_until <= 1 else "LOW",
        },
        "linked_type": linked_type,
        "linked_name": linked_name,
    })
    return enriched


def followup_analytics(followups: List[dict]) -> dict:
    total = len(followups)
    completed = len([f for f in followups if f.get("status") == "COMPLETED"])
    rated = [f["effectiveness_score"] for f in followups if f.get("effectiveness_score")]
    return {
        "total": total,
        "completed": completed,
        "scheduled": len([f for f in followups if f.get("status") == "SCHEDULED"]),
        "overdue": len([f for f in followups if f.get("is_overdue")]),
        "today": len([f for f in followups if f.get("is_today")]),
        "completion_rate": completed / total * 100 if total else 0,
        "average_effectiveness": sum(rated) / len(rated) if rated else 0,
    }
