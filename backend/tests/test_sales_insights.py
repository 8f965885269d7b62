"""
Sales CRM - Sales insights unit tests
Run: cd backend && pytest tests/test_sales_insights.py -v
"""

from datetime import datetime, timezone, timedelta

from services.sales_insights import (
    categorize_deal_value,
    calculate_urgency_level,
    assess_deal_health,
    calculate_conversion_probability,
    calculate_followup_effectiveness,
    calculate_compliance_status,
    calculate_next_reminder_date,
    optimize_notification_time,
    build_notification_message,
    calculate_sales_performance,
    generate_next_action_recommendations,
    enrich_followup,
    followup_analytics,
)

# Tuesday 11:30 IST
NOW = datetime(2026, 3, 10, 6, 0, tzinfo=timezone.utc)


# ═══════════════════════════════════════════════════════════════
# 1. DEALS
# ═══════════════════════════════════════════════════════════════

class TestDealInsights:
    def test_categories(self):
        values = (999_999, 1_000_000, 5_000_000, 20_000_000, 100_000_000)
        assert [categorize_deal_value(v) for v in values] == [
            "MICRO", "SMALL", "MEDIUM", "LARGE", "ENTERPRISE",
        ]

    def test_urgency(self):
        assert calculate_urgency_level(None, "ENTERPRISE") == "LOW"
        assert calculate_urgency_level(7, "ENTERPRISE") == "CRITICAL"
        assert calculate_urgency_level(14, "LARGE") == "HIGH"
        assert calculate_urgency_level(30, "MICRO") == "MEDIUM"
        assert calculate_urgency_level(31, "MICRO") == "LOW"

    def test_health(self):
        assert assess_deal_health("ONGOING", 3, 3) == "EXCELLENT"
        assert assess_deal_health("PROPOSAL", 7, 1) == "GOOD"
        assert assess_deal_health("PROPOSAL", 10, 0) == "FAIR"
        assert assess_deal_health("PROPOSAL", 20, 0) == "POOR"
        assert assess_deal_health("PROPOSAL", 31, 5) == "CRITICAL"

    def test_conversion(self):
        assert calculate_conversion_probability("MEDIUM", 0, 5, 1, "HIGH") == 90
        assert calculate_conversion_probability("ENTERPRISE", 0, 5, 1, "CRITICAL") == 100

    def test_next_actions(self):
        assert generate_next_action_recommendations("PROPOSAL", 1, 3, 10_000, "LOW") == [
            "Continue regular follow-ups to maintain momentum"
        ]
        recs = generate_next_action_recommendations("BIDDING", 20, 0, 6_000_000, "CRITICAL")
        assert len(recs) == 5


# ═══════════════════════════════════════════════════════════════
# 2. FOLLOW-UP EFFECTIVENESS
# ═══════════════════════════════════════════════════════════════

class TestEffectiveness:
    def test_capped_at_100(self):
        assert calculate_followup_effectiveness(True, "EXCELLENT", 5, "MEETING", 6_000_000) == 100

    def test_no_response(self):
        assert calculate_followup_effectiveness(False, None, 30, "EMAIL", 0) == 27

    def test_slow_fair_message(self):
        assert calculate_followup_effectiveness(True, "FAIR", 90, "MESSAGE", 0) == 37


# ═══════════════════════════════════════════════════════════════
# 3. DEADLINES / NOTIFICATIONS
# ═══════════════════════════════════════════════════════════════

class TestDeadlines:
    def test_compliance(self):
        past = NOW - timedelta(days=1)
        assert calculate_compliance_status(past, "PENDING", 0, NOW)["status"] == "BREACHED"
        assert calculate_compliance_status(past, "DONE", 0, NOW)["status"] == "COMPLIANT"
        tomorrow = NOW + timedelta(days=1)
        assert calculate_compliance_status(tomorrow, "PENDING", 0, NOW)["status"] == "CRITICAL"
        assert calculate_compliance_status(tomorrow, "PENDING", 1, NOW)["status"] == "WARNING"
        assert calculate_compliance_status(NOW + timedelta(days=5), "PENDING", 0, NOW)["status"] == "WARNING"
        assert calculate_compliance_status(NOW + timedelta(days=20), "PENDING", 0, NOW)["status"] == "COMPLIANT"

    def test_next_reminder(self):
        far = NOW + timedelta(days=60)
        assert calculate_next_reminder_date(far, now=NOW) == far - timedelta(days=30)
        assert calculate_next_reminder_date(NOW + timedelta(days=1), now=NOW) == NOW + timedelta(hours=2)
        assert calculate_next_reminder_date(NOW + timedelta(days=2), now=NOW) == NOW + timedelta(days=1)
        assert calculate_next_reminder_date(NOW + timedelta(days=5), now=NOW) == NOW + timedelta(days=3)
        mid = NOW + timedelta(days=20)
        assert calculate_next_reminder_date(mid, 0, NOW) == mid - timedelta(days=14)
        assert calculate_next_reminder_date(mid, 9, NOW) == mid - timedelta(days=1)

    def test_notification_time_same_day(self):
        # Monday 07:30 IST -> 10:00 IST the same day
        monday = datetime(2026, 3, 9, 2, 0, tzinfo=timezone.utc)
        assert optimize_notification_time(now=monday) == datetime(2026, 3, 9, 4, 30, tzinfo=timezone.utc)

    def test_notification_time_skips_weekend(self):
        # Friday 11:00 IST -> Monday 10:00 IST
        friday = datetime(2026, 3, 13, 5, 30, tzinfo=timezone.utc)
        assert optimize_notification_time(now=friday) == datetime(2026, 3, 16, 4, 30, tzinfo=timezone.utc)

    def test_messages(self):
        msg = build_notification_message("Asha", "deal_deadline", 2_500_000, 3)
        assert msg["message"] == "Hi Asha, your Rs 2,500,000 deadline is in 3 days."
        assert build_notification_message("", "deal_deadline", urgency="CRITICAL")["priority"] == "urgent"
        assert build_notification_message("Asha", "attendance_reminder")["action_required"] is True
        assert build_notification_message("Asha", "unknown")["title"] == "CRM Update"


# ═══════════════════════════════════════════════════════════════
# 4. PERFORMANCE
# ═══════════════════════════════════════════════════════════════

class TestPerformance:
    def test_outstanding(self):
        result = calculate_sales_performance(12, 15, 3_000_000, 0.9, 90)
        assert result["score"] == 100
        assert result["grade"] == "A+ (Outstanding)"
        assert result["recommendations"] == []

    def test_needs_improvement(self):
        result = calculate_sales_performance(0, 0, 0, 0, 0)
        assert result["score"] == 0
        assert result["grade"] == "F (Needs Improvement)"
        assert len(result["recommendations"]) == 4


# ═══════════════════════════════════════════════════════════════
# 5. FOLLOW-UP ENRICHMENT
# ═══════════════════════════════════════════════════════════════

class TestEnrichFollowup:
    def test_overdue_scheduled(self):
        doc = {
            "id": "f1", "status": "SCHEDULED", "action_type": "CALL",
            "follow_up_date": (NOW - timedelta(days=2)).isoformat(),
            "created_at": (NOW - timedelta(days=3)).isoformat(),
            "opportunity_id": "o1",
        }
        result = enrich_followup(doc, NOW, {"opportunity": {"o1": "Pump order"}})
        assert result["is_overdue"] is True
        assert result["is_today"] is False
        assert result["days_overdue"] == 2
        assert result["priority"] == "CRITICAL"
        assert result["smart_insights"]["risk_level"] == "HIGH"
        assert result["linked_type"] == "OPPORTUNITY"
        assert result["linked_name"] == "Pump order"

    def test_created_today_and_explicit_urgency(self):
        doc = {
            "id": "f2", "status": "SCHEDULED", "urgency_level": "LOW",
            "follow_up_date": (NOW + timedelta(days=3)).isoformat(),
            "created_at": NOW.isoformat(), "lead_id": "l9",
        }
        result = enrich_followup(doc, NOW)
        assert result["is_today"] is True
        assert result["is_overdue"] is False
        assert result["priority"] == "LOW"
        assert result["linked_name"] == "Lead #l9"

    def test_completed_gets_effectiveness(self):
        doc = {"id": "f3", "status": "COMPLETED", "action_type": "CALL",
               "follow_up_date": NOW.isoformat(), "created_at": NOW.isoformat()}
        result = enrich_followup(doc, NOW)
        assert result["effectiveness_score"] == 36
        assert result["linked_type"] == "NONE"
        assert result["linked_name"] is None

    def test_analytics(self):
        docs = [
            {"status": "COMPLETED", "effectiveness_score": 80},
            {"status": "COMPLETED", "effectiveness_score": 60},
            {"status": "SCHEDULED", "is_overdue": True},
            {"status": "SCHEDULED", "is_today": True},
        ]
        result = followup_analytics(docs)
        assert result["completion_rate"] == 50
        assert result["average_effectiveness"] == 70
        assert result["overdue"] == 1
        assert result["today"] == 1
        assert followup_analytics([])["completion_rate"] == 0
