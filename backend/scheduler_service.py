"""
Scheduler for the automatic Sales CRM jobs
- Attendance reminder at 10:00 IST (Mon-Sat)
- Attendance daily report at 13:30 IST (Mon-Sat)
- Overdue follow-up notifications every hour at :15
"""

import uuid
import logging
from datetime import datetime, timezone
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

import config
from services.notifier import notify_user

logger = logging.getLogger("scheduler")

WORKING_DAYS = "mon-sat"


class TaskScheduler:
    """Scheduled job manager"""

    def __init__(self):
        self.scheduler = AsyncIOScheduler(timezone=config.IST)

    @property
    def db(self):
        return config.db

    def start(self):
        """Register every job and start the scheduler"""
        self.scheduler.add_job(
            self.send_attendance_reminders,
            CronTrigger(day_of_week=WORKING_DAYS, hour=10, minute=0),
            id="attendance_reminder",
            name="Attendance reminder",
            replace_existing=True
        )

        self.scheduler.add_job(
            self.build_attendance_report,
            CronTrigger(day_of_week=WORKING_DAYS, hour=13, minute=30),
            id="attendance_daily_report",
            name="Attendance daily report",
            replace_existing=True
        )

        self.scheduler.add_job(
            self.notify_overdue_followups,
            CronTrigger(minute=15),
            id="overdue_followups",
            name="Overdue follow-up notifications",
            replace_existing=True
        )

        self.scheduler.start()
        logger.info("Scheduler started")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown()
            logger.info("Scheduler stopped")

    # ==================== JOBS ====================

    async def _missing_users(self, date_ist: str) -> list:
        users = await self.db.users.find(
            {"is_active": {"$ne": False}}, {"_id": 0, "password": 0}
        ).to_list(5000)
        submitted = await self.db.attendance.distinct("user_id", {"date_ist": date_ist})
        return [u for u in users if u["id"] not in set(submitted)]

    async def send_attendance_reminders(self, now: datetime = None) -> int:
        """In-app reminder for every active user without today's attendance"""
        try:
            date_ist = config.today_ist(now)
            missing = await self._missing_users(date_ist)
            for user in missing:
                await notify_user(user, "attendance_reminder", data={"date_ist": date_ist})
            logger.info(f"[SCHEDULER] attendance reminders sent: {len(missing)} ({date_ist})")
            return len(missing)
        except Exception as e:
            logger.error(f"[SCHEDULER] attendance reminder failed: {str(e)}")
            return 0

    async def build_attendance_report(self, now: datetime = None) -> dict:
        """Store the day's attendance summary in attendance_reports"""
        try:
            date_ist = config.today_ist(now)
            records = await self.db.attendance.find({"date_ist": date_ist}, {"_id": 0}).to_list(5000)
            missing = await self._missing_users(date_ist)

            def _count(status):
                return len([r for r in records if r.get("status") == status])

            report = {
                "id": str(uuid.uuid4()),
                "date_ist": date_ist,
                "submitted": len(records),
                "approved": _count("APPROVED"),
                "rejected": _count("REJECTED"),
                "flagged": _count("AUTO_FLAGGED"),
                "amended": _count("AMENDED"),
                "missing": len(missing),
                "missing_user_ids": [u["id"] for u in missing],
                "created_at": config.now_iso(),
            }
            await self.db.attendance_reports.replace_one({"date_ist": date_ist}, report, upsert=True)
            report.pop("_id", None)
            logger.info(
                f"[SCHEDULER] attendance report {date_ist}: "
                f"{report['submitted']} submitted, {report['missing']} missing"
            )
            return report
        except Exception as e:
            logger.error(f"[SCHEDULER] attendance report failed: {str(e)}")
            return {}

    async def notify_overdue_followups(self, now: datetime = None) -> int:
        """One follow_up_overdue notification per overdue SCHEDULED follow-up"""
        try:
            current = now or datetime.now(timezone.utc)
            overdue = await self.db.daily_follow_ups.find({
                "status": "SCHEDULED",
                "follow_up_date": {"$lt": current.isoformat()},
                "overdue_notified": {"$ne": True},
            }, {"_id": 0}).to_list(1000)

            sent = 0
            for followup in overdue:
                owner = await self.db.users.find_one(
                    {"id": followup["created_by_id"]}, {"_id": 0, "password": 0}
                )
                if owner:
                    await notify_user(owner, "follow_up_overdue", data={
                        "followup_id": followup["id"],
                        "follow_up_date": followup.get("follow_up_date"),
                    })
                    sent += 1
                await self.db.daily_follow_ups.update_one(
                    {"id": followup["id"]}, {"$set": {"overdue_notified": True}}
                )

            if sent:
                logger.info(f"[SCHEDULER] overdue follow-up notifications: {sent}")
            return sent
        except Exception as e:
            logger.error(f"[SCHEDULER] overdue follow-ups failed: {str(e)}")
            return 0


task_scheduler = TaskScheduler()
