"""
Sales CRM - API Backend
Leads, opportunities, weighted pipeline, follow-ups, field attendance
and sales analytics.

Start with:
    uvicorn server:app --host 0.0.0.0 --port 8001 --reload
"""

import os
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Logging configuration
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("sales_crm")

app = FastAPI(
    title="Sales CRM",
    description="Sales pipeline, follow-up and attendance management",
    version="1.0.0"
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ==================== ROUTES ====================

from routes import (
    auth,
    companies,
    contacts,
    leads,
    opportunities,
    pipelines,
    daily_followups,
    activities,
    attendance,
    analytics,
    notifications,
    event_log,
)

app.include_router(auth.router, prefix="/api")
app.include_router(companies.router, prefix="/api")
app.include_router(contacts.router, prefix="/api")
app.include_router(leads.router, prefix="/api")
app.include_router(opportunities.router, prefix="/api")
app.include_router(pipelines.router, prefix="/api")
app.include_router(daily_followups.router, prefix="/api")
app.include_router(activities.router, prefix="/api")
app.include_router(attendance.router, prefix="/api")
app.include_router(analytics.router, prefix="/api")
app.include_router(notifications.router, prefix="/api")
app.include_router(event_log.router, prefix="/api")


# ==================== ROOT ====================

@app.get("/")
async def root():
    return {
        "name": "Sales CRM API",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs"
    }


@app.get("/api/")
async def api_root():
    return {"name": "Sales CRM API", "status": "running"}


# ==================== STARTUP / SHUTDOWN ====================

@app.on_event("startup")
async def startup():
    from config import db
    from scheduler_service import task_scheduler

    await db.users.create_index("email", unique=True)
    await db.sessions.create_index("token")
    await db.sessions.create_index("expires_at")
    await db.companies.create_index("name")
    await db.leads.create_index("owner_id")
    await db.leads.create_index("status")
    await db.opportunities.create_index("owner_id")
    await db.opportunities.create_index("stage")
    await db.pipelines.create_index("owner_id")
    await db.attendance.create_index([("user_id", 1), ("date_ist", 1)], unique=True)
    await db.attendance.create_index("date_ist")
    await db.daily_follow_ups.create_index("created_by_id")
    await db.daily_follow_ups.create_index("follow_up_date")
    await db.activities.create_index("opportunity_id")
    await db.notifications.create_index([("user_id", 1), ("read", 1)])
    await db.event_log.create_index("created_at")
    logger.info("MongoDB indexes created")

    task_scheduler.start()
    logger.info("Sales CRM API started")


@app.on_event("shutdown")
async def shutdown():
    from config import client
    from scheduler_service import task_scheduler

    task_scheduler.stop()
    client.close()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
