"""
Sales CRM - Event Logger

Audit trail for sensitive actions (logins, conversions, stage changes,
attendance submissions and reviews).
Single function to call from any route/service.
"""

import uuid
import logging
from config import db, now_iso

logger = logging.getLogger("event_log")


async def log_event(
    action: str,
    entity_type: str,
    entity_id: str,
    user: dict = None,
    details: dict = None,
    related: dict = None
):
    """
    Write a single event to the event_log collection.

    Args:
        action: e.g. login, lead_convert, stage_change, attendance_submit
        entity_type: user | company | lead | opportunity | pipeline | followup | attendance
        entity_id: ID of the primary entity
        user: acting user document (None = system)
        details: free-form dict (reason, old_value, new_value, etc.)
        related: linked entity IDs (lead_id, opportunity_id, company_id, etc.)
    """
    event = {
        "id": str(uuid.uuid4()),
        "action": action,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "user_id": user.get("id") if user else None,
        "user": user.get("email") if user else "system",
        "details": details or {},
        "related": related or {},
        "created_at": now_iso()
    }
    await db.event_log.insert_one(event)
    logger.debug(f"[EVENT] {action} {entity_type}={entity_id} by={event['user']}")
