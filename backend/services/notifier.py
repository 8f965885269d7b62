"""
Sales CRM - In-app notifications

Notifications are plain documents in the `notifications` collection,
read by the client through /api/notifications. No email or push delivery.
"""

import uuid
import logging
from typing import List

from config import db, now_iso
from services.sales_insights import build_notification_message

logger = logging.getLogger("notifier")


async def notify_user(
    user: dict,
    notification_type: str,
    data: dict = None,
    **message_kwargs
) -> dict:
    """Create one notification for a user, built from the message templates."""
    message = build_notification_message(user.get("name", ""), notification_type, **message_kwargs)
    notification = {
        "id": str(uuid.uuid4()),
        "user_id": user["id"],
        "type": notification_type,
        "title": message["title"],
        "message": message["message"],
        "priority": message["priority"],
        "action_required": message["action_required"],
        "data": data or {},
        "read": False,
        "created_at": now_iso(),
    }
    await db.notifications.insert_one(notification)
    notification.pop("_id", None)
    logger.info(f"[NOTIFY] {notification_type} -> {user.get('email', user['id'])}")
    return notification


async def notify_users(user_ids: List[str], notification_type: str, data: dict = None, **message_kwargs) -> int:
    """Notify several users by id; unknown ids are skipped."""
    if not user_ids:
        return 0
    users = await db.users.find(
        {"id": {"$in": list(user_ids)}}, {"_id": 0, "password": 0}
    ).to_list(len(user_ids))
    for user in users:
        await notify_user(user, notification_type, data=data, **message_kwargs)
    return len(users)
