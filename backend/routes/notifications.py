"""
Sales CRM - Routes Notifications
In-app notifications for the current user (attendance reminders, reviews,
overdue follow-ups).
"""

from fastapi import APIRouter, Depends, HTTPException

from config import db, now_iso
from routes.auth import get_current_user

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get("")
async def list_notifications(
    unread_only: bool = False,
    limit: int = 50,
    user: dict = Depends(get_current_user)
):
    query = {"user_id": user["id"]}
    if unread_only:
        query["read"] = False

    notifications = await db.notifications.find(
        query, {"_id": 0}
    ).sort("created_at", -1).limit(limit).to_list(limit)
    unread = await db.notifications.count_documents({"user_id": user["id"], "read": False})

    return {"notifications": notifications, "count": len(notifications), "unread": unread}


@router.put("/read-all")
async def mark_all_read(user: dict = Depends(get_current_user)):
    result = await db.notifications.update_many(
        {"user_id": user["id"], "read": False},
        {"$set": {"read": True, "read_at": now_iso()}}
    )
    return {"success": True, "updated_count": result.modified_count}


@router.put("/{notification_id}/read")
async def mark_read(notification_id: str, user: dict = Depends(get_current_user)):
    result = await db.notifications.update_one(
        {"id": notification_id, "user_id": user["id"]},
        {"$set": {"read": True, "read_at": now_iso()}}
    )
    if not result.matched_count:
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"success": True}
