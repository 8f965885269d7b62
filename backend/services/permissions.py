"""
Sales CRM - Permission System
Granular permission keys + role presets + FastAPI dependencies.
Permissions are the source of truth. Roles are presets only.
Ownership: non-admin users only see the records they own.
"""

import logging
from typing import Dict
from fastapi import Depends, HTTPException

from config import ADMIN_ROLES

logger = logging.getLogger("permissions")

# ════════════════════════════════════════════════════════════════════════
# ALL PERMISSION KEYS
# ════════════════════════════════════════════════════════════════════════

ALL_PERMISSION_KEYS = [
    "dashboard.view",

    "companies.view",
    "companies.edit",
    "companies.delete",

    "leads.view",
    "leads.edit",
    "leads.delete",

    "opportunities.view",
    "opportunities.edit",
    "opportunities.delete",

    "pipelines.view",
    "pipelines.edit",

    "followups.view",
    "followups.edit",

    "attendance.submit",

    "analytics.view",

    "activity.view",

    "users.manage",
]

# ════════════════════════════════════════════════════════════════════════
# ROLE PRESETS (defaults when creating a user with a role)
# ════════════════════════════════════════════════════════════════════════

_SALES_KEYS = [
    "dashboard.view",
    "companies.view", "companies.edit",
    "leads.view", "leads.edit",
    "opportunities.view", "opportunities.edit",
    "pipelines.view", "pipelines.edit",
    "followups.view", "followups.edit",
    "attendance.submit",
    "analytics.view",
]

ROLE_PRESETS: Dict[str, Dict[str, bool]] = {
    "super_admin": {k: True for k in ALL_PERMISSION_KEYS},

    "admin": {k: True for k in ALL_PERMISSION_KEYS},

    "manager": {
        k: k in _SALES_KEYS or k in ("activity.view", "companies.delete")
        for k in ALL_PERMISSION_KEYS
    },

    "sales": {k: k in _SALES_KEYS for k in ALL_PERMISSION_KEYS},
}

VALID_ROLES = list(ROLE_PRESETS.keys())


def get_preset_permissions(role: str) -> Dict[str, bool]:
    """Returns the default permissions for a role."""
    return dict(ROLE_PRESETS.get(role, ROLE_PRESETS["sales"]))


# ════════════════════════════════════════════════════════════════════════
# PERMISSION CHECK HELPERS
# ════════════════════════════════════════════════════════════════════════

def user_has_permission(user: dict, key: str) -> bool:
    """Check if user has a specific permission."""
    if user.get("role") == "super_admin":
        return True
    perms = user.get("permissions", {})
    return perms.get(key, False) is True


def is_admin(user: dict) -> bool:
    return user.get("role") in ADMIN_ROLES


def owner_filter(user: dict, field: str = "owner_id") -> dict:
    """
    MongoDB filter for ownership isolation.
    admin / super_admin -> no filter
    others -> only their own documents
    """
    if is_admin(user):
        return {}
    return {field: user["id"]}


def ensure_owner(user: dict, doc: dict, field: str = "owner_id"):
    """403 when a non-admin touches someone else's document."""
    if is_admin(user):
        return
    if doc.get(field) != user["id"]:
        logger.warning(
            f"[OWNERSHIP_DENIED] user={user.get('email')} doc={doc.get('id')} field={field}"
        )
        raise HTTPException(status_code=403, detail="Access denied")


# ════════════════════════════════════════════════════════════════════════
# FASTAPI DEPENDENCIES
# ════════════════════════════════════════════════════════════════════════

def require_permission(permission_key: str):
    """
    FastAPI dependency factory.
    Usage: user: dict = Depends(require_permission("leads.view"))
    """
    from routes.auth import get_current_user

    async def _check(user: dict = Depends(get_current_user)):
        if not user_has_permission(user, permission_key):
            logger.warning(
                f"[PERMISSION_DENIED] user={user.get('email')} "
                f"key={permission_key} role={user.get('role')}"
            )
            raise HTTPException(
                status_code=403,
                detail=f"Permission required: {permission_key}"
            )
        return user

    return _check


def require_admin():
    """FastAPI dependency: admin or super_admin only."""
    from routes.auth import get_current_user

    async def _check(user: dict = Depends(get_current_user)):
        if not is_admin(user):
            raise HTTPException(status_code=403, detail="Admin access required")
        return user

    return _check
