"""
Sales CRM - Routes Auth
Login / Logout / Session / User CRUD with granular permissions.
"""

from fastapi import APIRouter, HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from datetime import datetime, timezone, timedelta
import uuid

from models.auth import UserLogin, UserCreate, UserUpdate
from config import db, hash_password, generate_token, now_iso, SESSION_DAYS
from services.event_logger import log_event
from services.permissions import (
    get_preset_permissions,
    VALID_ROLES,
    ROLE_PRESETS,
    ALL_PERMISSION_KEYS,
    require_permission,
)

router = APIRouter(prefix="/auth", tags=["Auth"])
security = HTTPBearer(auto_error=False)


# ==================== HELPERS ====================

async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Resolve the logged-in user from the Bearer token."""
    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")

    session = await db.sessions.find_one({
        "token": credentials.credentials,
        "expires_at": {"$gt": now_iso()}
    })

    if not session:
        raise HTTPException(status_code=401, detail="Session expired")

    user = await db.users.find_one(
        {"id": session["user_id"]},
        {"_id": 0, "password": 0}
    )

    if not user:
        raise HTTPException(status_code=401, detail="User not found")

    if not user.get("is_active", True):
        raise HTTPException(status_code=403, detail="Account disabled")

    if not user.get("permissions"):
        user["permissions"] = get_preset_permissions(user.get("role", "sales"))

    return user


# ==================== LOGIN / LOGOUT ====================

@router.post("/login")
async def login(data: UserLogin):
    user = await db.users.find_one(
        {"email": data.email.lower().strip()},
        {"_id": 0}
    )

    if not user or user.get("password") != hash_password(data.password):
        raise HTTPException(status_code=401, detail="Invalid email or password")

    if not user.get("is_active", True):
        raise HTTPException(status_code=403, detail="Account disabled")

    token = generate_token()
    expires_at = (datetime.now(timezone.utc) + timedelta(days=SESSION_DAYS)).isoformat()

    await db.sessions.insert_one({
        "token": token,
        "user_id": user["id"],
        "created_at": now_iso(),
        "expires_at": expires_at
    })

    await log_event("login", "user", user["id"], user=user)

    return {
        "token": token,
        "user": {
            "id": user["id"],
            "email": user["email"],
            "name": user.get("name", ""),
            "role": user.get("role", "sales"),
            "permissions": user.get("permissions") or get_preset_permissions(user.get("role", "sales")),
        }
    }


@router.post("/logout")
async def logout(
    user: dict = Depends(get_current_user),
    credentials: HTTPAuthorizationCredentials = Depends(security)
):
    await db.sessions.delete_one({"token": credentials.credentials})
    return {"success": True}


@router.get("/me")
async def get_me(user: dict = Depends(get_current_user)):
    return user


# ==================== USER CRUD (users.manage) ====================

@router.get("/users")
async def list_users(user: dict = Depends(require_permission("users.manage"))):
    users = await db.users.find({}, {"_id": 0, "password": 0}).sort("name", 1).to_list(500)
    return {"users": users, "count": len(users)}


@router.post("/users", status_code=201)
async def create_user(data: UserCreate, user: dict = Depends(require_permission("users.manage"))):
    email = data.email.lower().strip()
    if await db.users.find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already exists")

    if data.role == "super_admin" and user.get("role") != "super_admin":
        raise HTTPException(status_code=403, detail="Only a super_admin can create a super_admin")

    new_user = {
        "id": str(uuid.uuid4()),
        "email": email,
        "password": hash_password(data.password),
        "name": data.name,
        "phone": data.phone,
        "role": data.role,
        "permissions": data.permissions or get_preset_permissions(data.role),
        "is_active": True,
        "created_at": now_iso(),
        "created_by": user.get("id")
    }

    await db.users.insert_one(new_user)
    await log_event("create_user", "user", new_user["id"], user=user, details={"role": data.role})

    new_user.pop("password", None)
    new_user.pop("_id", None)
    return {"success": True, "user": new_user}


@router.put("/users/{user_id}")
async def update_user(user_id: str, data: UserUpdate, user: dict = Depends(require_permission("users.manage"))):
    target = await db.users.find_one({"id": user_id})
    if not target:
        raise HTTPException(status_code=404, detail="User not found")

    if target.get("role") == "super_admin" and user.get("role") != "super_admin":
        raise HTTPException(status_code=403, detail="Cannot modify a super_admin")

    update_data = {}
    if data.name is not None:
        update_data["name"] = data.name
    if data.phone is not None:
        update_data["phone"] = data.phone
    if data.password is not None:
        update_data["password"] = hash_password(data.password)
    if data.role is not None:
        if data.role == "super_admin" and user.get("role") != "super_admin":
            raise HTTPException(status_code=403, detail="Cannot assign the super_admin role")
        update_data["role"] = data.role
        if data.permissions is None:
            update_data["permissions"] = get_preset_permissions(data.role)
    if data.permissions is not None:
        update_data["permissions"] = data.permissions
    if data.is_active is not None:
        update_data["is_active"] = data.is_active

    update_data["updated_at"] = now_iso()
    await db.users.update_one({"id": user_id}, {"$set": update_data})

    await log_event(
        "update_user", "user", user_id, user=user,
        details={k: v for k, v in update_data.items() if k not in ("updated_at", "password")}
    )

    updated = await db.users.find_one({"id": user_id}, {"_id": 0, "password": 0})
    return {"success": True, "user": updated}


@router.delete("/users/{user_id}")
async def deactivate_user(user_id: str, user: dict = Depends(require_permission("users.manage"))):
    target = await db.users.find_one({"id": user_id})
    if not target:
        raise HTTPException(status_code=404, detail="User not found")

    if user_id == user.get("id"):
        raise HTTPException(status_code=400, detail="You cannot deactivate your own account")

    if target.get("role") == "super_admin" and user.get("role") != "super_admin":
        raise HTTPException(status_code=403, detail="Cannot deactivate a super_admin")

    await db.users.update_one(
        {"id": user_id},
        {"$set": {"is_active": False, "deactivated_at": now_iso()}}
    )
    await db.sessions.delete_many({"user_id": user_id})
    await log_event("deactivate_user", "user", user_id, user=user)

    return {"success": True}


@router.get("/permission-keys")
async def list_permission_keys(user: dict = Depends(require_permission("users.manage"))):
    """All permission keys and role presets (for the user management UI)."""
    return {
        "keys": ALL_PERMISSION_KEYS,
        "presets": ROLE_PRESETS,
        "roles": VALID_ROLES
    }
