"""
Sales CRM - Auth & user models
Role + Permission hybrid model.
Roles are presets. Permissions are the real authority.
"""

from pydantic import BaseModel, validator
from typing import Optional, Dict


VALID_ROLES = ["super_admin", "admin", "manager", "sales"]


def _check_password(v):
    if v is not None and len(v) < 6:
        raise ValueError("Password must be at least 6 characters")
    return v


class UserLogin(BaseModel):
    email: str
    password: str


class UserCreate(BaseModel):
    email: str
    password: str
    name: str
    role: str = "sales"
    phone: Optional[str] = None
    permissions: Optional[Dict[str, bool]] = None

    @validator("role")
    def validate_role(cls, v):
        if v not in VALID_ROLES:
            raise ValueError(f"Invalid role: {v}. Valid: {VALID_ROLES}")
        return v

    _password = validator("password", allow_reuse=True)(_check_password)


class UserUpdate(BaseModel):
    name: Optional[str] = None
    role: Optional[str] = None
    phone: Optional[str] = None
    password: Optional[str] = None
    permissions: Optional[Dict[str, bool]] = None
    is_active: Optional[bool] = None

    @validator("role")
    def validate_role(cls, v):
        if v is not None and v not in VALID_ROLES:
            raise ValueError(f"Invalid role: {v}")
        return v

    _password = validator("password", allow_reuse=True)(_check_password)
