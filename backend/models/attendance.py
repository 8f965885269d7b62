"""
Sales CRM - Attendance models

The optional follow_up payload is kept loose on purpose: its messages are
returned as 400 by the route, not as pydantic 422s.
"""

from enum import Enum
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, validator


class AttendanceStatus(str, Enum):
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    AUTO_FLAGGED = "AUTO_FLAGGED"
    AMENDED = "AMENDED"


AMENDABLE_STATUSES = [
    AttendanceStatus.SUBMITTED.value,
    AttendanceStatus.REJECTED.value,
    AttendanceStatus.AUTO_FLAGGED.value,
]


class DeviceFingerprint(BaseModel):
    user_agent: str
    timezone: str
    language: str
    platform: str
    cookie_enabled: bool = True
    screen_width: int
    screen_height: int
    color_depth: int = 24
    pixel_ratio: float = 1


class AttendanceSubmit(BaseModel):
    note: str = ""
    selfie_url: Optional[str] = None
    timeline_url: Optional[str] = None
    timeline_screenshot_url: Optional[str] = None
    client_lat: Optional[float] = None
    client_lng: Optional[float] = None
    client_accuracy_m: Optional[float] = None
    client_address: Optional[str] = None
    client_city: Optional[str] = None
    client_state: Optional[str] = None
    client_country: Optional[str] = None
    device_fingerprint: Optional[DeviceFingerprint] = None
    exif_taken_at: Optional[str] = None
    client_submitted_at: Optional[str] = None
    follow_up: Optional[Dict[str, Any]] = None


class AttendanceAmend(BaseModel):
    note: Optional[str] = None
    selfie_url: Optional[str] = None
    timeline_url: Optional[str] = None
    timeline_screenshot_url: Optional[str] = None
    client_lat: Optional[float] = None
    client_lng: Optional[float] = None


class AttendanceApprove(BaseModel):
    attendance_ids: List[str]
    action: str
    notes: Optional[str] = None

    @validator("attendance_ids")
    def validate_ids(cls, v):
        if not v:
            raise ValueError("attendance_ids must be a non-empty list")
        return v

    @validator("action")
    def validate_action(cls, v):
        if v not in ("approve", "reject"):
            raise ValueError("action must be 'approve' or 'reject'")
        return v
