"""
Sales CRM - Daily follow-up and activity models
"""

from enum import Enum
from typing import Optional
from pydantic import BaseModel, validator

from config import normalize_iso
from services.sales_insights import RESPONSE_QUALITIES


class FollowUpActionType(str, Enum):
    CALL = "CALL"
    EMAIL = "EMAIL"
    MEETING = "MEETING"
    SITE_VISIT = "SITE_VISIT"
    MESSAGE = "MESSAGE"
    DEMO = "DEMO"


class FollowUpStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    RESCHEDULED = "RESCHEDULED"


ACTION_TYPES = [a.value for a in FollowUpActionType]
FOLLOWUP_STATUSES = [s.value for s in FollowUpStatus]
URGENCY_LEVELS = ["LOW", "MEDIUM", "HIGH", "CRITICAL"]
ACTIVITY_TYPES = ["CALL", "EMAIL", "MEETING", "SITE_VISIT", "NOTE"]


def _check_urgency(v):
    if v is None:
        return v
    v = v.upper()
    if v not in URGENCY_LEVELS:
        raise ValueError(f"Invalid urgency level: {v}. Valid: {URGENCY_LEVELS}")
    return v


class FollowUpCreate(BaseModel):
    action_type: str
    action_description: str
    follow_up_date: str
    assigned_to: Optional[str] = None
    urgency_level: Optional[str] = None
    notes: Optional[str] = None
    lead_id: Optional[str] = None
    opportunity_id: Optional[str] = None
    pipeline_id: Optional[str] = None
    company_id: Optional[str] = None
    deal_value: Optional[float] = None

    @validator("action_type")
    def validate_action_type(cls, v):
        v = v.upper()
        if v not in ACTION_TYPES:
            raise ValueError(f"Invalid action type: {v}. Valid: {ACTION_TYPES}")
        return v

    @validator("action_description")
    def validate_description(cls, v):
        if not v.strip():
            raise ValueError("Action description is required")
        return v.strip()

    @validator("follow_up_date")
    def validate_follow_up_date(cls, v):
        v = normalize_iso(v)
        if not v:
            raise ValueError("Follow-up date is required")
        return v

    _urgency = validator("urgency_level", allow_reuse=True)(_check_urgency)


class FollowUpUpdate(BaseModel):
    action_type: Optional[str] = None
    action_description: Optional[str] = None
    follow_up_date: Optional[str] = None
    assigned_to: Optional[str] = None
    urgency_level: Optional[str] = None
    status: Optional[str] = None
    notes: Optional[str] = None
    response_received: Optional[bool] = None
    response_quality: Optional[str] = None
    completion_minutes: Optional[int] = None
    deal_value: Optional[float] = None
    next_action_date: Optional[str] = None
    next_action_notes: Optional[str] = None

    @validator("action_type")
    def validate_action_type(cls, v):
        if v is not None and v.upper() not in ACTION_TYPES:
            raise ValueError(f"Invalid action type: {v}")
        return v.upper() if v else v

    @validator("status")
    def validate_status(cls, v):
        if v is not None and v not in FOLLOWUP_STATUSES:
            raise ValueError(f"Invalid status: {v}. Valid: {FOLLOWUP_STATUSES}")
        return v

    @validator("response_quality")
    def validate_quality(cls, v):
        if v is not None and v not in RESPONSE_QUALITIES:
            raise ValueError(f"Invalid response quality: {v}")
        return v

    _urgency = validator("urgency_level", allow_reuse=True)(_check_urgency)
    _dates = validator("follow_up_date", "next_action_date", allow_reuse=True)(normalize_iso)


class OverdueAcknowledge(BaseModel):
    reason: str

    @validator("reason")
    def validate_reason(cls, v):
        if not v.strip():
            raise ValueError("A reason is required")
        return v.strip()


class ActivityCreate(BaseModel):
    type: str
    subject: str
    description: Optional[str] = None
    lead_id: Optional[str] = None
    opportunity_id: Optional[str] = None
    company_id: Optional[str] = None
    duration_minutes: Optional[int] = None
    occurred_at: Optional[str] = None

    @validator("type")
    def validate_type(cls, v):
        v = v.upper()
        if v not in ACTIVITY_TYPES:
            raise ValueError(f"Invalid activity type: {v}. Valid: {ACTIVITY_TYPES}")
        return v

    _occurred_at = validator("occurred_at", allow_reuse=True)(normalize_iso)
