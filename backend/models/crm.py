"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Sales CRM - Companies, contacts, leads, opportunities, pipelines            ║
║                                                                              ║
║  Create models validate enumerations and required fields.                    ║
║  Update models are all-optional (partial $set).                              ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import re
from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, validator

from config import normalize_iso
from services.weighted_pipeline import VALID_STAGES, PIPELINE_STATUSES

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

COMPANY_SIZES = ["SMALL", "MEDIUM", "LARGE", "ENTERPRISE"]


class LeadStatus(str, Enum):
    NEW = "NEW"
    CONTACTED = "CONTACTED"
    QUALIFIED = "QUALIFIED"
    UNQUALIFIED = "UNQUALIFIED"
    LOST = "LOST"


VALID_LEAD_STATUSES = [s.value for s in LeadStatus]


def _check_email(v):
    if v and not EMAIL_RE.match(v):
        raise ValueError("Invalid email format")
    return v.lower().strip() if v else v


def _check_stage(v):
    if v is not None and v not in VALID_STAGES:
        raise ValueError(f"Invalid stage: {v}")
    return v


def _check_deal_size(v):
    if v is not None and v < 0:
        raise ValueError("Deal size cannot be negative")
    return v


def _check_probability(v):
    if v is not None and not 0 <= v <= 100:
        raise ValueError("Probability must be between 0 and 100")
    return v


def _check_size(v):
    if v is None:
        return v
    if v.upper() not in COMPANY_SIZES:
        raise ValueError(f"Invalid company size: {v}. Valid: {COMPANY_SIZES}")
    return v.upper()


# ==================== COMPANIES / CONTACTS ====================

class CompanyCreate(BaseModel):
    name: str
    industry: Optional[str] = None
    region: Optional[str] = None
    size: str = "SMALL"
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    website: Optional[str] = None

    @validator("name")
    def validate_name(cls, v):
        if not v.strip():
            raise ValueError("Company name is required")
        return v.strip()

    _email = validator("email", allow_reuse=True)(_check_email)
    _size = validator("size", allow_reuse=True)(_check_size)


class CompanyUpdate(BaseModel):
    name: Optional[str] = None
    industry: Optional[str] = None
    region: Optional[str] = None
    size: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    website: Optional[str] = None

    _email = validator("email", allow_reuse=True)(_check_email)
    _size = validator("size", allow_reuse=True)(_check_size)


class ContactCreate(BaseModel):
    company_id: str
    name: str
    title: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    _email = validator("email", allow_reuse=True)(_check_email)


class ContactUpdate(BaseModel):
    name: Optional[str] = None
    title: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    _email = validator("email", allow_reuse=True)(_check_email)


# ==================== LEADS ====================

class LeadCreate(BaseModel):
    name: str
    source: str
    company_id: Optional[str] = None
    contact_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    status: str = LeadStatus.NEW.value
    estimated_value: Optional[float] = None
    notes: Optional[str] = None

    @validator("name", "source")
    def validate_required(cls, v):
        if not v or not v.strip():
            raise ValueError("Field is required")
        return v.strip()

    @validator("status")
    def validate_status(cls, v):
        if v not in VALID_LEAD_STATUSES:
            raise ValueError(f"Invalid status: {v}. Valid: {VALID_LEAD_STATUSES}")
        return v

    _email = validator("email", allow_reuse=True)(_check_email)


class LeadUpdate(BaseModel):
    name: Optional[str] = None
    source: Optional[str] = None
    company_id: Optional[str] = None
    contact_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    status: Optional[str] = None
    estimated_value: Optional[float] = None
    notes: Optional[str] = None

    @validator("status")
    def validate_status(cls, v):
        if v is not None and v not in VALID_LEAD_STATUSES:
            raise ValueError(f"Invalid status: {v}")
        return v

    _email = validator("email", allow_reuse=True)(_check_email)


class LeadConvert(BaseModel):
    """Overrides for the opportunity created from a lead"""
    name: Optional[str] = None
    deal_size: Optional[float] = None
    probability: Optional[int] = None
    stage: Optional[str] = None
    expected_close_date: Optional[str] = None
    next_followup_date: Optional[str] = None

    _deal_size = validator("deal_size", allow_reuse=True)(_check_deal_size)
    _probability = validator("probability", allow_reuse=True)(_check_probability)
    _stage = validator("stage", allow_reuse=True)(_check_stage)
    _dates = validator("expected_close_date", "next_followup_date", allow_reuse=True)(normalize_iso)


# ==================== OPPORTUNITIES ====================

class OpportunityCreate(BaseModel):
    name: str
    company_id: Optional[str] = None
    lead_id: Optional[str] = None
    deal_size: float = 0
    probability: int = 25
    stage: str = "PROSPECTING"
    expected_close_date: Optional[str] = None
    next_followup_date: Optional[str] = None
    competitors: List[str] = []
    budget_approved: bool = False
    market_timing: Optional[str] = None
    notes: Optional[str] = None

    _probability = validator("probability", allow_reuse=True)(_check_probability)
    _deal_size = validator("deal_size", allow_reuse=True)(_check_deal_size)
    _stage = validator("stage", allow_reuse=True)(_check_stage)
    _dates = validator("expected_close_date", "next_followup_date", allow_reuse=True)(normalize_iso)


class OpportunityUpdate(BaseModel):
    name: Optional[str] = None
    company_id: Optional[str] = None
    deal_size: Optional[float] = None
    probability: Optional[int] = None
    stage: Optional[str] = None
    expected_close_date: Optional[str] = None
    next_followup_date: Optional[str] = None
    competitors: Optional[List[str]] = None
    budget_approved: Optional[bool] = None
    market_timing: Optional[str] = None
    lost_reason: Optional[str] = None
    notes: Optional[str] = None

    _probability = validator("probability", allow_reuse=True)(_check_probability)
    _stage = validator("stage", allow_reuse=True)(_check_stage)
    _deal_size = validator("deal_size", allow_reuse=True)(_check_deal_size)
    _dates = validator("expected_close_date", "next_followup_date", allow_reuse=True)(normalize_iso)


class ScoringCriteria(BaseModel):
    """Free-form criteria for POST /opportunities/scoring"""
    id: Optional[str] = None
    name: Optional[str] = None
    deal_size: float
    probability: float
    days_in_pipeline: int = 0
    competitor_count: int = 0
    decision_maker_access: bool = False
    budget_approved: bool = False
    relationship_strength: str = "MODERATE"
    urgency: str = "MEDIUM"
    market_timing: str = "GOOD"

    @validator("probability")
    def validate_probability(cls, v):
        if not 0 <= v <= 1:
            raise ValueError("Probability must be between 0 and 1")
        return v


# ==================== PIPELINES ====================

class PipelineCreate(BaseModel):
    name: str
    company_id: Optional[str] = None
    opportunity_id: Optional[str] = None
    status: str = "ORDER_RECEIVED"
    order_value: float = 0
    order_date: Optional[str] = None
    expected_delivery_date: Optional[str] = None
    progress_percentage: int = 0
    notes: Optional[str] = None

    @validator("status")
    def validate_status(cls, v):
        if v not in PIPELINE_STATUSES:
            raise ValueError(f"Invalid pipeline status: {v}")
        return v

    @validator("progress_percentage")
    def validate_progress(cls, v):
        if not 0 <= v <= 100:
            raise ValueError("Progress must be between 0 and 100")
        return v

    _dates = validator("order_date", "expected_delivery_date", allow_reuse=True)(normalize_iso)


class PipelineUpdate(BaseModel):
    name: Optional[str] = None
    status: Optional[str] = None
    order_value: Optional[float] = None
    order_date: Optional[str] = None
    expected_delivery_date: Optional[str] = None
    actual_delivery_date: Optional[str] = None
    installation_date: Optional[str] = None
    payment_date: Optional[str] = None
    progress_percentage: Optional[int] = None
    notes: Optional[str] = None

    @validator("status")
    def validate_status(cls, v):
        if v is not None and v not in PIPELINE_STATUSES:
            raise ValueError(f"Invalid pipeline status: {v}")
        return v

    @validator("progress_percentage")
    def validate_progress(cls, v):
        if v is not None and not 0 <= v <= 100:
            raise ValueError("Progress must be between 0 and 100")
        return v

    _dates = validator(
        "order_date", "expected_delivery_date", "actual_delivery_date",
        "installation_date", "payment_date", allow_reuse=True
    )(normalize_iso)


class WeightedStageUpdate(BaseModel):
    """POST /pipelines/weighted"""
    opportunity_id: str
    stage: str
    expected_close_date: Optional[str] = None
    lost_reason: Optional[str] = None

    _stage = validator("stage", allow_reuse=True)(_check_stage)
    _close_date = validator("expected_close_date", allow_reuse=True)(normalize_iso)


class WeightedStatusUpdate(BaseModel):
    """PUT /pipelines/weighted"""
    pipeline_id: str
    status: str
    notes: Optional[str] = None

    @validator("status")
    def validate_status(cls, v):
        if v not in PIPELINE_STATUSES:
            raise ValueError(f"Invalid pipeline status: {v}")
        return v
