"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Sales CRM - Models Package                                                  ║
║                                                                              ║
║  Exports the request models for easy import                                  ║
║  from models import LeadCreate, AttendanceSubmit, FollowUpCreate, etc.       ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

# Auth
from .auth import (
    VALID_ROLES,
    UserLogin,
    UserCreate,
    UserUpdate,
)

# Companies, leads, opportunities, pipelines
from .crm import (
    COMPANY_SIZES,
    LeadStatus,
    VALID_LEAD_STATUSES,
    CompanyCreate,
    CompanyUpdate,
    ContactCreate,
    ContactUpdate,
    LeadCreate,
    LeadUpdate,
    LeadConvert,
    OpportunityCreate,
    OpportunityUpdate,
    ScoringCriteria,
    PipelineCreate,
    PipelineUpdate,
    WeightedStageUpdate,
    WeightedStatusUpdate,
)

# Follow-ups & activities
from .followup import (
    FollowUpActionType,
    FollowUpStatus,
    ACTION_TYPES,
    ACTIVITY_TYPES,
    URGENCY_LEVELS,
    FollowUpCreate,
    FollowUpUpdate,
    OverdueAcknowledge,
    ActivityCreate,
)

# Attendance
from .attendance import (
    AttendanceStatus,
    AMENDABLE_STATUSES,
    DeviceFingerprint,
    AttendanceSubmit,
    AttendanceAmend,
    AttendanceApprove,
)

__all__ = [
    # Auth
    "VALID_ROLES",
    "UserLogin",
    "UserCreate",
    "UserUpdate",
    # CRM
    "COMPANY_SIZES",
    "LeadStatus",
    "VALID_LEAD_STATUSES",
    "CompanyCreate",
    "CompanyUpdate",
    "ContactCreate",
    "ContactUpdate",
    "LeadCreate",
    "LeadUpdate",
    "LeadConvert",
    "OpportunityCreate",
    "OpportunityUpdate",
    "ScoringCriteria",
    "PipelineCreate",
    "PipelineUpdate",
    "WeightedStageUpdate",
    "WeightedStatusUpdate",
    # Follow-ups
    "FollowUpActionType",
    "FollowUpStatus",
    "ACTION_TYPES",
    "ACTIVITY_TYPES",
    "URGENCY_LEVELS",
    "FollowUpCreate",
    "FollowUpUpdate",
    "OverdueAcknowledge",
    "ActivityCreate",
    # Attendance
    "AttendanceStatus",
    "AMENDABLE_STATUSES",
    "DeviceFingerprint",
    "AttendanceSubmit",
    "AttendanceAmend",
    "AttendanceApprove",
]
