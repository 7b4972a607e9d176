"""
Campaign Model
Campaign lifecycle states, legal transitions and request/response shapes
"""
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field, field_validator

from callqueue.domain.models.call_job import ContactPayload
from callqueue.domain.models.calling_window import parse_clock_time, is_valid_timezone


class CampaignStatus(str, Enum):
    """Lifecycle status of a campaign"""
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Lifecycle operation -> statuses it may be applied from, and the status it produces
CAMPAIGN_TRANSITIONS: Dict[str, tuple[Set[str], str]] = {
    "start": ({"draft", "scheduled"}, "active"),
    "pause": ({"active"}, "paused"),
    "resume": ({"paused"}, "active"),
    "complete": ({"active", "paused"}, "completed"),
    "cancel": ({"draft", "scheduled", "active", "paused"}, "cancelled"),
}

TERMINAL_CAMPAIGN_STATUSES: Set[str] = {"completed", "cancelled"}

# Only campaigns that never ran, or were abandoned, may be deleted
DELETABLE_CAMPAIGN_STATUSES: Set[str] = {"draft", "cancelled"}

# Fields a patch may clear by sending null
NULLABLE_PATCH_FIELDS: Set[str] = {"description", "next_action", "start_date", "end_date"}


def _check_clock(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    parse_clock_time(v)
    return v


def _check_tz(v: Optional[str]) -> Optional[str]:
    if v is not None and not is_valid_timezone(v):
        raise ValueError(f"Unknown timezone: {v}")
    return v


class CampaignCreate(BaseModel):
    """Request body for creating a campaign"""
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    agent_id: str = Field(..., min_length=1)
    next_action: Optional[str] = Field(None, description="Goal text copied into each job")

    first_call_time: str = Field("09:00", description="HH:MM, campaign local time")
    last_call_time: str = Field("17:00", description="HH:MM, campaign local time")
    timezone: Optional[str] = Field(None, description="IANA timezone; defaults to the configured one")
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    max_retries: int = Field(0, ge=0, le=10)
    retry_interval_minutes: int = Field(1, ge=1, le=10080)
    priority: int = Field(0, ge=0, le=1000)
    max_concurrent_calls: int = Field(10, ge=1, le=100)

    contacts: List[ContactPayload] = Field(default_factory=list)

    @field_validator("first_call_time", "last_call_time")
    @classmethod
    def validate_clock(cls, v: str) -> str:
        return _check_clock(v)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: Optional[str]) -> Optional[str]:
        return _check_tz(v)


class CampaignPatch(BaseModel):
    """
    Sparse campaign update.

    Only fields present in the request body are applied; `applied_fields`
    is that set.
    """
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    agent_id: Optional[str] = Field(None, min_length=1)
    next_action: Optional[str] = None

    first_call_time: Optional[str] = None
    last_call_time: Optional[str] = None
    timezone: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    max_retries: Optional[int] = Field(None, ge=0, le=10)
    retry_interval_minutes: Optional[int] = Field(None, ge=1, le=10080)
    priority: Optional[int] = Field(None, ge=0, le=1000)
    max_concurrent_calls: Optional[int] = Field(None, ge=1, le=100)

    @field_validator("first_call_time", "last_call_time")
    @classmethod
    def validate_clock(cls, v: Optional[str]) -> Optional[str]:
        return _check_clock(v)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: Optional[str]) -> Optional[str]:
        return _check_tz(v)

    model_config = {"extra": "forbid"}

    @property
    def applied_fields(self) -> Set[str]:
        return set(self.model_fields_set)

    def changes(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.model_fields_set}


class CampaignView(BaseModel):
    """Campaign as returned by the API"""
    id: str
    tenant_id: str
    name: str
    description: Optional[str] = None
    agent_id: str
    next_action: Optional[str] = None
    status: CampaignStatus

    first_call_time: str
    last_call_time: str
    timezone: str
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    max_retries: int
    retry_interval_minutes: int
    priority: int
    max_concurrent_calls: int

    total_contacts: int
    completed_calls: int
    successful_calls: int
    failed_calls: int

    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = {"use_enum_values": True, "from_attributes": True}
