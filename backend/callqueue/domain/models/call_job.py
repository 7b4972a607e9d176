"""
Call Job Model
Represents a single pending or in-flight call attempt in the queue
"""
import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Set

from pydantic import BaseModel, Field, field_validator


class JobStatus(str, Enum):
    """Status of a queued call job"""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class Lane(str, Enum):
    """Queue lane a job belongs to"""
    DIRECT = "direct"
    CAMPAIGN = "campaign"


class CallOutcome(str, Enum):
    """Lifecycle status reported for a call by the telephony side"""
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    NO_ANSWER = "no-answer"
    BUSY = "busy"
    FAILED = "failed"
    CALL_DISCONNECTED = "call-disconnected"


# Direct calls outrank ordinary campaign jobs
DIRECT_CALL_PRIORITY = 100
CAMPAIGN_DEFAULT_PRIORITY = 0

# Per-lane defaults; everything else about a job is shared
LANE_DEFAULTS: Dict[str, Dict[str, Any]] = {
    Lane.DIRECT.value: {
        "priority": DIRECT_CALL_PRIORITY,
        "user_data": {"summary": "Direct call", "next_action": "Make direct call"},
    },
    Lane.CAMPAIGN.value: {
        "priority": CAMPAIGN_DEFAULT_PRIORITY,
        "user_data": {},
    },
}

# Any of these ends the call; the queue row is finalized and deleted
TERMINAL_OUTCOMES: Set[str] = {"completed", "no-answer", "busy", "failed", "call-disconnected"}

# Outcomes that may schedule another attempt
RETRYABLE_OUTCOMES: Set[str] = {"busy", "no-answer"}

# Outcomes counted as reaching the contact
CONTACTED_OUTCOMES: Set[str] = {"completed", "in-progress"}


class ContactPayload(BaseModel):
    """A contact handed over by the ingestion side for enqueueing."""

    phone_number: str = Field(..., description="Phone number in any format")
    contact_id: Optional[str] = None
    name: Optional[str] = Field(None, max_length=255)
    email: Optional[str] = Field(None, max_length=255)
    company: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = None

    @field_validator('phone_number')
    @classmethod
    def validate_phone(cls, v: str) -> str:
        cleaned = re.sub(r'[\s\-\(\)\.]', '', v)
        if not cleaned:
            raise ValueError('Phone number cannot be empty')
        if len(cleaned) < 7:
            raise ValueError('Phone number too short')
        return v


class CallJob(BaseModel):
    """
    Snapshot of a call_queue row.

    Services hand these out instead of live ORM rows so callers never
    hold on to a session.
    """

    # Identity
    id: str
    tenant_id: str
    lane: Lane = Lane.CAMPAIGN
    campaign_id: Optional[str] = None

    # Routing
    agent_id: str
    contact_id: Optional[str] = None
    phone_number: str
    contact_name: Optional[str] = None
    user_data: Dict[str, Any] = Field(default_factory=dict)

    # Scheduling
    status: JobStatus = JobStatus.QUEUED
    priority: int = CAMPAIGN_DEFAULT_PRIORITY
    position: int = 0
    scheduled_for: datetime
    created_at: datetime

    # Execution trace
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    call_id: Optional[str] = None
    failure_reason: Optional[str] = None

    # Retry
    retry_count: int = Field(default=0, ge=0)
    original_job_id: Optional[str] = None
    last_call_outcome: Optional[str] = None

    # Claim
    claim_token: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    last_system_allocation_at: Optional[datetime] = None

    model_config = {"use_enum_values": True, "from_attributes": True}

    def to_dispatch_dict(self) -> dict:
        """Serialize for the dispatch channel."""
        return {
            "job_id": self.id,
            "tenant_id": self.tenant_id,
            "lane": self.lane,
            "campaign_id": self.campaign_id,
            "agent_id": self.agent_id,
            "contact_id": self.contact_id,
            "phone_number": self.phone_number,
            "contact_name": self.contact_name,
            "user_data": self.user_data,
            "priority": self.priority,
            "retry_count": self.retry_count,
            "claim_token": self.claim_token,
            "lease_expires_at": self.lease_expires_at.isoformat() if self.lease_expires_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"CallJob(id={self.id[:8]}..., "
            f"lane={self.lane}, "
            f"priority={self.priority}, "
            f"position={self.position}, "
            f"status={self.status}, "
            f"retry={self.retry_count})"
        )
