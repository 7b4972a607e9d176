"""
SQLAlchemy Database Models
Campaigns, the unified call queue, call history and admission bookkeeping
"""
from sqlalchemy import (
    JSON, Column, Date, DateTime, ForeignKey, Index, Integer, String, Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base
import uuid

from callqueue.utils.clock import utcnow

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid.uuid4())


class Campaign(Base):
    """Campaign model - maps to call_campaigns table"""
    __tablename__ = "call_campaigns"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(255), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    agent_id = Column(String(255), nullable=False)
    next_action = Column(Text)
    status = Column(String(20), nullable=False, default="draft")

    # Daily window, evaluated in the campaign timezone
    first_call_time = Column(String(8), nullable=False, default="09:00")
    last_call_time = Column(String(8), nullable=False, default="17:00")
    timezone = Column(String(64), nullable=False, default="UTC")
    start_date = Column(Date)
    end_date = Column(Date)

    # Retry / admission policy
    max_retries = Column(Integer, nullable=False, default=0)
    retry_interval_minutes = Column(Integer, nullable=False, default=1)
    priority = Column(Integer, nullable=False, default=0)
    max_concurrent_calls = Column(Integer, nullable=False, default=10)

    # Counters, only ever changed by atomic SQL increments
    total_contacts = Column(Integer, nullable=False, default=0)
    completed_calls = Column(Integer, nullable=False, default=0)
    successful_calls = Column(Integer, nullable=False, default=0)
    failed_calls = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    __table_args__ = (
        Index("ix_call_campaigns_tenant_status", "tenant_id", "status"),
    )


class QueuedCall(Base):
    """
    Queued call model - maps to call_queue table.

    One row per pending or in-flight call attempt. Direct and campaign
    jobs share the table and differ by `lane`.
    """
    __tablename__ = "call_queue"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(255), nullable=False)
    lane = Column(String(16), nullable=False, default="campaign")
    campaign_id = Column(String(36), ForeignKey("call_campaigns.id", ondelete="CASCADE"))

    agent_id = Column(String(255), nullable=False)
    contact_id = Column(String(255))
    phone_number = Column(String(32), nullable=False)
    contact_name = Column(String(255))
    user_data = Column(JSONType, default=dict)

    status = Column(String(20), nullable=False, default="queued")
    priority = Column(Integer, nullable=False, default=0)
    position = Column(Integer, nullable=False)
    scheduled_for = Column(DateTime, nullable=False, default=utcnow)

    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    call_id = Column(String(255))
    failure_reason = Column(Text)

    retry_count = Column(Integer, nullable=False, default=0)
    original_job_id = Column(String(36))
    last_call_outcome = Column(String(32))

    claim_token = Column(String(36))
    lease_expires_at = Column(DateTime)
    last_system_allocation_at = Column(DateTime)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_call_queue_dispatch", "tenant_id", "status", "priority", "position", "created_at"),
        Index("ix_call_queue_campaign_status", "campaign_id", "status"),
        Index("ix_call_queue_lease", "status", "lease_expires_at"),
        Index("ix_call_queue_call_id", "call_id"),
    )


class Call(Base):
    """
    Call model - maps to calls table.

    Owned by the telephony side; this service only reads it for analytics.
    """
    __tablename__ = "calls"

    id = Column(String(255), primary_key=True, default=_uuid)
    tenant_id = Column(String(255), nullable=False, index=True)
    campaign_id = Column(String(36), index=True)
    phone_number = Column(String(32))
    call_lifecycle_status = Column(String(32), nullable=False, default="initiated")
    duration_seconds = Column(Integer)
    credits_used = Column(Integer, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class TenantSettings(Base):
    """Per-tenant admission overrides - maps to tenant_settings table"""
    __tablename__ = "tenant_settings"

    tenant_id = Column(String(255), primary_key=True)
    concurrent_calls_limit = Column(Integer, nullable=False, default=2)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class DispatchLock(Base):
    """
    Single-row mutex serializing claims so that the concurrency caps
    are checked and consumed atomically.
    """
    __tablename__ = "dispatch_locks"

    scope = Column(String(64), primary_key=True)
    holder = Column(String(36))
    acquired_at = Column(DateTime)
