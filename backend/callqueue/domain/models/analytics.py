"""
Campaign Analytics Model
Derived progress, connection and success metrics for one campaign
"""
from typing import Optional

from pydantic import BaseModel, Field


def safe_percentage(numerator: float, denominator: float) -> float:
    """numerator / denominator * 100, or 0.0 when the denominator is 0."""
    if not denominator:
        return 0.0
    return round(numerator / denominator * 100, 2)


class AttemptDistribution(BaseModel):
    """How the campaign's contacts have fared so far"""
    busy: int = 0
    no_answer: int = 0
    contacted: int = 0
    failed: int = 0
    not_attempted: int = 0


class QueueBreakdown(BaseModel):
    """Jobs still sitting in the queue for the campaign"""
    queued: int = 0
    in_progress: int = 0
    cancelled: int = 0
    skipped: int = 0


class CampaignAnalytics(BaseModel):
    """Metrics for a single campaign"""
    campaign_id: str
    status: str

    total_contacts: int = 0
    handled_calls: int = 0
    attempted_calls: int = 0
    contacted_calls: int = 0
    completed_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0

    progress_percentage: float = 0.0
    call_connection_rate: float = 0.0
    success_rate: float = 0.0
    average_call_duration: float = Field(0.0, description="Seconds, over completed calls only")
    total_credits_used: int = 0
    campaign_duration_seconds: Optional[int] = None

    queue: QueueBreakdown = Field(default_factory=QueueBreakdown)
    attempt_distribution: AttemptDistribution = Field(default_factory=AttemptDistribution)
