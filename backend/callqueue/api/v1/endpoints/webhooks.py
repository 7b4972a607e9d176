"""
Webhooks API Endpoints
Receives call lifecycle updates from the telephony service
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, model_validator

from callqueue.api.v1.dependencies import get_outcome_service, http_error, require_tenant
from callqueue.core.exceptions import CallQueueError
from callqueue.domain.models.call_job import CallOutcome
from callqueue.domain.services.call_outcome_service import CallOutcomeService, OutcomeResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


# Provider status names mapped onto our call lifecycle statuses
STATUS_ALIASES = {
    "started": CallOutcome.INITIATED.value,
    "answered": CallOutcome.IN_PROGRESS.value,
    "in_progress": CallOutcome.IN_PROGRESS.value,
    "no_answer": CallOutcome.NO_ANSWER.value,
    "unanswered": CallOutcome.NO_ANSWER.value,
    "timeout": CallOutcome.NO_ANSWER.value,
    "rejected": CallOutcome.FAILED.value,
    "cancelled": CallOutcome.FAILED.value,
    "disconnected": CallOutcome.CALL_DISCONNECTED.value,
}

KNOWN_STATUSES = {outcome.value for outcome in CallOutcome}


class CallOutcomeEvent(BaseModel):
    """Lifecycle update for a dispatched job"""
    job_id: Optional[str] = None
    call_id: Optional[str] = None
    claim_token: Optional[str] = Field(default=None, description="Claim token from the dispatch event")
    status: str = Field(..., description="Call lifecycle status, e.g. completed, busy, no-answer")

    @model_validator(mode="after")
    def check_reference(self) -> "CallOutcomeEvent":
        if not self.job_id and not self.call_id:
            raise ValueError("job_id or call_id is required")
        if self.job_id and not self.call_id and not self.claim_token:
            raise ValueError("claim_token is required when reporting by job_id")
        return self

    def normalized_status(self) -> str:
        status = self.status.strip().lower()
        status = STATUS_ALIASES.get(status, status)
        if status not in KNOWN_STATUSES:
            raise HTTPException(status_code=400, detail=f"Unknown call status: {self.status}")
        return status


@router.post("/call-outcome", response_model=OutcomeResult)
def call_outcome(
    event: CallOutcomeEvent,
    tenant_id: str = Depends(require_tenant),
    service: CallOutcomeService = Depends(get_outcome_service),
):
    """
    Apply a call lifecycle update.

    Terminal statuses finish the job, bump campaign counters and may queue
    a retry; intermediate statuses are acknowledged and ignored.
    """
    try:
        status = event.normalized_status()
        result = service.record_outcome(
            tenant_id,
            status,
            job_id=event.job_id,
            call_id=event.call_id,
            claim_token=event.claim_token,
        )
        logger.info(f"Outcome webhook: job={result.job_id} status={status} terminal={result.terminal}")
        return result
    except CallQueueError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to apply call outcome: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))
