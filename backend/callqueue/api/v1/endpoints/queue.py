"""
Queue API
Direct calls, claim/release for dispatch workers, and queue inspection
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, Field

from callqueue.api.v1.dependencies import (
    get_admission_controller,
    get_queue_service,
    http_error,
    require_tenant,
)
from callqueue.core.exceptions import CallQueueError
from callqueue.domain.models.call_job import CallJob, ContactPayload
from callqueue.domain.services.admission_controller import AdmissionController
from callqueue.domain.services.queue_service import CallQueueService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/queue", tags=["queue"])


class DirectCallRequest(ContactPayload):
    """Request body for an ad hoc call"""
    agent_id: str = Field(..., min_length=1)
    user_data: Optional[dict] = None


class ClaimTokenRequest(BaseModel):
    claim_token: str = Field(..., min_length=1)


class ReleaseRequest(ClaimTokenRequest):
    reason: Optional[str] = Field(None, max_length=500)


class AttachCallRequest(ClaimTokenRequest):
    call_id: str = Field(..., min_length=1)


class QueueListResponse(BaseModel):
    items: List[CallJob]
    total: int
    limit: int
    offset: int


class QueuePositionResponse(BaseModel):
    job_id: str
    status: str
    position: Optional[int] = None


@router.post("/direct-calls", response_model=CallJob, status_code=201)
def create_direct_call(
    request: DirectCallRequest,
    tenant_id: str = Depends(require_tenant),
    queue: CallQueueService = Depends(get_queue_service),
):
    """Queue a direct call; it outranks ordinary campaign jobs"""
    try:
        return queue.enqueue_direct_call(
            tenant_id=tenant_id,
            agent_id=request.agent_id,
            phone_number=request.phone_number,
            contact_id=request.contact_id,
            contact_name=request.name,
            user_data=request.user_data,
        )
    except CallQueueError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to queue direct call: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/", response_model=QueueListResponse)
def list_queue(
    status: Optional[str] = Query(None, description="Filter by job status"),
    lane: Optional[str] = Query(None, description="direct or campaign"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    tenant_id: str = Depends(require_tenant),
    queue: CallQueueService = Depends(get_queue_service),
):
    """The tenant's jobs in claim order"""
    try:
        items, total = queue.list_tenant_queue(tenant_id, status=status, lane=lane, limit=limit, offset=offset)
        return QueueListResponse(items=items, total=total, limit=limit, offset=offset)
    except CallQueueError as e:
        raise http_error(e)


@router.get("/stats")
def queue_stats(
    tenant_id: str = Depends(require_tenant),
    queue: CallQueueService = Depends(get_queue_service),
):
    """Job counts per status and per lane"""
    try:
        return {
            "stats": queue.get_statistics(tenant_id),
            "lanes": queue.get_lane_breakdown(tenant_id),
        }
    except CallQueueError as e:
        raise http_error(e)


@router.post("/claim", response_model=Optional[CallJob])
def claim_next_job(
    tenant_id: str = Depends(require_tenant),
    controller: AdmissionController = Depends(get_admission_controller),
):
    """
    Claim the next eligible job for the tenant.

    Returns 204 when nothing is eligible right now.
    """
    try:
        job = controller.claim_next(tenant_id)
    except CallQueueError as e:
        raise http_error(e)

    if job is None:
        return Response(status_code=204)
    return job


@router.get("/jobs/{job_id}", response_model=CallJob)
def get_job(
    job_id: str,
    tenant_id: str = Depends(require_tenant),
    queue: CallQueueService = Depends(get_queue_service),
):
    try:
        return queue.get_job(tenant_id, job_id)
    except CallQueueError as e:
        raise http_error(e)


@router.get("/jobs/{job_id}/position", response_model=QueuePositionResponse)
def get_job_position(
    job_id: str,
    tenant_id: str = Depends(require_tenant),
    queue: CallQueueService = Depends(get_queue_service),
):
    """Where a queued job currently sits in the tenant's claim order"""
    try:
        job = queue.get_job(tenant_id, job_id)
        position = queue.get_queue_position(tenant_id, job_id)
        return QueuePositionResponse(job_id=job_id, status=job.status, position=position)
    except CallQueueError as e:
        raise http_error(e)


@router.post("/jobs/{job_id}/release", response_model=CallJob)
def release_job(
    job_id: str,
    request: ReleaseRequest,
    tenant_id: str = Depends(require_tenant),
    controller: AdmissionController = Depends(get_admission_controller),
):
    """Return a claimed job to the queue (the call could not be started)"""
    try:
        return controller.release(tenant_id, job_id, request.claim_token, reason=request.reason)
    except CallQueueError as e:
        raise http_error(e)


@router.post("/jobs/{job_id}/heartbeat", response_model=CallJob)
def heartbeat_job(
    job_id: str,
    request: ClaimTokenRequest,
    tenant_id: str = Depends(require_tenant),
    controller: AdmissionController = Depends(get_admission_controller),
):
    """Extend the claim lease of an in-flight job"""
    try:
        return controller.heartbeat(tenant_id, job_id, request.claim_token)
    except CallQueueError as e:
        raise http_error(e)


@router.post("/jobs/{job_id}/call", response_model=CallJob)
def attach_call(
    job_id: str,
    request: AttachCallRequest,
    tenant_id: str = Depends(require_tenant),
    queue: CallQueueService = Depends(get_queue_service),
):
    """Record the external call id for a claimed job"""
    try:
        return queue.attach_call(tenant_id, job_id, request.claim_token, request.call_id)
    except CallQueueError as e:
        raise http_error(e)


@router.delete("/jobs/{job_id}", status_code=204)
def cancel_job(
    job_id: str,
    tenant_id: str = Depends(require_tenant),
    queue: CallQueueService = Depends(get_queue_service),
):
    """Remove a job that has not been claimed yet"""
    try:
        queue.cancel_job(tenant_id, job_id)
    except CallQueueError as e:
        raise http_error(e)
