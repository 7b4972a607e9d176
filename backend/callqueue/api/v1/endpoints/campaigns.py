"""
Campaigns API
Campaign CRUD, lifecycle transitions and contact enqueueing
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from callqueue.api.v1.dependencies import (
    get_campaign_service,
    get_queue_service,
    http_error,
    require_tenant,
)
from callqueue.core.exceptions import CallQueueError
from callqueue.domain.models.call_job import CallJob, ContactPayload
from callqueue.domain.models.campaign import CampaignCreate, CampaignPatch, CampaignView
from callqueue.domain.services.campaign_service import CampaignService
from callqueue.domain.services.queue_service import CallQueueService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/campaigns", tags=["campaigns"])


class CampaignListResponse(BaseModel):
    """Response for listing campaigns"""
    items: List[CampaignView]
    total: int
    limit: int
    offset: int


class AddContactsRequest(BaseModel):
    """Request body for queueing more contacts on a campaign"""
    contacts: List[ContactPayload] = Field(..., min_length=1)


class CancelCampaignResponse(BaseModel):
    campaign: CampaignView
    removed_jobs: int


class JobListResponse(BaseModel):
    items: List[CallJob]
    total: int
    limit: int
    offset: int


@router.get("/", response_model=CampaignListResponse)
def list_campaigns(
    status: Optional[str] = Query(None, description="Filter by campaign status"),
    agent_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    tenant_id: str = Depends(require_tenant),
    service: CampaignService = Depends(get_campaign_service),
):
    """List the tenant's campaigns, newest first"""
    try:
        items, total = service.list_campaigns(tenant_id, status=status, agent_id=agent_id, limit=limit, offset=offset)
        return CampaignListResponse(items=items, total=total, limit=limit, offset=offset)
    except CallQueueError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Failed to list campaigns: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/summary")
def campaign_summary(
    tenant_id: str = Depends(require_tenant),
    service: CampaignService = Depends(get_campaign_service),
):
    """Campaign counts per status"""
    try:
        return service.summary(tenant_id)
    except CallQueueError as e:
        raise http_error(e)


@router.post("/", response_model=CampaignView, status_code=201)
def create_campaign(
    data: CampaignCreate,
    tenant_id: str = Depends(require_tenant),
    service: CampaignService = Depends(get_campaign_service),
):
    """
    Create a campaign.

    When contacts are included they are queued immediately and the
    campaign starts active; otherwise it is created as a draft.
    """
    try:
        return service.create(tenant_id, data)
    except CallQueueError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to create campaign: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{campaign_id}", response_model=CampaignView)
def get_campaign(
    campaign_id: str,
    tenant_id: str = Depends(require_tenant),
    service: CampaignService = Depends(get_campaign_service),
):
    """Get campaign details"""
    try:
        return service.get(tenant_id, campaign_id)
    except CallQueueError as e:
        raise http_error(e)


@router.patch("/{campaign_id}", response_model=CampaignView)
def update_campaign(
    campaign_id: str,
    patch: CampaignPatch,
    tenant_id: str = Depends(require_tenant),
    service: CampaignService = Depends(get_campaign_service),
):
    """Apply a partial update; only fields present in the body change"""
    try:
        return service.update(tenant_id, campaign_id, patch)
    except CallQueueError as e:
        raise http_error(e)


@router.delete("/{campaign_id}", status_code=204)
def delete_campaign(
    campaign_id: str,
    tenant_id: str = Depends(require_tenant),
    service: CampaignService = Depends(get_campaign_service),
):
    """Delete a draft or cancelled campaign"""
    try:
        service.delete(tenant_id, campaign_id)
    except CallQueueError as e:
        raise http_error(e)


@router.post("/{campaign_id}/start", response_model=CampaignView)
def start_campaign(
    campaign_id: str,
    tenant_id: str = Depends(require_tenant),
    service: CampaignService = Depends(get_campaign_service),
):
    """Start a draft or scheduled campaign (requires queued contacts)"""
    try:
        return service.start(tenant_id, campaign_id)
    except CallQueueError as e:
        raise http_error(e)


@router.post("/{campaign_id}/pause", response_model=CampaignView)
def pause_campaign(
    campaign_id: str,
    tenant_id: str = Depends(require_tenant),
    service: CampaignService = Depends(get_campaign_service),
):
    """Pause an active campaign; queued jobs wait until resume"""
    try:
        return service.pause(tenant_id, campaign_id)
    except CallQueueError as e:
        raise http_error(e)


@router.post("/{campaign_id}/resume", response_model=CampaignView)
def resume_campaign(
    campaign_id: str,
    tenant_id: str = Depends(require_tenant),
    service: CampaignService = Depends(get_campaign_service),
):
    """Resume a paused campaign"""
    try:
        return service.resume(tenant_id, campaign_id)
    except CallQueueError as e:
        raise http_error(e)


@router.post("/{campaign_id}/complete", response_model=CampaignView)
def complete_campaign(
    campaign_id: str,
    tenant_id: str = Depends(require_tenant),
    service: CampaignService = Depends(get_campaign_service),
):
    """Mark a drained campaign completed"""
    try:
        return service.complete(tenant_id, campaign_id)
    except CallQueueError as e:
        raise http_error(e)


@router.post("/{campaign_id}/cancel", response_model=CancelCampaignResponse)
def cancel_campaign(
    campaign_id: str,
    tenant_id: str = Depends(require_tenant),
    service: CampaignService = Depends(get_campaign_service),
):
    """Cancel a campaign and drop its queued jobs; in-flight calls finish normally"""
    try:
        campaign, removed = service.cancel(tenant_id, campaign_id)
        return CancelCampaignResponse(campaign=campaign, removed_jobs=removed)
    except CallQueueError as e:
        raise http_error(e)


@router.post("/{campaign_id}/contacts", status_code=201)
def add_contacts(
    campaign_id: str,
    request: AddContactsRequest,
    tenant_id: str = Depends(require_tenant),
    service: CampaignService = Depends(get_campaign_service),
):
    """Queue additional contacts on a campaign"""
    try:
        added = service.add_contacts(tenant_id, campaign_id, request.contacts)
        return {"campaign_id": campaign_id, "jobs_enqueued": added}
    except CallQueueError as e:
        raise http_error(e)


@router.get("/{campaign_id}/jobs", response_model=JobListResponse)
def list_campaign_jobs(
    campaign_id: str,
    status: Optional[str] = Query(None, description="Filter by job status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    tenant_id: str = Depends(require_tenant),
    service: CampaignService = Depends(get_campaign_service),
    queue: CallQueueService = Depends(get_queue_service),
):
    """Jobs of a campaign in claim order"""
    try:
        service.get(tenant_id, campaign_id)
        items, total = queue.list_campaign_jobs(tenant_id, campaign_id, status=status, limit=limit, offset=offset)
        return JobListResponse(items=items, total=total, limit=limit, offset=offset)
    except CallQueueError as e:
        raise http_error(e)


@router.get("/{campaign_id}/stats")
def get_campaign_stats(
    campaign_id: str,
    tenant_id: str = Depends(require_tenant),
    service: CampaignService = Depends(get_campaign_service),
):
    """Live queue counts and stored counters for a campaign"""
    try:
        return {"campaign_id": campaign_id, "stats": service.get_statistics(tenant_id, campaign_id)}
    except CallQueueError as e:
        raise http_error(e)
