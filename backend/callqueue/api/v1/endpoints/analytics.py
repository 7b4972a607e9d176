"""
Analytics Endpoints
Campaign progress, connection and success metrics
"""
from fastapi import APIRouter, Depends

from callqueue.api.v1.dependencies import get_analytics_service, http_error, require_tenant
from callqueue.core.exceptions import CallQueueError
from callqueue.domain.models.analytics import CampaignAnalytics
from callqueue.domain.services.analytics_service import AnalyticsService

router = APIRouter(prefix="/analytics", tags=["analytics"])


@router.get("/campaigns/{campaign_id}", response_model=CampaignAnalytics)
def get_campaign_analytics(
    campaign_id: str,
    tenant_id: str = Depends(require_tenant),
    service: AnalyticsService = Depends(get_analytics_service),
):
    """
    Metrics for one campaign.

    Ratios are returned as percentages and are 0 when there is nothing
    to divide by.
    """
    try:
        return service.get_campaign_analytics(tenant_id, campaign_id)
    except CallQueueError as e:
        raise http_error(e)
