"""
API Dependencies
Shared dependencies for tenant resolution, database sessions and services
"""
import logging
from typing import Optional

from fastapi import Depends, HTTPException, status
from sqlalchemy.orm import Session

from callqueue.core.config import SchedulerConfig, get_scheduler_config
from callqueue.core.exceptions import (
    CallQueueError,
    ConcurrencyConflict,
    ConstraintViolationError,
    InvalidTransitionError,
    NotFoundError,
    TransientBackendError,
    TransientDispatchFailure,
    ValidationError,
)
from callqueue.core.tenant_middleware import get_current_tenant
from callqueue.domain.services.admission_controller import AdmissionController
from callqueue.domain.services.analytics_service import AnalyticsService
from callqueue.domain.services.call_outcome_service import CallOutcomeService
from callqueue.domain.services.campaign_service import CampaignService
from callqueue.domain.services.queue_service import CallQueueService
from callqueue.infrastructure.storage.database import get_db_session

logger = logging.getLogger(__name__)


def require_tenant(tenant_id: Optional[str] = Depends(get_current_tenant)) -> str:
    """
    Dependency that rejects requests without a resolved tenant.

    Raises:
        HTTPException: 401 if the bearer token is missing or has no tenant
    """
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Valid bearer token with a tenant_id is required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return tenant_id


def get_scheduler_settings() -> SchedulerConfig:
    return get_scheduler_config()


def get_campaign_service(
    db: Session = Depends(get_db_session),
    config: SchedulerConfig = Depends(get_scheduler_settings),
) -> CampaignService:
    return CampaignService(db, config)


def get_queue_service(
    db: Session = Depends(get_db_session),
    config: SchedulerConfig = Depends(get_scheduler_settings),
) -> CallQueueService:
    return CallQueueService(db, config)


def get_admission_controller(
    db: Session = Depends(get_db_session),
    config: SchedulerConfig = Depends(get_scheduler_settings),
) -> AdmissionController:
    return AdmissionController(db, config)


def get_outcome_service(
    db: Session = Depends(get_db_session),
    config: SchedulerConfig = Depends(get_scheduler_settings),
) -> CallOutcomeService:
    return CallOutcomeService(db, config)


def get_analytics_service(db: Session = Depends(get_db_session)) -> AnalyticsService:
    return AnalyticsService(db)


def http_error(e: CallQueueError) -> HTTPException:
    """Map a domain error onto the HTTP status the API reports."""
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=e.message)
    if isinstance(e, InvalidTransitionError):
        return HTTPException(status_code=409, detail=e.message)
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=e.message)
    if isinstance(e, (ConcurrencyConflict, ConstraintViolationError)):
        return HTTPException(status_code=409, detail=e.message)
    if isinstance(e, (TransientBackendError, TransientDispatchFailure)):
        return HTTPException(status_code=503, detail=e.message)
    logger.error(f"Unmapped call queue error: {e}")
    return HTTPException(status_code=500, detail=e.message)
