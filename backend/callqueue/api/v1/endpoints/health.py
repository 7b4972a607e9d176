"""
Health Check Endpoint
Provides health status for Docker health checks and monitoring
"""
from typing import Dict

from fastapi import APIRouter, Depends, status
from sqlalchemy import text
from sqlalchemy.orm import Session

from callqueue.infrastructure.storage.database import get_db_session
from callqueue.utils.clock import utcnow

router = APIRouter(tags=["health"])


@router.get("/health", status_code=status.HTTP_200_OK)
def health_check(db: Session = Depends(get_db_session)) -> Dict[str, str]:
    """
    Health check endpoint for Docker and monitoring systems.

    Returns:
        Dict with status, database reachability and timestamp
    """
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except Exception as e:
        database = f"error: {e}"

    return {
        "status": "healthy" if database == "ok" else "degraded",
        "database": database,
        "timestamp": utcnow().isoformat() + "Z",
        "service": "callqueue-backend",
    }


@router.get("/", status_code=status.HTTP_200_OK)
def root() -> Dict[str, str]:
    """
    Root endpoint.

    Returns:
        Welcome message
    """
    return {
        "message": "Call Queue & Campaign Scheduler",
        "version": "1.0.0",
        "docs": "/docs",
    }
