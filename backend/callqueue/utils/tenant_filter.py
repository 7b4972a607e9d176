"""
Tenant Filter Utility
Shared helper for applying consistent tenant scoping to SQLAlchemy statements
"""
from typing import Any, Optional

from callqueue.core.exceptions import ValidationError


def apply_tenant_filter(stmt: Any, model: Any, tenant_id: Optional[str]) -> Any:
    """
    Scope a select/update/delete statement to one tenant.

    Every queue and campaign operation is tenant-scoped, so a missing
    tenant is rejected instead of silently widening the query.

    Usage:
        stmt = select(Campaign).where(Campaign.id == campaign_id)
        stmt = apply_tenant_filter(stmt, Campaign, tenant_id)
    """
    if not tenant_id:
        raise ValidationError("tenant_id is required")
    return stmt.where(model.tenant_id == tenant_id)
