"""
Tenant context dependency for FastAPI endpoints.

Identity is resolved by the gateway in front of this service, which forwards
the tenant and the acting user as headers. Requests without a tenant are
rejected; requests without an actor run as the system principal.
"""

from typing import Annotated

import structlog
from fastapi import Depends, Header, HTTPException

from billing_engine.constants import ACTOR_HEADER, TENANT_HEADER
from billing_engine.logging_config import bind_tenant
from billing_engine.models.billing import Principal, TenantContext

logger = structlog.get_logger(__name__)


async def get_tenant_context(
    tenant_id: str | None = Header(default=None, alias=TENANT_HEADER),
    actor_id: str | None = Header(default=None, alias=ACTOR_HEADER),
) -> TenantContext:
    """
    FastAPI dependency that builds the TenantContext for a request.

    Raises:
        HTTPException 401: Tenant header missing or blank.
    """
    if not tenant_id or not tenant_id.strip():
        logger.warning("tenant_context_missing")
        raise HTTPException(status_code=401, detail="Missing tenant context")

    tenant_id = tenant_id.strip()
    bind_tenant(tenant_id)
    principal = Principal.user(actor_id) if actor_id else Principal.system()
    return TenantContext(tenant_id=tenant_id, principal=principal)


CurrentTenant = Annotated[TenantContext, Depends(get_tenant_context)]
