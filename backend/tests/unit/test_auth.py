"""
Unit tests for the tenant context dependency (get_tenant_context).
"""

import pytest
import structlog
from fastapi import HTTPException

from billing_engine.auth import get_tenant_context
from billing_engine.models.billing import PrincipalKind


class TestGetTenantContext:
    """Tests for the get_tenant_context dependency."""

    @pytest.mark.asyncio
    async def test_tenant_and_actor(self):
        """Both headers yield a user principal scoped to the tenant."""
        context = await get_tenant_context(tenant_id="tenant-a", actor_id="user-123")

        assert context.tenant_id == "tenant-a"
        assert context.principal.kind == PrincipalKind.USER
        assert context.principal.id == "user-123"

    @pytest.mark.asyncio
    async def test_missing_actor_runs_as_system(self):
        context = await get_tenant_context(tenant_id="tenant-a", actor_id=None)

        assert context.principal.is_system

    @pytest.mark.asyncio
    async def test_missing_tenant_raises_401(self):
        with pytest.raises(HTTPException) as exc_info:
            await get_tenant_context(tenant_id=None, actor_id="user-123")

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_blank_tenant_raises_401(self):
        with pytest.raises(HTTPException) as exc_info:
            await get_tenant_context(tenant_id="   ", actor_id=None)

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_tenant_bound_to_log_context(self):
        structlog.contextvars.clear_contextvars()

        await get_tenant_context(tenant_id=" tenant-b ", actor_id=None)

        assert structlog.contextvars.get_contextvars()["tenant_id"] == "tenant-b"
        structlog.contextvars.clear_contextvars()
