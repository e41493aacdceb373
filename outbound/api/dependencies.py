"""Request dependencies shared by the API routers."""

from typing import Annotated

from fastapi import Header, HTTPException, Request

from outbound.service import OutboundService


def get_service(request: Request) -> OutboundService:
    """The OutboundService attached to the application by create_app()."""
    return request.app.state.outbound


def get_tenant_id(
    tenant_id: Annotated[str | None, Header(alias="X-Tenant-ID")] = None,
) -> str:
    """Tenant of the caller, set by the authenticating gateway.

    Raises:
        HTTPException: 400 if the header is missing.
    """
    if not tenant_id:
        raise HTTPException(status_code=400, detail="X-Tenant-ID header is required")
    return tenant_id
