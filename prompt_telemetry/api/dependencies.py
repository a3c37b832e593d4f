from typing import Optional
from fastapi import Header, HTTPException, Request
import structlog

from ..monitoring.telemetry_service import TelemetryService


logger = structlog.get_logger(__name__)


async def get_telemetry_service(request: Request) -> TelemetryService:
    """Dependency to get the telemetry service owned by the application"""
    service = getattr(request.app.state, "telemetry_service", None)
    if service is None or not service.is_running:
        raise HTTPException(status_code=503, detail="Telemetry service not initialized")
    return service


async def get_tenant_id(x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-ID")) -> str:
    """Tenant resolved by the upstream auth layer and forwarded as a header"""
    if not x_tenant_id or not x_tenant_id.strip():
        logger.warning("Request rejected without tenant header")
        raise HTTPException(status_code=401, detail="Missing X-Tenant-ID header")
    return x_tenant_id.strip()
