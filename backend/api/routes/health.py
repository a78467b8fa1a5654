"""Health check endpoints."""

from datetime import UTC, datetime
from typing import Annotated

from fastapi import APIRouter, Depends

from api.dependencies import get_billing_manager
from api.schemas.billing import CatalogSummary, HealthResponse
from infrastructure.config import get_settings
from services.billing_manager import BillingManager

router = APIRouter()
settings = get_settings()


@router.get("/health", response_model=HealthResponse)
async def health_check(manager: Annotated[BillingManager, Depends(get_billing_manager)]):
    """Health check with catalog sizes and webhook readiness."""
    return HealthResponse(
        status="healthy" if manager.is_ready else "degraded",
        app=settings.app_name,
        version=settings.app_version,
        environment=settings.environment,
        catalog=CatalogSummary(
            tiers=len(manager.config.tiers),
            addons=len(manager.config.addons),
        ),
        webhook_ready=manager.is_ready,
        timestamp=datetime.now(UTC),
    )


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
