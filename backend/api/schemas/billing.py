"""
Billing webhook and health response schemas.
"""

from datetime import datetime

from pydantic import BaseModel, Field


class WebhookResponse(BaseModel):
    """Acknowledgement returned to the payment platform."""

    message: str = Field(..., description="Outcome of processing the delivery")


class CatalogSummary(BaseModel):
    """Sizes of the declared catalog."""

    tiers: int = Field(..., description="Number of declared tiers")
    addons: int = Field(..., description="Number of declared add-ons")


class HealthResponse(BaseModel):
    """Service health, including billing readiness."""

    status: str = Field(..., description="healthy, or degraded when webhooks cannot be verified")
    app: str
    version: str
    environment: str
    catalog: CatalogSummary
    webhook_ready: bool = Field(..., description="Whether a webhook signing secret is known")
    timestamp: datetime
