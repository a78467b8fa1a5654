"""
API request and response schemas.
"""

from .billing import CatalogSummary, HealthResponse, WebhookResponse

__all__ = [
    "CatalogSummary",
    "HealthResponse",
    "WebhookResponse",
]
