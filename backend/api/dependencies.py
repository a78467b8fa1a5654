"""
API dependencies.
"""

from fastapi import HTTPException, Request, status

from services.billing_manager import BillingManager


def get_billing_manager(request: Request) -> BillingManager:
    """
    Dependency returning the billing manager built at startup.

    Raises 503 while the application has not finished starting.
    """
    manager = getattr(request.app.state, "billing", None)
    if manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing is not initialized",
        )
    return manager
