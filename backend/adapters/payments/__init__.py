"""Payment adapters for billing and subscription management."""

from .stripe_adapter import (
    StripeAdapter,
    StripeAPIError,
    StripeAuthError,
    StripeError,
    StripeNotFoundError,
    create_stripe_adapter,
    encode_form_data,
)
from .webhook_signature import generate_signature_header, verify_signature

__all__ = [
    "StripeAdapter",
    "StripeError",
    "StripeAPIError",
    "StripeAuthError",
    "StripeNotFoundError",
    "create_stripe_adapter",
    "encode_form_data",
    "generate_signature_header",
    "verify_signature",
]
