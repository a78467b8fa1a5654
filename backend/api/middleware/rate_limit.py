"""
Rate limiting for the billing endpoints using slowapi.

Stripe delivers webhooks from a published set of public addresses, usually
through a load balancer, so requests are bucketed by the first public address
in the proxy headers. Counters live in process memory.
"""

import ipaddress
import logging

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from infrastructure.config.settings import settings

logger = logging.getLogger(__name__)

WEBHOOK_LIMIT = settings.webhook_rate_limit
DEFAULT_LIMIT = "100/minute"


def _public_ip(value: str | None) -> str | None:
    """Return ``value`` as a normalized public IP, or None when it is unusable."""
    if not value:
        return None
    try:
        address = ipaddress.ip_address(value.strip())
    except ValueError:
        return None
    # Internal addresses in forwarded headers are trivially spoofed
    if address.is_private or address.is_loopback or address.is_link_local:
        return None
    return str(address)


def client_ip(request: Request) -> str:
    """Rate-limit key: the forwarded client address, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    candidate = _public_ip(forwarded.split(",")[0]) if forwarded else None
    if candidate is None:
        candidate = _public_ip(request.headers.get("x-real-ip"))
    if candidate is None:
        return get_remote_address(request)
    return candidate


limiter = Limiter(
    key_func=client_ip,
    storage_uri="memory://",
    default_limits=[DEFAULT_LIMIT],
)
