# Interfaces (Abstract Contracts)
# Adapters implement these interfaces
from .services import PaymentPlatform, collect

__all__ = [
    "PaymentPlatform",
    "collect",
]
