"""Billing error taxonomy shared by services, adapters and the API layer."""

import secrets


class BillingError(Exception):
    """Base exception for billing errors."""

    pass


class ConfigurationError(BillingError):
    """Raised when the declared catalog or settings are invalid."""

    pass


class WebhookSecretNotReadyError(BillingError):
    """Raised when a webhook arrives before the signing secret is known."""

    pass


class WebhookSignatureError(BillingError):
    """Raised when a webhook payload fails signature verification."""

    pass


class MetadataContractError(BillingError):
    """Raised when subscription metadata does not identify a subject and tier."""

    pass


class NotFoundError(BillingError):
    """Raised when a subscription, tier, add-on or customer does not exist."""

    def __init__(self, resource: str, identifier: str):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} not found for ID {identifier}.")


class SubjectTypeMismatchError(BillingError):
    """Raised when a tier or add-on is used with the wrong kind of subject."""

    pass


class InvalidCatalogEntryError(BillingError):
    """Raised when a tier or add-on cannot be sold (inactive or not priced)."""

    pass


class DuplicateSubscriptionError(BillingError):
    """Raised when a subject already holds a live subscription."""

    pass


class CatalogReferenceError(BillingError):
    """
    Raised when remote state references a catalog entry that is no longer declared.

    Carries a short reference code which is also logged, so an operator can
    correlate the error returned to the caller with the log line.
    """

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        self.reference = secrets.token_hex(4)
        super().__init__(
            f"{kind} {identifier!r} is referenced remotely but not declared in the catalog "
            f"(ref: {self.reference})"
        )


class PaymentPlatformError(BillingError):
    """Raised when the payment platform rejects or fails a request."""

    def __init__(self, message: str = "", code: str | None = None):
        super().__init__(message)
        self.code = code


class RemoteObjectNotFoundError(PaymentPlatformError):
    """Raised by platform adapters when a remote object does not exist."""

    pass
