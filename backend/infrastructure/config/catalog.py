"""
Declared catalog loading.

The catalog lives in a JSON file::

    {
      "tiers": [{"id": "gold", "subject_type": "group", "name": "Gold", "price": 500}],
      "addons": [{"id": "seats", "subject_type": "user", "name": "Seats", "price": 100}]
    }

It is validated with pydantic and converted into frozen domain objects.
"""

import json
import logging
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator

from core.domain.catalog import DEFAULT_CURRENCY, Addon, SubjectType, Tier
from core.domain.config import BillingConfig, BillingOptions
from core.exceptions import ConfigurationError
from infrastructure.config.settings import Settings

logger = logging.getLogger(__name__)


class CatalogEntryModel(BaseModel):
    """A tier or add-on as written in the catalog file."""

    id: str = Field(..., min_length=1, description="Stable identifier echoed into remote metadata")
    subject_type: SubjectType = Field(..., description="Subject kind (user, group)")
    name: str = Field(..., min_length=1, description="Display name of the product")
    price: int = Field(..., ge=0, description="Monthly price in minor currency units")
    currency: str = Field(DEFAULT_CURRENCY, description="ISO 4217 currency code")
    yearly_multiplier: float | None = Field(
        None, description="Yearly price multiplier (defaults to 10 when absent or below 1)"
    )
    active: bool = Field(True, description="Whether the entry can be sold")

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        v = v.strip().lower()
        if len(v) != 3 or not v.isalpha():
            raise ValueError("currency must be a 3-letter ISO code")
        return v

    def to_tier(self) -> Tier:
        return Tier(**self._domain_fields())

    def to_addon(self) -> Addon:
        return Addon(**self._domain_fields())

    def _domain_fields(self) -> dict:
        return {
            "id": self.id,
            "subject_type": self.subject_type,
            "name": self.name,
            "price_minor_units": self.price,
            "currency": self.currency,
            "yearly_multiplier": self.yearly_multiplier,
            "active": self.active,
        }


class CatalogFile(BaseModel):
    """Top-level structure of the catalog file."""

    tiers: list[CatalogEntryModel] = Field(default_factory=list)
    addons: list[CatalogEntryModel] = Field(default_factory=list)


def parse_catalog(data: dict) -> tuple[list[Tier], list[Addon]]:
    """
    Validate raw catalog data.

    Raises:
        ConfigurationError: If the data does not describe a valid catalog
    """
    try:
        catalog = CatalogFile.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid catalog: {e}") from e
    return [entry.to_tier() for entry in catalog.tiers], [entry.to_addon() for entry in catalog.addons]


def load_catalog(path: str | Path) -> tuple[list[Tier], list[Addon]]:
    """
    Read and validate the catalog file.

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid
    """
    path = Path(path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigurationError(f"Catalog file not found: {path}") from e
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Catalog file {path} could not be read: {e}") from e

    tiers, addons = parse_catalog(raw)
    logger.info(f"Loaded catalog from {path}: {len(tiers)} tiers, {len(addons)} add-ons")
    return tiers, addons


def build_billing_config(settings: Settings) -> BillingConfig:
    """Assemble the billing configuration from settings and the catalog file."""
    tiers, addons = load_catalog(settings.billing_catalog_path)
    return BillingConfig(
        tiers=tiers,
        addons=addons,
        api_key=settings.stripe_api_key or "",
        webhook_url=settings.stripe_webhook_url,
        webhook_secret=settings.stripe_webhook_secret,
        options=BillingOptions(
            include_tax_in_price=settings.billing_include_tax_in_price,
            delete_unknown_entries=settings.billing_delete_unknown_entries,
            default_due_days=settings.billing_default_due_days,
            redirect_url=settings.billing_redirect_url,
            invoice_all_on_dispute_loss=settings.billing_invoice_all_on_dispute_loss,
        ),
    )
