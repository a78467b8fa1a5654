"""Subscription domain entities."""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from core.domain.catalog import BillingInterval, CatalogKind, SubjectType, parse_catalog_tags
from core.domain.refs import ref_id
from core.exceptions import MetadataContractError

# Subscription metadata keys; remote metadata only stores strings
TIER_ID = "tierId"
SUBJECT_ID = "subjectId"
GROUP_ID = "groupId"
IS_USER_SUB = "isUserSub"
IS_ANNUAL = "isAnnual"

# Statuses that count as "holding a subscription"
LIVE_STATUSES = frozenset(
    {"active", "trialing", "past_due", "incomplete", "unpaid", "paused"}
)


class ChargeType(StrEnum):
    """How a tier or add-on change is billed."""

    IMMEDIATE = "immediate"
    END_OF_PERIOD = "end_of_period"
    SEND_INVOICE = "send_invoice"


@dataclass(frozen=True)
class ChargeOptions:
    """Billing strategy for a subscription change."""

    charge_type: ChargeType = ChargeType.IMMEDIATE
    due_days: int | None = None


def parse_metadata_bool(value: Any) -> bool | None:
    """Parse a ``"true"``/``"false"`` metadata string; None when absent or unreadable."""
    if isinstance(value, bool):
        return value
    if not isinstance(value, str):
        return None
    lowered = value.strip().lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    return None


def format_metadata_bool(value: bool) -> str:
    return "true" if value else "false"


@dataclass(frozen=True)
class SubscriptionMetadata:
    """
    Typed view of the metadata tags stamped on every subscription.

    The tags are the only way to recover which subject and tier a remote
    subscription belongs to, so parsing is strict.
    """

    tier_id: str
    subject_id: str
    group_id: str | None = None
    is_user_sub: bool = False
    is_annual: bool = False

    @property
    def subject_type(self) -> SubjectType:
        return SubjectType.USER if self.is_user_sub else SubjectType.GROUP

    @classmethod
    def from_metadata(cls, metadata: dict[str, Any] | None) -> "SubscriptionMetadata":
        """
        Parse subscription metadata.

        Raises:
            MetadataContractError: If the tier, the subject or the subject kind is missing
        """
        metadata = metadata or {}
        tier_id = metadata.get(TIER_ID)
        subject_id = metadata.get(SUBJECT_ID)
        group_id = metadata.get(GROUP_ID) or None
        is_user_sub = parse_metadata_bool(metadata.get(IS_USER_SUB))

        if not tier_id or not subject_id:
            raise MetadataContractError("Missing metadata in subscription.")
        if not group_id and is_user_sub is None:
            raise MetadataContractError("Missing metadata in subscription.")
        if not is_user_sub and not group_id:
            raise MetadataContractError("Group subscription is missing its group id.")

        return cls(
            tier_id=tier_id,
            subject_id=subject_id,
            group_id=None if is_user_sub else group_id,
            is_user_sub=bool(is_user_sub),
            is_annual=bool(parse_metadata_bool(metadata.get(IS_ANNUAL))),
        )

    def to_metadata(self) -> dict[str, str]:
        metadata = {
            TIER_ID: self.tier_id,
            SUBJECT_ID: self.subject_id,
            IS_USER_SUB: format_metadata_bool(self.is_user_sub),
            IS_ANNUAL: format_metadata_bool(self.is_annual),
        }
        if self.group_id:
            metadata[GROUP_ID] = self.group_id
        return metadata


@dataclass(frozen=True)
class LineItem:
    """A subscription line item with its catalog identity, if it has one."""

    item_id: str | None
    price_id: str | None
    quantity: int
    catalog_id: str | None = None
    subject_type: SubjectType | None = None
    kind: CatalogKind | None = None
    interval: BillingInterval | None = None

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "LineItem":
        """Create a line item from a remote subscription item."""
        price = data.get("price") or {}
        if isinstance(price, str):
            price = {"id": price}
        tags = parse_catalog_tags(price.get("metadata"))
        recurring = price.get("recurring") or {}
        try:
            interval = BillingInterval(recurring.get("interval")) if recurring else None
        except ValueError:
            interval = None

        return cls(
            item_id=data.get("id"),
            price_id=ref_id(price),
            quantity=int(data.get("quantity") or 0),
            catalog_id=tags[0] if tags else None,
            subject_type=tags[1] if tags else None,
            kind=tags[2] if tags else None,
            interval=interval,
        )

    def is_catalog(self, kind: CatalogKind) -> bool:
        return self.kind == kind and self.catalog_id is not None


def parse_line_items(items: Any) -> list[LineItem]:
    """
    Parse the ``items`` field of a subscription (a list object or a plain list).
    """
    if not items:
        return []
    if isinstance(items, dict):
        items = items.get("data") or []
    return [LineItem.from_api_response(item) for item in items if isinstance(item, dict)]
