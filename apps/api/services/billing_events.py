"""Typed billing provider events, validated before they reach the reconciler."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from models.subscription import (
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_CANCELED,
    SUBSCRIPTION_PAST_DUE,
    SUBSCRIPTION_UNPAID,
)

SUBSCRIPTION_UPSERT_TYPES = (
    "subscription.created",
    "subscription.updated",
    "customer.subscription.created",
    "customer.subscription.updated",
)
SUBSCRIPTION_DELETED_TYPES = ("subscription.deleted", "customer.subscription.deleted")
INVOICE_PAYMENT_SUCCEEDED_TYPES = ("invoice.payment_succeeded",)
KNOWN_EVENT_TYPES = SUBSCRIPTION_UPSERT_TYPES + SUBSCRIPTION_DELETED_TYPES + INVOICE_PAYMENT_SUCCEEDED_TYPES

RENEWAL_BILLING_REASON = "subscription_cycle"

# Provider statuses folded onto the four states the ledger tracks.
_STATUS_MAP = {
    "active": SUBSCRIPTION_ACTIVE,
    "trialing": SUBSCRIPTION_ACTIVE,
    "past_due": SUBSCRIPTION_PAST_DUE,
    "incomplete": SUBSCRIPTION_PAST_DUE,
    "paused": SUBSCRIPTION_PAST_DUE,
    "unpaid": SUBSCRIPTION_UNPAID,
    "canceled": SUBSCRIPTION_CANCELED,
    "incomplete_expired": SUBSCRIPTION_CANCELED,
}


class _ProviderObject(BaseModel):
    model_config = ConfigDict(extra="ignore")


class PriceRef(_ProviderObject):
    id: str = ""


class SubscriptionItem(_ProviderObject):
    price: PriceRef = Field(default_factory=PriceRef)


class SubscriptionItems(_ProviderObject):
    data: List[SubscriptionItem] = Field(default_factory=list)


class SubscriptionObject(_ProviderObject):
    id: str = Field(min_length=1)
    customer: Optional[str] = None
    status: str = SUBSCRIPTION_ACTIVE
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    items: SubscriptionItems = Field(default_factory=SubscriptionItems)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> str:
        raw = str(value or "").strip().lower()
        return _STATUS_MAP.get(raw, SUBSCRIPTION_PAST_DUE)

    @property
    def plan_id(self) -> str:
        if self.items.data:
            return self.items.data[0].price.id
        return ""

    @property
    def account_hint(self) -> Optional[str]:
        value = str(self.metadata.get("account_id") or "").strip()
        return value or None


class LinePeriod(_ProviderObject):
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class InvoiceLine(_ProviderObject):
    period: LinePeriod = Field(default_factory=LinePeriod)
    price: Optional[PriceRef] = None


class InvoiceLines(_ProviderObject):
    data: List[InvoiceLine] = Field(default_factory=list)


class InvoiceObject(_ProviderObject):
    id: str = Field(min_length=1)
    customer: Optional[str] = None
    subscription: Optional[str] = None
    billing_reason: Optional[str] = None
    lines: InvoiceLines = Field(default_factory=InvoiceLines)

    @property
    def is_renewal(self) -> bool:
        return self.billing_reason == RENEWAL_BILLING_REASON

    @property
    def period_start(self) -> Optional[datetime]:
        if self.lines.data:
            return self.lines.data[0].period.start
        return None


class SubscriptionEventData(_ProviderObject):
    object: SubscriptionObject


class InvoiceEventData(_ProviderObject):
    object: InvoiceObject


class SubscriptionUpsertEvent(_ProviderObject):
    id: str = Field(min_length=1)
    type: Literal[
        "subscription.created",
        "subscription.updated",
        "customer.subscription.created",
        "customer.subscription.updated",
    ]
    data: SubscriptionEventData


class SubscriptionDeletedEvent(_ProviderObject):
    id: str = Field(min_length=1)
    type: Literal["subscription.deleted", "customer.subscription.deleted"]
    data: SubscriptionEventData


class InvoicePaymentSucceededEvent(_ProviderObject):
    id: str = Field(min_length=1)
    type: Literal["invoice.payment_succeeded"]
    data: InvoiceEventData


class UnhandledEvent(_ProviderObject):
    """Any event type the reconciler does not act on."""

    id: str = Field(min_length=1)
    type: str


class _EventEnvelope(_ProviderObject):
    id: str = Field(min_length=1)
    type: str = Field(min_length=1)


KnownBillingEvent = Annotated[
    Union[SubscriptionUpsertEvent, SubscriptionDeletedEvent, InvoicePaymentSucceededEvent],
    Field(discriminator="type"),
]
BillingEvent = Union[
    SubscriptionUpsertEvent,
    SubscriptionDeletedEvent,
    InvoicePaymentSucceededEvent,
    UnhandledEvent,
]

_known_event_adapter = TypeAdapter(KnownBillingEvent)


def parse_billing_event(payload: Dict[str, Any]) -> BillingEvent:
    """Validate a raw provider payload into its tagged event variant.

    Raises ``pydantic.ValidationError`` (a ``ValueError``) for a malformed
    envelope or a malformed payload of a known type. Unknown types parse into
    ``UnhandledEvent`` so they can be acknowledged.
    """
    envelope = _EventEnvelope.model_validate(payload)
    if envelope.type not in KNOWN_EVENT_TYPES:
        return UnhandledEvent(id=envelope.id, type=envelope.type)
    return _known_event_adapter.validate_python(payload)
