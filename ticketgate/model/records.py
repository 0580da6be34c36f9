"""Domain records returned by the ticket store.

Rows come back from raw SQL as mappings; these frozen dataclasses are what the
services work with.
"""

from __future__ import annotations
from dataclasses import dataclass, fields
from enum import StrEnum
from typing import Any, Mapping, Optional, Self


class TicketType(StrEnum):
    GENERAL = "general"
    VIP = "vip"
    EARLY_BIRD = "early_bird"
    DAY_PASS = "day_pass"
    MULTI_DAY = "multi_day"
    BACKSTAGE = "backstage"
    STUDENT = "student"
    GROUP = "group"


class PaymentStatus(StrEnum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class TicketStatus(StrEnum):
    VALID = "valid"
    USED = "used"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    EXPIRED = "expired"


class PayoutStatus(StrEnum):
    PENDING = "pending"
    RELEASED = "released"
    FAILED = "failed"


class RefundStatus(StrEnum):
    PENDING = "pending"
    PROCESSED = "processed"


class _Record:
    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Self:
        return cls(**{f.name: row[f.name] for f in fields(cls)})


@dataclass(frozen=True)
class Event(_Record):
    id: str
    organizer_id: str
    organizer_tier: str
    name: str
    starts_at: float
    ends_at: float
    attendee_count: int
    disputed: bool
    created_at: float


@dataclass(frozen=True)
class TicketTemplate(_Record):
    id: str
    event_id: str
    name: str
    type: str
    price: int
    currency: str
    quantity_total: int
    quantity_available: int
    quantity_held: int
    quantity_sold: int
    is_active: bool
    sale_start: Optional[float]
    sale_end: Optional[float]
    created_at: float


@dataclass(frozen=True)
class Ticket(_Record):
    id: str
    event_id: str
    template_id: str
    buyer_id: str
    holder_name: str
    holder_email: str
    price_paid: int
    currency: str
    payment_status: str
    status: str
    code: Optional[str]
    checkout_session_ref: str
    payment_reference: Optional[str]
    created_at: float
    paid_at: Optional[float]
    used_at: Optional[float]
    verified_by: Optional[str]
    refunded_at: Optional[float]


@dataclass(frozen=True)
class Payout(_Record):
    id: str
    organizer_id: str
    event_id: str
    gross_amount: int
    platform_fee: int
    amount: int
    ticket_count: int
    currency: str
    status: str
    hold_until: float
    release_reference: Optional[str]
    review_reason: Optional[str]
    claim_token: Optional[str]
    claimed_at: Optional[float]
    error_message: Optional[str]
    created_at: float
    updated_at: float
    released_at: Optional[float]


@dataclass(frozen=True)
class Refund(_Record):
    id: str
    ticket_id: str
    buyer_id: str
    event_id: str
    original_amount: int
    refund_amount: int
    refund_percent: int
    status: str
    reason: str
    refund_reference: Optional[str]
    created_at: float
    processed_at: Optional[float]


@dataclass(frozen=True)
class Orphan(_Record):
    id: str
    kind: str
    session_ref: Optional[str]
    buyer_id: Optional[str]
    event_id: Optional[str]
    reason: str
    payload: str
    created_at: float


@dataclass(frozen=True)
class PayoutSignals:
    """What the payout sweep looks at before money leaves."""

    disputed: bool
    paid_count: int
    refunded_count: int

    @property
    def refund_rate(self) -> float:
        sold = self.paid_count + self.refunded_count
        if sold == 0:
            return 0.0
        return self.refunded_count / sold
