"""Buyer-initiated refunds, priced by how far away the event is."""

import math
from typing import Callable, Sequence, Tuple

from loguru import logger

from .. import config
from ..errors import RefundNotAllowed, TicketNotFound
from ..helpers import cents_to_str, now_ts
from ..model.records import (
    PaymentStatus, PayoutStatus, Refund, RefundStatus, TicketStatus,
)
from ..model.store import TicketStore
from ..notify import Notifier
from ..payments import PaymentAdapter

DAY = 24 * 3600


def refund_percent(
    days_until_event: int, policy: Sequence[Tuple[int, int]]
) -> int:
    """First policy row whose day threshold is met wins; none -> 0%."""
    for min_days, percent in policy:
        if days_until_event >= min_days:
            return percent
    return 0


class RefundService:

    def __init__(
        self,
        store: TicketStore,
        adapter: PaymentAdapter,
        notifier: Notifier,
        *,
        policy: Sequence[Tuple[int, int]] = config.REFUND_POLICY,
        commission_rates=config.COMMISSION_RATES,
        payout_grace_seconds: float = config.PAYOUT_GRACE_SECONDS,
        clock: Callable[[], float] = now_ts,
    ) -> None:
        self._store = store
        self._adapter = adapter
        self._notifier = notifier
        self._policy = tuple(policy)
        self._commission_rates = dict(commission_rates)
        self._payout_grace = payout_grace_seconds
        self._clock = clock

    async def request_refund(
        self, ticket_id: str, buyer_id: str, reason: str = ""
    ) -> Refund:
        """Refund a paid, unused ticket to its buyer.

        Returns the refund record: `processed` when the money went back right
        away, `pending` when the event's payout already left and an operator
        has to claw it back first.

        Raises:
            TicketNotFound: unknown ticket or not the buyer's.
            RefundNotAllowed: unpaid, used, already refunded, or too close to
                the event.
        """
        ticket = await self._store.get_ticket(ticket_id)
        if ticket is None or ticket.buyer_id != buyer_id:
            raise TicketNotFound(ticket_id)
        if ticket.payment_status != PaymentStatus.PAID:
            raise RefundNotAllowed("Ticket is not paid")
        if ticket.status == TicketStatus.REFUNDED:
            raise RefundNotAllowed("Ticket already refunded")
        if ticket.status != TicketStatus.VALID:
            raise RefundNotAllowed("Ticket was already used")
        if await self._store.get_refund_for_ticket(ticket_id) is not None:
            raise RefundNotAllowed("Refund already requested and pending")

        event = await self._store.get_event(ticket.event_id)
        now = self._clock()
        days = math.floor((event.starts_at - now) / DAY)
        percent = refund_percent(days, self._policy)
        if percent == 0:
            if days < 0:
                raise RefundNotAllowed("Event already occurred")
            raise RefundNotAllowed(
                "No refund available within 3 days of the event"
            )
        amount = round(ticket.price_paid * percent / 100)
        reason = reason or f"{percent}% refund, {days} days before the event"

        payout = await self._store.get_payout_for_event(ticket.event_id)
        if payout is not None and (
            payout.status == PayoutStatus.RELEASED
            or payout.claim_token is not None
        ):
            logger.warning(
                "refund for ticket={} needs review: payout={} already {}",
                ticket_id, payout.id, payout.status,
            )
            return await self._store.record_refund(
                ticket=ticket, refund_amount=amount, refund_percent=percent,
                status=RefundStatus.PENDING.value, reason=reason,
                refund_reference=None, now=now,
            )

        if not await self._store.mark_refunded(ticket_id=ticket_id, now=now):
            raise RefundNotAllowed("Ticket is no longer refundable")

        try:
            ref = await self._adapter.refund(ticket.payment_reference, amount)
        except Exception as e:
            logger.error(
                "processor refund for ticket={} failed: {}", ticket_id, e
            )
            return await self._store.record_refund(
                ticket=ticket, refund_amount=amount, refund_percent=percent,
                status=RefundStatus.PENDING.value,
                reason=f"{reason} (processor error: {e})",
                refund_reference=None, now=now,
            )

        refund = await self._store.record_refund(
            ticket=ticket, refund_amount=amount, refund_percent=percent,
            status=RefundStatus.PROCESSED.value, reason=reason,
            refund_reference=ref, now=now,
        )
        # the held payout shrinks by the refunded ticket
        await self._store.upsert_payout(
            event_id=ticket.event_id,
            commission_rates=self._commission_rates,
            grace_seconds=self._payout_grace, now=now,
        )
        logger.info(
            "refunded {} ({}%) for ticket={} ref={}",
            cents_to_str(amount), percent, ticket_id, ref,
        )

        await self._notifier.send(
            buyer_id, "refund",
            f"Refund of {cents_to_str(amount)} {ticket.currency} processed "
            f"for \"{event.name}\"",
            {"ticket_id": ticket_id, "refund_id": refund.id},
        )
        await self._notifier.send(
            event.organizer_id, "refund",
            f"Refund issued for \"{event.name}\" "
            f"({cents_to_str(amount)} {ticket.currency})",
            {"ticket_id": ticket_id, "refund_id": refund.id},
        )
        return refund
