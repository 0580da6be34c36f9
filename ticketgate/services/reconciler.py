"""
Payment event reconciler.

The processor delivers outcomes at least once and in no particular order
relative to the reservation write. Everything here is written so that a
replay ends in the same state as the first delivery:

- matching goes session ref -> payment reference -> (buyer, event, pending)
- the paid transition is a compare-and-set in the store, committed together
  with the counters and the payout; a replay loses it and stops before any
  side effect (code, counters, notification, payout)
- delivery ids are recorded only after the work is done, so a transient
  store failure leaves the notification unacknowledged and it is retried
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import Callable, Mapping, Optional, Tuple

from loguru import logger

from .. import config
from ..codes import generate_code
from ..errors import ReconciliationOrphan
from ..helpers import cents_to_str, now_ts
from ..model.records import PaymentStatus, Ticket, TicketStatus
from ..model.store import TicketStore
from ..model.webhookseen import SeenLog
from ..notify import Notifier
from ..payments import PaymentAdapter, PaymentNotification


class Outcome(StrEnum):
    PAID = "paid"
    ALREADY_PAID = "already_paid"
    FAILED = "failed"
    ALREADY_SETTLED = "already_settled"
    ORPHAN = "orphan"
    DUPLICATE_DELIVERY = "duplicate_delivery"


@dataclass(frozen=True)
class ReconcileOutcome:
    outcome: Outcome
    ticket_id: Optional[str] = None
    matched_by: Optional[str] = None  # "session" | "payment_reference" | "fallback"


class Reconciler:

    def __init__(
        self,
        store: TicketStore,
        adapter: PaymentAdapter,
        seen: SeenLog,
        notifier: Notifier,
        *,
        code_secret: str = config.TICKET_CODE_SECRET,
        code_prefix: str = config.TICKET_CODE_PREFIX,
        commission_rates: Mapping[str, float] = config.COMMISSION_RATES,
        payout_grace_seconds: float = config.PAYOUT_GRACE_SECONDS,
        clock: Callable[[], float] = now_ts,
    ) -> None:
        self._store = store
        self._adapter = adapter
        self._seen = seen
        self._notifier = notifier
        self._code_secret = code_secret
        self._code_prefix = code_prefix
        self._commission_rates = dict(commission_rates)
        self._payout_grace = payout_grace_seconds
        self._clock = clock

    async def reconcile(
        self, payload: bytes, headers: Mapping[str, str]
    ) -> ReconcileOutcome:
        # fails closed with AuthenticationFailed before anything is read
        n = self._adapter.verify_webhook(payload, dict(headers))

        if n.idempotency_key and await self._seen.seen(n.idempotency_key):
            logger.debug("delivery {} already processed", n.idempotency_key)
            return ReconcileOutcome(Outcome.DUPLICATE_DELIVERY)

        try:
            ticket, matched_by = await self._match(n)
            if n.succeeded:
                result = await self._settle_success(n, ticket, matched_by)
            else:
                result = await self._settle_failure(n, ticket, matched_by)
        except ReconciliationOrphan as orphan:
            await self._store.record_orphan(
                kind=n.kind,
                session_ref=n.session_ref,
                buyer_id=n.buyer_id,
                event_id=n.event_id,
                reason=orphan.reason,
                payload=n.raw,
                now=self._clock(),
            )
            logger.warning(
                "ReconciliationOrphan session={} buyer={} event={}: {}",
                n.session_ref, n.buyer_id, n.event_id, orphan.reason,
            )
            result = ReconcileOutcome(Outcome.ORPHAN)

        if n.idempotency_key:
            await self._seen.mark_seen(n.idempotency_key)
        return result

    async def _match(self, n: PaymentNotification) -> Tuple[Ticket, str]:
        ticket = await self._store.find_ticket_by_session(n.session_ref)
        if ticket is not None:
            return ticket, "session"

        if n.payment_reference:
            # replay of a notification that was matched by fallback before
            ticket = await self._store.find_ticket_by_payment_reference(
                n.payment_reference
            )
            if ticket is not None:
                return ticket, "payment_reference"

        # a failure must never cancel some other open checkout of the buyer;
        # an unmatched failure leaves the reservation to the expiry sweep
        if n.succeeded and n.buyer_id and n.event_id:
            ticket = await self._store.find_pending_ticket(
                n.buyer_id, n.event_id
            )
            if ticket is not None:
                logger.warning(
                    "reconciliation fallback: session={} unknown, matched "
                    "ticket={} by buyer={} event={}",
                    n.session_ref, ticket.id, n.buyer_id, n.event_id,
                )
                if n.amount is not None and n.amount != ticket.price_paid:
                    raise ReconciliationOrphan(
                        f"fallback match ticket={ticket.id} but amount "
                        f"{n.amount} != price {ticket.price_paid}",
                        n.session_ref,
                    )
                return ticket, "fallback"

        raise ReconciliationOrphan(
            "no reservation matches the notification", n.session_ref
        )

    async def _settle_success(
        self, n: PaymentNotification, ticket: Ticket, matched_by: str
    ) -> ReconcileOutcome:
        if ticket.payment_status == PaymentStatus.PAID:
            return ReconcileOutcome(Outcome.ALREADY_PAID, ticket.id, matched_by)
        if ticket.payment_status == PaymentStatus.FAILED:
            raise ReconciliationOrphan(
                f"payment succeeded for released reservation "
                f"ticket={ticket.id} status={ticket.status}",
                n.session_ref,
            )

        code = generate_code(
            ticket.id, ticket.event_id, ticket.buyer_id,
            secret=self._code_secret, prefix=self._code_prefix,
        )
        now = self._clock()
        payout = await self._store.mark_paid(
            ticket_id=ticket.id, code=code,
            payment_reference=n.payment_reference,
            commission_rates=self._commission_rates,
            grace_seconds=self._payout_grace, now=now,
        )
        if payout is None:
            current = await self._store.get_ticket(ticket.id)
            if current is not None and current.payment_status == PaymentStatus.PAID:
                return ReconcileOutcome(
                    Outcome.ALREADY_PAID, ticket.id, matched_by
                )
            # the expiry sweep released it between our read and write
            raise ReconciliationOrphan(
                f"payment succeeded for released reservation "
                f"ticket={ticket.id}",
                n.session_ref,
            )

        logger.info(
            "ticket={} paid via {} ({} {})", ticket.id, matched_by,
            cents_to_str(ticket.price_paid), ticket.currency,
        )
        logger.debug(
            "payout for event={} held until {} amount={}",
            payout.event_id, payout.hold_until, payout.amount,
        )

        await self._notifier.send(
            ticket.buyer_id,
            "ticket",
            "Payment confirmed! Your ticket is ready.",
            {"ticket_id": ticket.id, "event_id": ticket.event_id},
        )
        return ReconcileOutcome(Outcome.PAID, ticket.id, matched_by)

    async def _settle_failure(
        self, n: PaymentNotification, ticket: Ticket, matched_by: str
    ) -> ReconcileOutcome:
        if ticket.payment_status != PaymentStatus.PENDING:
            logger.info(
                "payment {} for ticket={} ignored, already {}",
                n.kind, ticket.id, ticket.payment_status,
            )
            return ReconcileOutcome(
                Outcome.ALREADY_SETTLED, ticket.id, matched_by
            )

        if await self._store.mark_unpaid(
            ticket_id=ticket.id, status=TicketStatus.CANCELLED,
            now=self._clock(),
        ):
            logger.info("payment {} for ticket={}, unit restocked",
                        n.kind, ticket.id)
            return ReconcileOutcome(Outcome.FAILED, ticket.id, matched_by)
        return ReconcileOutcome(Outcome.ALREADY_SETTLED, ticket.id, matched_by)
