"""Reservation service: provisional tickets and their expiry."""

from typing import Callable, List

from loguru import logger

from .. import config
from ..errors import InvalidRequest, SaleClosed, TemplateNotFound, TicketNotFound
from ..helpers import is_valid_email, new_id, now_ts
from ..model.records import PaymentStatus, Ticket, TicketStatus
from ..model.store import TicketStore


class ReservationService:

    def __init__(
        self,
        store: TicketStore,
        *,
        ttl_seconds: int = config.RESERVATION_TTL_SECONDS,
        clock: Callable[[], float] = now_ts,
    ) -> None:
        self._store = store
        self._ttl = ttl_seconds
        self._clock = clock

    async def reserve(
        self,
        template_id: str,
        buyer_id: str,
        holder_name: str,
        holder_email: str,
        checkout_session_ref: str,
    ) -> Ticket:
        """Hold one unit of the template and return the pending ticket.

        Raises:
            InvalidRequest: missing buyer/holder data.
            TemplateNotFound: unknown template.
            SaleClosed: template inactive or outside its sale window.
            InventoryExhausted: nothing left to hold.
            PendingReservationExists: the buyer has an open checkout for
                this event already.
        """
        holder_name = (holder_name or "").strip()
        holder_email = (holder_email or "").strip()
        if not buyer_id or not holder_name:
            raise InvalidRequest("buyer_id and holder_name are required")
        if not is_valid_email(holder_email):
            raise InvalidRequest(
                "holder_email is required and must be a valid email address"
            )
        if not checkout_session_ref:
            raise InvalidRequest("checkout session reference is required")

        now = self._clock()
        template = await self._store.get_template(template_id)
        if template is None:
            raise TemplateNotFound(template_id)
        if not template.is_active:
            raise SaleClosed("This ticket type is no longer available")
        if template.sale_start is not None and now < template.sale_start:
            raise SaleClosed("Ticket sales have not started yet")
        if template.sale_end is not None and now > template.sale_end:
            raise SaleClosed("Ticket sales have ended")

        ticket = await self._store.reserve_ticket(
            ticket_id=new_id(),
            template_id=template_id,
            buyer_id=buyer_id,
            holder_name=holder_name,
            holder_email=holder_email,
            checkout_session_ref=checkout_session_ref,
            now=now,
        )
        logger.info(
            "reserved ticket={} template={} buyer={} session={}",
            ticket.id, template_id, buyer_id, checkout_session_ref,
        )
        return ticket

    async def cancel(self, ticket_id: str, buyer_id: str) -> Ticket:
        """Buyer abandons checkout: the unit goes back on sale."""
        ticket = await self._store.get_ticket(ticket_id)
        if ticket is None or ticket.buyer_id != buyer_id:
            raise TicketNotFound(ticket_id)
        if ticket.payment_status != PaymentStatus.PENDING:
            raise InvalidRequest("Only unpaid reservations can be cancelled")

        if await self._store.mark_unpaid(
            ticket_id=ticket_id, status=TicketStatus.CANCELLED,
            now=self._clock(),
        ):
            logger.info("reservation cancelled ticket={}", ticket_id)
        # lost the race to the reconciler or the sweep: report what won
        return await self._store.get_ticket(ticket_id)

    async def expire_stale(
        self, limit: int = config.SWEEP_BATCH_SIZE
    ) -> List[str]:
        """Release every reservation older than the TTL. Safe to re-run."""
        cutoff = self._clock() - self._ttl
        expired = []
        for ticket_id in await self._store.list_stale_pending(cutoff, limit):
            if await self._store.mark_unpaid(
                ticket_id=ticket_id, status=TicketStatus.EXPIRED,
                now=self._clock(),
            ):
                expired.append(ticket_id)
        if expired:
            logger.info("expired {} stale reservations", len(expired))
        return expired
