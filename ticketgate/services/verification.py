"""Door check-in: validate a presented ticket and consume it exactly once."""

from dataclasses import dataclass
from enum import StrEnum
from typing import Callable, Optional

from loguru import logger

from .. import config
from ..codes import code_matches, parse_code
from ..errors import (
    ErrorCode, EventNotFound, InvalidRequest, TicketInvalid,
    VerifierNotAuthorized,
)
from ..helpers import now_ts
from ..model.records import Event, PaymentStatus, Ticket, TicketStatus
from ..model.store import TicketStore


class VerifyOutcome(StrEnum):
    GRANTED = "granted"
    DUPLICATE = "duplicate"
    INVALID = "invalid"


@dataclass(frozen=True)
class VerifyResult:
    result: VerifyOutcome
    holder_name: Optional[str] = None
    ticket_type_name: Optional[str] = None
    used_at: Optional[float] = None
    reason: Optional[str] = None


INVALID = VerifyResult(
    VerifyOutcome.INVALID, reason=ErrorCode.TICKET_INVALID.value
)


class VerificationService:

    def __init__(
        self,
        store: TicketStore,
        *,
        code_secret: str = config.TICKET_CODE_SECRET,
        code_prefix: str = config.TICKET_CODE_PREFIX,
        scan_grace_seconds: float = config.SCAN_GRACE_SECONDS,
        clock: Callable[[], float] = now_ts,
    ) -> None:
        self._store = store
        self._code_secret = code_secret
        self._code_prefix = code_prefix
        self._scan_grace = scan_grace_seconds
        self._clock = clock

    async def verify(
        self,
        event_id: str,
        verifier_id: str,
        code: Optional[str] = None,
        manual_id: Optional[str] = None,
    ) -> VerifyResult:
        """Check a ticket in at `event_id`.

        `code` is the scanned (or image-decoded) code, `manual_id` a typed
        ticket id; exactly one is required. Invalid tickets all look the same
        to the verifier, whether they exist or not.

        Raises:
            InvalidRequest: neither or both of code/manual_id.
            EventNotFound: unknown event.
            VerifierNotAuthorized: verifier is not the event's organizer.
        """
        if bool(code) == bool(manual_id):
            raise InvalidRequest("Provide either code or manual_id")

        event = await self._store.get_event(event_id)
        if event is None:
            raise EventNotFound(event_id)
        if event.organizer_id != verifier_id:
            raise VerifierNotAuthorized()

        ticket = None
        try:
            ticket = await self._locate(code, manual_id)
            result = await self._admit(ticket, event, verifier_id)
        except TicketInvalid:
            result = INVALID

        await self._store.record_verification(
            ticket_id=ticket.id if ticket else None,
            event_id=event_id,
            verifier_id=verifier_id,
            result=result.result.value,
            now=self._clock(),
        )
        logger.info(
            "check-in event={} verifier={} ticket={} -> {}",
            event_id, verifier_id, ticket.id if ticket else "-",
            result.result,
        )
        return result

    async def _locate(
        self, code: Optional[str], manual_id: Optional[str]
    ) -> Ticket:
        if code:
            parsed = parse_code(code, self._code_prefix)
            if parsed is None:
                raise TicketInvalid()
            ticket = await self._store.find_ticket_by_code("-".join(parsed))
            if ticket is None or not code_matches(
                parsed, ticket.event_id, ticket.buyer_id, self._code_secret
            ):
                raise TicketInvalid()
            return ticket

        ticket = await self._store.get_ticket(manual_id.strip())
        if ticket is None:
            raise TicketInvalid()
        return ticket

    async def _admit(
        self, ticket: Ticket, event: Event, verifier_id: str
    ) -> VerifyResult:
        if ticket.event_id != event.id:
            raise TicketInvalid()
        if ticket.payment_status != PaymentStatus.PAID:
            raise TicketInvalid()
        if ticket.status == TicketStatus.USED:
            return VerifyResult(VerifyOutcome.DUPLICATE, used_at=ticket.used_at)
        if ticket.status != TicketStatus.VALID:
            raise TicketInvalid()

        now = self._clock()
        if now > event.ends_at + self._scan_grace:
            raise TicketInvalid()

        if not await self._store.mark_used(
            ticket_id=ticket.id, verifier_id=verifier_id, now=now
        ):
            # another scanner consumed it between our read and the update
            current = await self._store.get_ticket(ticket.id)
            if current is not None and current.status == TicketStatus.USED:
                return VerifyResult(
                    VerifyOutcome.DUPLICATE, used_at=current.used_at
                )
            raise TicketInvalid()

        return VerifyResult(
            VerifyOutcome.GRANTED,
            holder_name=ticket.holder_name,
            ticket_type_name=await self._store.ticket_type_name(
                ticket.template_id
            ),
            used_at=now,
        )
