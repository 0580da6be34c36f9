# model/store.py
"""
Ticket store: the only code that writes tickets, templates and payouts.

Every public method is one gated transaction. State transitions are single
conditional UPDATEs (`... WHERE <expected state> RETURNING`), so the first
writer wins and everybody else sees "no row" instead of overwriting. That is
the only synchronization the services rely on; no locks are held across
calls and nothing lives in process memory.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    EventNotFound, InvalidRequest, InventoryExhausted,
    PendingReservationExists, RefundNotAllowed, TemplateNotFound,
)
from ..helpers import new_id
from ..infra.sql import Gated
from ..infra.timings import timeit
from .records import (
    Event, Orphan, PaymentStatus, Payout, PayoutSignals, PayoutStatus,
    Refund, Ticket, TicketStatus, TicketTemplate,
)


TICKET_COLUMNS = """
    id, event_id, template_id, buyer_id, holder_name, holder_email,
    price_paid, currency, payment_status, status, code,
    checkout_session_ref, payment_reference, created_at, paid_at, used_at,
    verified_by, refunded_at
"""


class TicketStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    # ------------------------------------------------------------------
    # Events & templates
    # ------------------------------------------------------------------

    async def create_event(
        self, *, organizer_id: str, name: str, starts_at: float,
        ends_at: float, now: float, organizer_tier: str = "free",
    ) -> Event:
        event_id = new_id()
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                    INSERT INTO events(
                        id, organizer_id, organizer_tier, name, starts_at,
                        ends_at, attendee_count, disputed, created_at)
                    VALUES(:id, :org, :tier, :name, :s, :e, 0, FALSE, :now)
                    RETURNING *
                """), {
                    "id": event_id, "org": organizer_id,
                    "tier": organizer_tier, "name": name, "s": starts_at,
                    "e": ends_at, "now": now,
                })).mappings().one()
        return Event.from_row(row)

    async def get_event(self, event_id: str) -> Optional[Event]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    text("SELECT * FROM events WHERE id=:id"),
                    {"id": event_id},
                )).mappings().first()
        return Event.from_row(row) if row else None

    async def set_event_disputed(self, event_id: str, disputed: bool) -> None:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                    UPDATE events SET disputed=:d WHERE id=:id RETURNING id
                """), {"id": event_id, "d": disputed})).first()
        if row is None:
            raise EventNotFound(event_id)

    async def create_template(
        self, *, event_id: str, name: str, type: str, price: int,
        quantity: int, now: float, currency: str = "eur",
        sale_start: Optional[float] = None, sale_end: Optional[float] = None,
    ) -> TicketTemplate:
        template_id = new_id()
        async with self.gated():
            async with self.db.begin():
                exists = (await self.db.execute(
                    text("SELECT 1 FROM events WHERE id=:id"),
                    {"id": event_id},
                )).first()
                if exists is None:
                    raise EventNotFound(event_id)
                # one currency per event, payouts are summed across templates
                other = (await self.db.execute(text("""
                    SELECT currency FROM ticket_templates
                    WHERE event_id=:ev AND currency<>:cur
                    LIMIT 1
                """), {"ev": event_id, "cur": currency})).scalar_one_or_none()
                if other is not None:
                    raise InvalidRequest(
                        f"Event already sells tickets in {other}"
                    )
                row = (await self.db.execute(text("""
                    INSERT INTO ticket_templates(
                        id, event_id, name, type, price, currency,
                        quantity_total, quantity_available, quantity_held,
                        quantity_sold, is_active, sale_start, sale_end,
                        created_at)
                    VALUES(:id, :ev, :name, :type, :price, :cur, :q, :q, 0,
                           0, TRUE, :ss, :se, :now)
                    RETURNING *
                """), {
                    "id": template_id, "ev": event_id, "name": name,
                    "type": type, "price": price, "cur": currency,
                    "q": quantity, "ss": sale_start, "se": sale_end,
                    "now": now,
                })).mappings().one()
        return TicketTemplate.from_row(row)

    async def get_template(self, template_id: str) -> Optional[TicketTemplate]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    text("SELECT * FROM ticket_templates WHERE id=:id"),
                    {"id": template_id},
                )).mappings().first()
        return TicketTemplate.from_row(row) if row else None

    async def list_templates(self, event_id: str) -> List[TicketTemplate]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                    SELECT * FROM ticket_templates
                    WHERE event_id=:ev ORDER BY created_at, id
                """), {"ev": event_id})).mappings().all()
        return [TicketTemplate.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Reservation
    # ------------------------------------------------------------------

    async def reserve_ticket(
        self, *, ticket_id: str, template_id: str, buyer_id: str,
        holder_name: str, holder_email: str, checkout_session_ref: str,
        now: float,
    ) -> Ticket:
        """
        Move one unit available -> held and insert the pending ticket, in one
        transaction. The decrement is conditional, so two buyers racing for
        the last unit get one ticket and one InventoryExhausted.
        """
        try:
            async with timeit("store.reserve_ticket"):
                async with self.gated():
                    async with self.db.begin():
                        tpl = (await self.db.execute(text("""
                            UPDATE ticket_templates
                            SET quantity_available = quantity_available - 1,
                                quantity_held = quantity_held + 1
                            WHERE id=:id AND quantity_available > 0
                            RETURNING event_id, price, currency
                        """), {"id": template_id})).mappings().first()

                        if tpl is None:
                            exists = (await self.db.execute(
                                text("SELECT 1 FROM ticket_templates "
                                     "WHERE id=:id"),
                                {"id": template_id},
                            )).first()
                            if exists is None:
                                raise TemplateNotFound(template_id)
                            raise InventoryExhausted(template_id)

                        event_id = tpl["event_id"]
                        row = (await self.db.execute(text(f"""
                            INSERT INTO tickets(
                                id, event_id, template_id, buyer_id,
                                holder_name, holder_email, price_paid,
                                currency, payment_status, status,
                                checkout_session_ref, created_at)
                            VALUES(:id, :ev, :tpl, :buyer, :hn, :he, :price,
                                   :cur, :ps, :st, :csr, :now)
                            RETURNING {TICKET_COLUMNS}
                        """), {
                            "id": ticket_id, "ev": event_id,
                            "tpl": template_id, "buyer": buyer_id,
                            "hn": holder_name, "he": holder_email,
                            "price": tpl["price"], "cur": tpl["currency"],
                            "ps": PaymentStatus.PENDING.value,
                            "st": TicketStatus.VALID.value,
                            "csr": checkout_session_ref, "now": now,
                        })).mappings().one()
        except IntegrityError:
            # the transaction (unit decrement included) is rolled back
            existing = await self.find_pending_ticket(
                buyer_id, await self._template_event_id(template_id)
            )
            if existing is not None:
                raise PendingReservationExists(buyer_id, existing.event_id)
            raise
        return Ticket.from_row(row)

    async def _template_event_id(self, template_id: str) -> str:
        async with self.gated():
            async with self.db.begin():
                return (await self.db.execute(
                    text("SELECT event_id FROM ticket_templates WHERE id=:id"),
                    {"id": template_id},
                )).scalar_one()

    # ------------------------------------------------------------------
    # Ticket lookups
    # ------------------------------------------------------------------

    async def _one_ticket(
        self, where: str, params: Dict[str, Any]
    ) -> Optional[Ticket]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    text(f"SELECT {TICKET_COLUMNS} FROM tickets WHERE {where}"),
                    params,
                )).mappings().first()
        return Ticket.from_row(row) if row else None

    async def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        return await self._one_ticket("id=:id", {"id": ticket_id})

    async def find_ticket_by_code(self, code: str) -> Optional[Ticket]:
        return await self._one_ticket("code=:code", {"code": code})

    async def find_ticket_by_session(
        self, checkout_session_ref: str
    ) -> Optional[Ticket]:
        return await self._one_ticket(
            "checkout_session_ref=:csr", {"csr": checkout_session_ref}
        )

    async def find_ticket_by_payment_reference(
        self, payment_reference: str
    ) -> Optional[Ticket]:
        return await self._one_ticket(
            "payment_reference=:pref", {"pref": payment_reference}
        )

    async def find_pending_ticket(
        self, buyer_id: str, event_id: str
    ) -> Optional[Ticket]:
        return await self._one_ticket(
            "buyer_id=:buyer AND event_id=:ev AND payment_status=:ps",
            {"buyer": buyer_id, "ev": event_id,
             "ps": PaymentStatus.PENDING.value},
        )

    async def list_tickets_for_buyer(
        self, buyer_id: str, limit: int = 100
    ) -> List[Ticket]:
        """The buyer's tickets, newest first."""
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text(f"""
                    SELECT {TICKET_COLUMNS} FROM tickets
                    WHERE buyer_id=:buyer
                    ORDER BY created_at DESC
                    LIMIT :lim
                """), {"buyer": buyer_id, "lim": limit})).mappings().all()
        return [Ticket.from_row(r) for r in rows]

    async def ticket_type_name(self, template_id: str) -> Optional[str]:
        async with self.gated():
            async with self.db.begin():
                return (await self.db.execute(
                    text("SELECT name FROM ticket_templates WHERE id=:id"),
                    {"id": template_id},
                )).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Payment transitions
    # ------------------------------------------------------------------

    async def mark_paid(
        self, *, ticket_id: str, code: str, payment_reference: Optional[str],
        commission_rates: Dict[str, float], grace_seconds: float, now: float,
    ) -> Optional[Payout]:
        """
        pending -> paid, attach the code, held -> sold, recompute the event's
        attendee count and create or refresh its held payout, all in one
        transaction. Returns the payout, or None when the ticket was not
        pending any more (replayed notification): nothing is touched then, so
        nothing is counted twice.
        """
        async with timeit("store.mark_paid"):
            async with self.gated():
                async with self.db.begin():
                    row = (await self.db.execute(text("""
                        UPDATE tickets
                        SET payment_status=:paid, code=:code,
                            payment_reference=:pref, paid_at=:now
                        WHERE id=:id AND payment_status=:pending
                          AND status=:valid AND code IS NULL
                        RETURNING template_id, event_id
                    """), {
                        "id": ticket_id, "code": code, "pref":
                        payment_reference, "now": now,
                        "paid": PaymentStatus.PAID.value,
                        "pending": PaymentStatus.PENDING.value,
                        "valid": TicketStatus.VALID.value,
                    })).mappings().first()
                    if row is None:
                        return None

                    await self.db.execute(text("""
                        UPDATE ticket_templates
                        SET quantity_held = quantity_held - 1,
                            quantity_sold = quantity_sold + 1
                        WHERE id=:id
                    """), {"id": row["template_id"]})
                    await self._recount_attendees(row["event_id"])
                    return await self._write_payout(
                        row["event_id"], commission_rates, grace_seconds, now
                    )

    async def mark_unpaid(
        self, *, ticket_id: str, status: TicketStatus, now: float
    ) -> bool:
        """
        pending -> failed with `status` (cancelled or expired), and give the
        held unit back to available. False if the ticket was not pending.
        """
        async with timeit("store.mark_unpaid"):
            async with self.gated():
                async with self.db.begin():
                    row = (await self.db.execute(text("""
                        UPDATE tickets
                        SET payment_status=:failed, status=:st
                        WHERE id=:id AND payment_status=:pending
                        RETURNING template_id
                    """), {
                        "id": ticket_id, "st": status.value,
                        "failed": PaymentStatus.FAILED.value,
                        "pending": PaymentStatus.PENDING.value,
                    })).mappings().first()
                    if row is None:
                        return False
                    await self.db.execute(text("""
                        UPDATE ticket_templates
                        SET quantity_held = quantity_held - 1,
                            quantity_available = quantity_available + 1
                        WHERE id=:id
                    """), {"id": row["template_id"]})
        return True

    async def list_stale_pending(
        self, created_before: float, limit: int = 200
    ) -> List[str]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                    SELECT id FROM tickets
                    WHERE payment_status=:pending AND created_at < :cutoff
                    ORDER BY created_at
                    LIMIT :lim
                """), {
                    "pending": PaymentStatus.PENDING.value,
                    "cutoff": created_before, "lim": limit,
                })).all()
        return [r[0] for r in rows]

    async def _recount_attendees(self, event_id: str) -> None:
        # UN-GATED, runs inside the caller's transaction
        await self.db.execute(text("""
            UPDATE events
            SET attendee_count = (
                SELECT COUNT(*) FROM tickets
                WHERE event_id=:ev AND payment_status=:paid
                  AND status IN (:valid, :used)
            )
            WHERE id=:ev
        """), {
            "ev": event_id, "paid": PaymentStatus.PAID.value,
            "valid": TicketStatus.VALID.value,
            "used": TicketStatus.USED.value,
        })

    # ------------------------------------------------------------------
    # Check-in & refunds
    # ------------------------------------------------------------------

    async def mark_used(
        self, *, ticket_id: str, verifier_id: str, now: float
    ) -> bool:
        """valid+paid -> used. Exactly one of two concurrent scans wins."""
        async with timeit("store.mark_used"):
            async with self.gated():
                async with self.db.begin():
                    row = (await self.db.execute(text("""
                        UPDATE tickets
                        SET status=:used, used_at=:now, verified_by=:vid
                        WHERE id=:id AND status=:valid AND payment_status=:paid
                        RETURNING id
                    """), {
                        "id": ticket_id, "now": now, "vid": verifier_id,
                        "used": TicketStatus.USED.value,
                        "valid": TicketStatus.VALID.value,
                        "paid": PaymentStatus.PAID.value,
                    })).first()
        return row is not None

    async def record_verification(
        self, *, ticket_id: Optional[str], event_id: str, verifier_id: str,
        result: str, now: float,
    ) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                    INSERT INTO ticket_verifications(
                        id, ticket_id, event_id, verifier_id, result,
                        created_at)
                    VALUES(:id, :tid, :ev, :vid, :res, :now)
                """), {
                    "id": new_id(), "tid": ticket_id, "ev": event_id,
                    "vid": verifier_id, "res": result, "now": now,
                })

    async def mark_refunded(self, *, ticket_id: str, now: float) -> bool:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                    UPDATE tickets
                    SET status=:refunded, refunded_at=:now
                    WHERE id=:id AND status=:valid AND payment_status=:paid
                    RETURNING event_id
                """), {
                    "id": ticket_id, "now": now,
                    "refunded": TicketStatus.REFUNDED.value,
                    "valid": TicketStatus.VALID.value,
                    "paid": PaymentStatus.PAID.value,
                })).mappings().first()
                if row is None:
                    return False
                await self._recount_attendees(row["event_id"])
        return True

    async def record_refund(
        self, *, ticket: Ticket, refund_amount: int, refund_percent: int,
        status: str, reason: str, refund_reference: Optional[str],
        now: float,
    ) -> Refund:
        """One refund per ticket; a second request raises RefundNotAllowed."""
        try:
            async with self.gated():
                async with self.db.begin():
                    row = (await self.db.execute(text("""
                        INSERT INTO refunds(
                            id, ticket_id, buyer_id, event_id,
                            original_amount, refund_amount, refund_percent,
                            status, reason, refund_reference, created_at,
                            processed_at)
                        VALUES(:id, :tid, :buyer, :ev, :orig, :amt, :pct,
                               :st, :reason, :ref, :now, :processed)
                        RETURNING *
                    """), {
                        "id": new_id(), "tid": ticket.id,
                        "buyer": ticket.buyer_id, "ev": ticket.event_id,
                        "orig": ticket.price_paid, "amt": refund_amount,
                        "pct": refund_percent, "st": status,
                        "reason": reason, "ref": refund_reference,
                        "now": now,
                        "processed": now if refund_reference else None,
                    })).mappings().one()
        except IntegrityError:
            raise RefundNotAllowed("A refund was already requested")
        return Refund.from_row(row)

    async def get_refund_for_ticket(self, ticket_id: str) -> Optional[Refund]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    text("SELECT * FROM refunds WHERE ticket_id=:tid"),
                    {"tid": ticket_id},
                )).mappings().first()
        return Refund.from_row(row) if row else None

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    async def _payout_totals(self, event_id: str) -> Dict[str, int]:
        # UN-GATED, runs inside the caller's transaction
        row = (await self.db.execute(text("""
            SELECT COUNT(*) AS n, COALESCE(SUM(price_paid), 0) AS gross
            FROM tickets
            WHERE event_id=:ev AND payment_status=:paid
              AND status IN (:valid, :used)
        """), {
            "ev": event_id, "paid": PaymentStatus.PAID.value,
            "valid": TicketStatus.VALID.value,
            "used": TicketStatus.USED.value,
        })).mappings().one()
        return {"ticket_count": int(row["n"]), "gross": int(row["gross"])}

    async def _event_currency(self, event_id: str) -> str:
        # UN-GATED, runs inside the caller's transaction
        currency = (await self.db.execute(text("""
            SELECT currency FROM ticket_templates
            WHERE event_id=:ev
            ORDER BY created_at
            LIMIT 1
        """), {"ev": event_id})).scalar_one_or_none()
        return currency or "eur"

    async def _write_payout(
        self, event_id: str, commission_rates: Dict[str, float],
        grace_seconds: float, now: float,
    ) -> Payout:
        # UN-GATED, runs inside the caller's transaction
        ev = (await self.db.execute(
            text("SELECT * FROM events WHERE id=:id"),
            {"id": event_id},
        )).mappings().first()
        if ev is None:
            raise EventNotFound(event_id)
        event = Event.from_row(ev)
        totals = await self._payout_totals(event_id)
        gross = totals["gross"]
        rate = commission_rates.get(
            event.organizer_tier, commission_rates["free"]
        )
        fee = round(gross * rate)
        await self.db.execute(text("""
            INSERT INTO payouts(
                id, organizer_id, event_id, gross_amount,
                platform_fee, amount, ticket_count, currency, status,
                hold_until, created_at, updated_at)
            VALUES(:id, :org, :ev, :gross, :fee, :net, :n, :cur,
                   :pending, :hold, :now, :now)
            ON CONFLICT (event_id) DO UPDATE SET
                gross_amount=EXCLUDED.gross_amount,
                platform_fee=EXCLUDED.platform_fee,
                amount=EXCLUDED.amount,
                ticket_count=EXCLUDED.ticket_count,
                currency=EXCLUDED.currency,
                updated_at=EXCLUDED.updated_at
            WHERE payouts.status=:pending
              AND payouts.claim_token IS NULL
        """), {
            "id": new_id(), "org": event.organizer_id,
            "ev": event_id, "gross": gross, "fee": fee,
            "net": gross - fee, "n": totals["ticket_count"],
            "cur": await self._event_currency(event_id),
            "pending": PayoutStatus.PENDING.value,
            "hold": event.ends_at + grace_seconds, "now": now,
        })
        row = (await self.db.execute(
            text("SELECT * FROM payouts WHERE event_id=:ev"),
            {"ev": event_id},
        )).mappings().one()
        return Payout.from_row(row)

    async def upsert_payout(
        self, *, event_id: str, commission_rates: Dict[str, float],
        grace_seconds: float, now: float,
    ) -> Payout:
        """
        Create the event's held payout, or refresh its amount while it is
        still pending. Amounts are recomputed from paid tickets, never
        incremented, so replays and refunds cannot skew them.
        """
        async with self.gated():
            async with self.db.begin():
                return await self._write_payout(
                    event_id, commission_rates, grace_seconds, now
                )

    async def get_payout_for_event(self, event_id: str) -> Optional[Payout]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(
                    text("SELECT * FROM payouts WHERE event_id=:ev"),
                    {"ev": event_id},
                )).mappings().first()
        return Payout.from_row(row) if row else None

    async def list_due_payouts(
        self, now: float, limit: int = 200, *, claim_lease: float = 900.0,
    ) -> List[Payout]:
        """
        Pending payouts past their hold window that nobody owns: unclaimed,
        or claimed more than `claim_lease` seconds ago by a sweeper that
        never finished.
        """
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                    SELECT * FROM payouts
                    WHERE status=:pending AND hold_until <= :now
                      AND (claim_token IS NULL OR claimed_at < :stale)
                    ORDER BY hold_until
                    LIMIT :lim
                """), {
                    "pending": PayoutStatus.PENDING.value, "now": now,
                    "stale": now - claim_lease, "lim": limit,
                })).mappings().all()
        return [Payout.from_row(r) for r in rows]

    async def payout_signals(self, event_id: str) -> PayoutSignals:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                    SELECT
                        e.disputed AS disputed,
                        (SELECT COUNT(*) FROM tickets t
                         WHERE t.event_id=e.id AND t.payment_status=:paid
                           AND t.status IN (:valid, :used)) AS paid_count,
                        (SELECT COUNT(*) FROM tickets t
                         WHERE t.event_id=e.id AND t.payment_status=:paid
                           AND t.status=:refunded) AS refunded_count
                    FROM events e WHERE e.id=:ev
                """), {
                    "ev": event_id, "paid": PaymentStatus.PAID.value,
                    "valid": TicketStatus.VALID.value,
                    "used": TicketStatus.USED.value,
                    "refunded": TicketStatus.REFUNDED.value,
                })).mappings().first()
        if row is None:
            raise EventNotFound(event_id)
        return PayoutSignals(
            disputed=bool(row["disputed"]),
            paid_count=int(row["paid_count"]),
            refunded_count=int(row["refunded_count"]),
        )

    async def flag_payout_review(self, payout_id: str, reason: str,
                                 now: float) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                    UPDATE payouts SET review_reason=:reason, updated_at=:now
                    WHERE id=:id AND status=:pending
                """), {
                    "id": payout_id, "reason": reason, "now": now,
                    "pending": PayoutStatus.PENDING.value,
                })

    async def claim_payout(
        self, *, payout_id: str, claim_token: str,
        commission_rates: Dict[str, float], now: float,
        stale_token: Optional[str] = None, claim_lease: float = 900.0,
    ) -> Optional[Payout]:
        """
        Take ownership of a due payout and freeze its amount. Returns None if
        another sweeper got there first.

        With `stale_token`, take over that claim instead, provided it is older
        than `claim_lease`. The amount frozen by the dead claim is kept: its
        transfer may already have gone out under the payout id.
        """
        async with self.gated():
            async with self.db.begin():
                params = {
                    "id": payout_id, "tok": claim_token, "now": now,
                    "pending": PayoutStatus.PENDING.value,
                }
                if stale_token is None:
                    owner = "claim_token IS NULL"
                else:
                    owner = "claim_token=:stale AND claimed_at < :lease_start"
                    params.update(stale=stale_token,
                                  lease_start=now - claim_lease)
                row = (await self.db.execute(text(f"""
                    UPDATE payouts
                    SET claim_token=:tok, claimed_at=:now, review_reason=NULL,
                        updated_at=:now
                    WHERE id=:id AND status=:pending AND {owner}
                    RETURNING *
                """), params)).mappings().first()
                if row is None:
                    return None
                if stale_token is not None:
                    return Payout.from_row(row)
                event_id = row["event_id"]
                tier = (await self.db.execute(
                    text("SELECT organizer_tier FROM events WHERE id=:id"),
                    {"id": event_id},
                )).scalar_one()
                totals = await self._payout_totals(event_id)
                gross = totals["gross"]
                fee = round(gross * commission_rates.get(
                    tier, commission_rates["free"]
                ))
                row = (await self.db.execute(text("""
                    UPDATE payouts
                    SET gross_amount=:gross, platform_fee=:fee, amount=:net,
                        ticket_count=:n
                    WHERE id=:id
                    RETURNING *
                """), {
                    "id": payout_id, "gross": gross, "fee": fee,
                    "net": gross - fee, "n": totals["ticket_count"],
                })).mappings().one()
        return Payout.from_row(row)

    async def finish_payout(
        self, *, payout_id: str, claim_token: str, status: PayoutStatus,
        now: float, release_reference: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Optional[Payout]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                    UPDATE payouts
                    SET status=:st, release_reference=:ref,
                        error_message=:err, updated_at=:now,
                        released_at=:released
                    WHERE id=:id AND status=:pending AND claim_token=:tok
                    RETURNING *
                """), {
                    "id": payout_id, "tok": claim_token, "st": status.value,
                    "ref": release_reference, "err": error_message,
                    "now": now,
                    "released": (
                        now if status == PayoutStatus.RELEASED else None
                    ),
                    "pending": PayoutStatus.PENDING.value,
                })).mappings().first()
        return Payout.from_row(row) if row else None

    # ------------------------------------------------------------------
    # Orphans
    # ------------------------------------------------------------------

    async def record_orphan(
        self, *, kind: str, session_ref: Optional[str],
        buyer_id: Optional[str], event_id: Optional[str], reason: str,
        payload: str, now: float,
    ) -> Orphan:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                    INSERT INTO reconciliation_orphans(
                        id, kind, session_ref, buyer_id, event_id, reason,
                        payload, created_at)
                    VALUES(:id, :kind, :csr, :buyer, :ev, :reason, :payload,
                           :now)
                    RETURNING *
                """), {
                    "id": new_id(), "kind": kind, "csr": session_ref,
                    "buyer": buyer_id, "ev": event_id, "reason": reason,
                    "payload": payload, "now": now,
                })).mappings().one()
        return Orphan.from_row(row)

    async def list_orphans(self, limit: int = 100) -> List[Orphan]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(text("""
                    SELECT * FROM reconciliation_orphans
                    ORDER BY created_at DESC LIMIT :lim
                """), {"lim": max(1, min(limit, 500))})).mappings().all()
        return [Orphan.from_row(r) for r in rows]
