import asyncio

import pytest

from ticketgate.errors import (
    InvalidRequest, InventoryExhausted, PendingReservationExists, SaleClosed,
    TemplateNotFound, TicketNotFound,
)
from ticketgate.model.records import PaymentStatus, TicketStatus
from ticketgate.services.reservation import ReservationService

from conftest import RESERVATION_TTL


def assert_counters_add_up(tpl):
    assert tpl.quantity_available >= 0
    assert (tpl.quantity_available + tpl.quantity_held + tpl.quantity_sold
            == tpl.quantity_total)


async def test_reserve_holds_one_unit(store, seed, reserve):
    ev, tpl = await seed(quantity=3, price=4200)
    ticket = await reserve(tpl)

    assert ticket.payment_status == PaymentStatus.PENDING
    assert ticket.status == TicketStatus.VALID
    assert ticket.code is None
    assert ticket.event_id == ev.id
    assert ticket.price_paid == 4200
    assert "-" not in ticket.id

    tpl = await store.get_template(tpl.id)
    assert (tpl.quantity_available, tpl.quantity_held, tpl.quantity_sold) \
        == (2, 1, 0)
    assert_counters_add_up(tpl)


async def test_sold_out(seed, reserve):
    _, tpl = await seed(quantity=1)
    await reserve(tpl, buyer_id="b1")
    with pytest.raises(InventoryExhausted):
        await reserve(tpl, buyer_id="b2")


async def test_last_unit_race_has_one_winner(new_store, seed, clock):
    _, tpl = await seed(quantity=1)
    svcs = [
        ReservationService(new_store(), ttl_seconds=RESERVATION_TTL,
                           clock=clock)
        for _ in range(2)
    ]
    results = await asyncio.gather(*(
        svc.reserve(tpl.id, f"buyer-{i}", "Holder", "h@example.com",
                    f"cs_race_{i}")
        for i, svc in enumerate(svcs)
    ), return_exceptions=True)

    won = [r for r in results if not isinstance(r, Exception)]
    lost = [r for r in results if isinstance(r, Exception)]
    assert len(won) == 1
    assert len(lost) == 1 and isinstance(lost[0], InventoryExhausted)

    tpl = await new_store().get_template(tpl.id)
    assert tpl.quantity_available == 0
    assert tpl.quantity_held == 1
    assert_counters_add_up(tpl)


async def test_one_pending_reservation_per_buyer_and_event(
    store, seed, reserve
):
    _, tpl = await seed(quantity=5)
    await reserve(tpl, buyer_id="b1", session_ref="cs_1")
    with pytest.raises(PendingReservationExists):
        await reserve(tpl, buyer_id="b1", session_ref="cs_2")

    # the failed attempt did not take a unit
    tpl = await store.get_template(tpl.id)
    assert tpl.quantity_available == 4
    assert_counters_add_up(tpl)


async def test_other_buyer_is_not_blocked(seed, reserve):
    _, tpl = await seed(quantity=5)
    await reserve(tpl, buyer_id="b1")
    assert (await reserve(tpl, buyer_id="b2")).buyer_id == "b2"


async def test_unknown_template(reserve):
    class Missing:
        id = "nope"
    with pytest.raises(TemplateNotFound):
        await reserve(Missing())


@pytest.mark.parametrize("name,email", [
    ("", "ada@example.com"),
    ("Ada", "not-an-email"),
    ("Ada", ""),
])
async def test_holder_data_validated(reservations, seed, name, email):
    _, tpl = await seed()
    with pytest.raises(InvalidRequest):
        await reservations.reserve(tpl.id, "b1", name, email, "cs_1")


async def test_sale_window(seed, reserve, clock):
    _, tpl = await seed(sale_start=clock() + 3600, sale_end=clock() + 7200)
    with pytest.raises(SaleClosed):
        await reserve(tpl)
    clock.advance(3600 + 1)
    await reserve(tpl, buyer_id="b1")
    clock.advance(3600)
    with pytest.raises(SaleClosed):
        await reserve(tpl, buyer_id="b2")


async def test_cancel_restocks(store, seed, reserve, reservations):
    _, tpl = await seed(quantity=2)
    ticket = await reserve(tpl)

    cancelled = await reservations.cancel(ticket.id, ticket.buyer_id)
    assert cancelled.payment_status == PaymentStatus.FAILED
    assert cancelled.status == TicketStatus.CANCELLED

    tpl = await store.get_template(tpl.id)
    assert (tpl.quantity_available, tpl.quantity_held) == (2, 0)


async def test_cancel_someone_elses_ticket(seed, reserve, reservations):
    _, tpl = await seed()
    ticket = await reserve(tpl, buyer_id="b1")
    with pytest.raises(TicketNotFound):
        await reservations.cancel(ticket.id, "b2")


async def test_expiry_restores_stock(store, seed, reserve, reservations,
                                     clock):
    _, tpl = await seed(quantity=1)
    ticket = await reserve(tpl)

    # not stale yet
    clock.advance(RESERVATION_TTL - 1)
    assert await reservations.expire_stale() == []

    clock.advance(2)
    assert await reservations.expire_stale() == [ticket.id]
    # re-running is a no-op
    assert await reservations.expire_stale() == []

    expired = await store.get_ticket(ticket.id)
    assert expired.payment_status == PaymentStatus.FAILED
    assert expired.status == TicketStatus.EXPIRED
    assert expired.code is None

    tpl = await store.get_template(tpl.id)
    assert (tpl.quantity_available, tpl.quantity_held, tpl.quantity_sold) \
        == (1, 0, 0)


async def test_buyer_can_reserve_again_after_expiry(seed, reserve,
                                                    reservations, clock):
    _, tpl = await seed(quantity=1)
    await reserve(tpl, buyer_id="b1", session_ref="cs_1")
    clock.advance(RESERVATION_TTL + 1)
    await reservations.expire_stale()

    again = await reserve(tpl, buyer_id="b1", session_ref="cs_2")
    assert again.payment_status == PaymentStatus.PENDING
