import asyncio

import pytest

from ticketgate.model.records import PayoutStatus, TicketStatus
from ticketgate.payments import MockTransfers, TransferAdapter
from ticketgate.services.payouts import PayoutScheduler

from conftest import DAY


class RecordingTransfers(MockTransfers):
    def __init__(self):
        super().__init__()
        self.calls = []

    async def transfer(self, organizer_id, amount, currency,
                       idempotency_key):
        self.calls.append((organizer_id, amount, currency, idempotency_key))
        return await super().transfer(organizer_id, amount, currency,
                                      idempotency_key)


class BrokenTransfers(TransferAdapter):
    async def transfer(self, organizer_id, amount, currency,
                       idempotency_key):
        raise ConnectionError("processor unreachable")


@pytest.fixture
def transfers():
    return RecordingTransfers()


@pytest.fixture
def scheduler(store, transfers, clock):
    return PayoutScheduler(store, transfers, max_refund_rate=0.2,
                           clock=clock)


@pytest.fixture
def sold_event(seed, reserve, deliver):
    """An event with `n` paid tickets."""
    async def _sold(n=1, **seed_kw):
        ev, tpl = await seed(**seed_kw)
        tickets = []
        for i in range(n):
            t = await reserve(tpl, buyer_id=f"buyer-{i}")
            await deliver("succeeded", t)
            tickets.append(t)
        return ev, tickets
    return _sold


async def test_payout_held_until_grace_after_event(store, scheduler,
                                                   transfers, sold_event,
                                                   clock):
    ev, _ = await sold_event(n=2, price=5000, starts_in=DAY,
                             duration=3600)
    hold_until = ev.ends_at + 2 * DAY

    # event over, grace not yet
    clock.t = hold_until - 1
    assert await scheduler.sweep() == []
    assert transfers.calls == []

    clock.t = hold_until
    [released] = await scheduler.sweep()
    assert released.status == PayoutStatus.RELEASED
    assert released.gross_amount == 10000
    assert released.platform_fee == 500
    assert released.amount == 9500
    assert released.release_reference.startswith("tr_")
    assert released.released_at == clock()
    assert transfers.calls == [(ev.organizer_id, 9500, "eur", released.id)]

    # released payouts are never picked again
    clock.advance(DAY)
    assert await scheduler.sweep() == []
    assert len(transfers.calls) == 1


@pytest.mark.parametrize("tier,fee", [
    ("free", 500), ("pro", 300), ("premium", 250), ("enterprise", 150),
])
async def test_commission_by_organizer_tier(scheduler, sold_event, clock,
                                            tier, fee):
    ev, _ = await sold_event(n=1, price=10000, tier=tier)
    clock.t = ev.ends_at + 2 * DAY
    [released] = await scheduler.sweep()
    assert released.platform_fee == fee
    assert released.amount == 10000 - fee


async def test_disputed_event_is_held_back(store, scheduler, transfers,
                                           sold_event, clock, log_records):
    ev, _ = await sold_event(n=1)
    await store.set_event_disputed(ev.id, True)
    clock.t = ev.ends_at + 2 * DAY

    assert await scheduler.sweep() == []
    payout = await store.get_payout_for_event(ev.id)
    assert payout.status == PayoutStatus.PENDING
    assert payout.review_reason == "event disputed"
    assert transfers.calls == []
    assert any(r["level"].name == "WARNING" and "review" in r["message"]
               for r in log_records)

    # dispute resolved: released on the next sweep
    await store.set_event_disputed(ev.id, False)
    [released] = await scheduler.sweep()
    assert released.review_reason is None


async def test_high_refund_rate_is_held_back(store, scheduler, sold_event,
                                             clock):
    ev, tickets = await sold_event(n=4, price=1000)
    # 1 of 4 refunded: 25% > 20%
    assert await store.mark_refunded(ticket_id=tickets[0].id, now=clock())
    clock.t = ev.ends_at + 2 * DAY

    assert await scheduler.sweep() == []
    payout = await store.get_payout_for_event(ev.id)
    assert payout.status == PayoutStatus.PENDING
    assert payout.review_reason.startswith("refund rate")


async def test_refunded_tickets_are_not_paid_out(store, transfers, sold_event,
                                                 clock):
    ev, tickets = await sold_event(n=5, price=1000)
    assert await store.mark_refunded(ticket_id=tickets[0].id, now=clock())
    clock.t = ev.ends_at + 2 * DAY

    # 1 of 5 refunded is exactly the threshold, not above it
    sched = PayoutScheduler(store, transfers, max_refund_rate=0.2,
                            clock=clock)
    [released] = await sched.sweep()
    assert released.gross_amount == 4000
    assert released.ticket_count == 4
    assert released.amount == 4000 - 200


async def test_used_tickets_count_towards_payout(store, scheduler,
                                                 sold_event, clock):
    ev, tickets = await sold_event(n=2, price=1000)
    assert await store.mark_used(ticket_id=tickets[0].id,
                                 verifier_id=ev.organizer_id, now=clock())
    assert (await store.get_ticket(tickets[0].id)).status \
        == TicketStatus.USED
    clock.t = ev.ends_at + 2 * DAY
    [released] = await scheduler.sweep()
    assert released.gross_amount == 2000


async def test_transfer_error_marks_payout_failed(store, sold_event, clock,
                                                  log_records):
    ev, _ = await sold_event(n=1)
    clock.t = ev.ends_at + 2 * DAY
    sched = PayoutScheduler(store, BrokenTransfers(), clock=clock)

    assert await sched.sweep() == []
    payout = await store.get_payout_for_event(ev.id)
    assert payout.status == PayoutStatus.FAILED
    assert "unreachable" in payout.error_message
    assert any(r["level"].name == "ERROR" for r in log_records)


async def test_concurrent_sweeps_transfer_once(new_store, transfers,
                                               sold_event, clock):
    ev, _ = await sold_event(n=1)
    clock.t = ev.ends_at + 2 * DAY
    sweepers = [
        PayoutScheduler(new_store(), transfers, clock=clock)
        for _ in range(2)
    ]
    results = await asyncio.gather(*(s.sweep() for s in sweepers))
    assert sum(len(r) for r in results) == 1
    assert len(transfers.calls) == 1


async def test_dead_claim_is_taken_over_after_lease(store, transfers,
                                                    sold_event, clock,
                                                    log_records):
    ev, _ = await sold_event(n=2, price=1000)
    clock.t = ev.ends_at + 2 * DAY
    sched = PayoutScheduler(store, transfers, claim_lease_seconds=600,
                            clock=clock)

    # a sweeper claims the payout and dies before finishing
    payout = await store.get_payout_for_event(ev.id)
    dead = await store.claim_payout(
        payout_id=payout.id, claim_token="dead",
        commission_rates={"free": 0.05}, now=clock(),
    )
    assert dead.claimed_at == clock()

    # still within the lease: nobody touches it
    clock.advance(599)
    assert await sched.sweep() == []
    assert transfers.calls == []

    clock.advance(2)
    [released] = await sched.sweep()
    assert released.status == PayoutStatus.RELEASED
    assert released.amount == dead.amount
    assert transfers.calls == [
        (ev.organizer_id, dead.amount, "eur", payout.id)
    ]
    assert any(r["level"].name == "WARNING" and "dead" in r["message"]
               for r in log_records)

    # the dead sweeper coming back cannot finish it a second time
    assert await store.finish_payout(
        payout_id=payout.id, claim_token="dead",
        status=PayoutStatus.FAILED, now=clock(),
    ) is None
    assert (await store.get_payout_for_event(ev.id)).status \
        == PayoutStatus.RELEASED


async def test_live_claim_is_not_taken_over(store, sold_event, clock):
    ev, _ = await sold_event(n=1)
    clock.t = ev.ends_at + 2 * DAY
    payout = await store.get_payout_for_event(ev.id)
    assert await store.claim_payout(
        payout_id=payout.id, claim_token="alive",
        commission_rates={"free": 0.05}, now=clock(),
    )
    assert await store.claim_payout(
        payout_id=payout.id, claim_token="other",
        commission_rates={"free": 0.05}, now=clock() + 10,
        stale_token="alive", claim_lease=600,
    ) is None


async def test_payout_uses_event_currency(store, scheduler, transfers,
                                          sold_event, clock):
    ev, _ = await sold_event(n=1, price=2000, currency="usd")
    assert (await store.get_payout_for_event(ev.id)).currency == "usd"

    clock.t = ev.ends_at + 2 * DAY
    [released] = await scheduler.sweep()
    assert released.currency == "usd"
    assert transfers.calls == [(ev.organizer_id, 1900, "usd", released.id)]


async def test_event_sells_in_one_currency(store, seed, clock):
    from ticketgate.errors import InvalidRequest

    ev, _ = await seed(currency="usd")
    with pytest.raises(InvalidRequest):
        await store.create_template(
            event_id=ev.id, name="VIP", type="vip", price=9000,
            quantity=5, currency="eur", now=clock(),
        )
    vip = await store.create_template(
        event_id=ev.id, name="VIP", type="vip", price=9000,
        quantity=5, currency="usd", now=clock(),
    )
    assert vip.currency == "usd"
