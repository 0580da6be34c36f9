import asyncio

import pytest

from ticketgate import sweeper
from ticketgate.model.records import PaymentStatus, PayoutStatus
from ticketgate.payments import MockTransfers

from conftest import DAY


async def test_expire_reservations_once(database, store, seed, reserve):
    SessionAsync, gated = database
    _, tpl = await seed(quantity=1)
    ticket = await reserve(tpl)

    # real clock: a reservation created far in the "future" is not stale
    assert await sweeper.expire_reservations(SessionAsync, gated) == []
    assert (await store.get_ticket(ticket.id)).payment_status \
        == PaymentStatus.PENDING


async def test_release_payouts_once(database, store, seed, reserve, deliver,
                                    clock):
    SessionAsync, gated = database
    # event already over in real time, so the payout is due now
    clock.t = 1_000_000_000.0
    ev, tpl = await seed(starts_in=-10 * DAY)
    await deliver("succeeded", await reserve(tpl))

    [released] = await sweeper.release_payouts(
        SessionAsync, gated, MockTransfers()
    )
    assert released.event_id == ev.id
    assert released.status == PayoutStatus.RELEASED


async def test_every_keeps_going_after_errors(log_records):
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")

    task = asyncio.create_task(sweeper.every(0, "flaky", flaky))
    while len(calls) < 3:
        await asyncio.sleep(0)
    await sweeper.stop_sweeps([task])

    assert task.cancelled()
    assert any(r["level"].name == "ERROR" and "flaky" in r["message"]
               for r in log_records)


async def test_start_and_stop_sweeps(database):
    SessionAsync, gated = database
    tasks = sweeper.start_sweeps(SessionAsync, gated, MockTransfers(),
                                 interval=3600)
    assert len(tasks) == 2
    await sweeper.stop_sweeps(tasks)
    assert all(t.done() for t in tasks)


def test_cli_needs_something_to_do():
    with pytest.raises(SystemExit):
        sweeper.main([])
