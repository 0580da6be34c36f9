"""
Background sweeps: reservation expiry and payout release.

Started by the server on startup, or run once from the command line:

    python -m ticketgate.sweeper --expire --payouts
"""

from __future__ import annotations
import argparse
import asyncio
from typing import Awaitable, Callable, List

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import config
from .infra.log import setup_logging
from .infra.sql import Gated, make_async_engine
from .infra.timings import timeit
from .model.records import Payout
from .model.schema import create_schema
from .model.store import TicketStore
from .payments import MockTransfers, TransferAdapter
from .services.payouts import PayoutScheduler
from .services.reservation import ReservationService


async def expire_reservations(
    SessionAsync: async_sessionmaker[AsyncSession],
    gated: Gated,
    *,
    limit: int = config.SWEEP_BATCH_SIZE,
) -> List[str]:
    async with SessionAsync() as session:
        svc = ReservationService(TicketStore(db=session, gated=gated))
        async with timeit("sweep.expire"):
            return await svc.expire_stale(limit)


async def release_payouts(
    SessionAsync: async_sessionmaker[AsyncSession],
    gated: Gated,
    transfers: TransferAdapter,
    *,
    limit: int = config.SWEEP_BATCH_SIZE,
) -> List[Payout]:
    async with SessionAsync() as session:
        svc = PayoutScheduler(TicketStore(db=session, gated=gated), transfers)
        async with timeit("sweep.payouts"):
            return await svc.sweep(limit)


async def every(
    interval: float, name: str, fn: Callable[[], Awaitable[object]]
) -> None:
    """Run `fn` forever, `interval` seconds apart. Errors are logged, the
    loop carries on; cancel the task to stop it."""
    logger.info("sweep {} every {}s", name, interval)
    while True:
        try:
            await fn()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("sweep {} failed", name)
        await asyncio.sleep(interval)


def start_sweeps(
    SessionAsync: async_sessionmaker[AsyncSession],
    gated: Gated,
    transfers: TransferAdapter,
    interval: float = config.SWEEP_INTERVAL_SECONDS,
) -> List[asyncio.Task]:
    return [
        asyncio.create_task(every(
            interval, "reservations",
            lambda: expire_reservations(SessionAsync, gated),
        )),
        asyncio.create_task(every(
            interval, "payouts",
            lambda: release_payouts(SessionAsync, gated, transfers),
        )),
    ]


async def stop_sweeps(tasks: List[asyncio.Task]) -> None:
    for t in tasks:
        t.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


# ----------------------------
# CLI
# ----------------------------
async def _run_once(args: argparse.Namespace) -> None:
    engine, SessionAsync, gated = make_async_engine(args.database_url)
    try:
        async with engine.begin() as conn:
            await create_schema(conn)
        if args.expire:
            expired = await expire_reservations(
                SessionAsync, gated, limit=args.limit
            )
            logger.info("expired {} reservations", len(expired))
        if args.payouts:
            released = await release_payouts(
                SessionAsync, gated, MockTransfers(), limit=args.limit
            )
            logger.info("released {} payouts", len(released))
    finally:
        await engine.dispose()


def main(argv: List[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="python -m ticketgate.sweeper",
        description="Run the background sweeps once.",
    )
    parser.add_argument("--expire", action="store_true",
                        help="release reservations older than the TTL")
    parser.add_argument("--payouts", action="store_true",
                        help="release due payouts")
    parser.add_argument("--limit", type=int, default=config.SWEEP_BATCH_SIZE)
    parser.add_argument("--database-url", default=config.DATABASE_URL)
    args = parser.parse_args(argv)
    if not (args.expire or args.payouts):
        parser.error("nothing to do: pass --expire and/or --payouts")

    setup_logging()
    asyncio.run(_run_once(args))


if __name__ == "__main__":
    main()
