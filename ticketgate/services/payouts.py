"""Payout release sweep."""

from typing import Callable, List, Mapping, Optional

from loguru import logger

from .. import config
from ..helpers import cents_to_str, new_id, now_ts
from ..model.records import Payout, PayoutSignals, PayoutStatus
from ..model.store import TicketStore
from ..payments import TransferAdapter


class PayoutScheduler:
    """Releases held payouts whose hold window has passed.

    A payout is held back (left pending, with a review reason) while its event
    is disputed or too many of its tickets were refunded. Held-back payouts are
    looked at again on every sweep, so clearing the signal releases them.
    """

    def __init__(
        self,
        store: TicketStore,
        transfers: TransferAdapter,
        *,
        commission_rates: Mapping[str, float] = config.COMMISSION_RATES,
        max_refund_rate: float = config.PAYOUT_MAX_REFUND_RATE,
        claim_lease_seconds: float = config.PAYOUT_CLAIM_LEASE_SECONDS,
        clock: Callable[[], float] = now_ts,
    ) -> None:
        self._store = store
        self._transfers = transfers
        self._commission_rates = dict(commission_rates)
        self._max_refund_rate = max_refund_rate
        self._claim_lease = claim_lease_seconds
        self._clock = clock

    def disqualification(self, signals: PayoutSignals) -> Optional[str]:
        if signals.disputed:
            return "event disputed"
        if signals.refund_rate > self._max_refund_rate:
            return (
                f"refund rate {signals.refund_rate:.2f} above "
                f"{self._max_refund_rate:.2f}"
            )
        return None

    async def sweep(self, limit: int = config.SWEEP_BATCH_SIZE) -> List[Payout]:
        """Release every due, qualifying payout. Returns the released ones."""
        released = []
        due = await self._store.list_due_payouts(
            self._clock(), limit, claim_lease=self._claim_lease
        )
        for payout in due:
            done = await self._release_one(payout)
            if done is not None and done.status == PayoutStatus.RELEASED:
                released.append(done)
        if released:
            logger.info("released {} payouts", len(released))
        return released

    async def _release_one(self, payout: Payout) -> Optional[Payout]:
        signals = await self._store.payout_signals(payout.event_id)
        reason = self.disqualification(signals)
        if reason is not None:
            if payout.review_reason != reason:
                logger.warning(
                    "payout={} event={} held for review: {}",
                    payout.id, payout.event_id, reason,
                )
            await self._store.flag_payout_review(payout.id, reason,
                                                 self._clock())
            return None

        if payout.claim_token is not None:
            logger.warning(
                "payout={} claim {} from {} expired, taking it over",
                payout.id, payout.claim_token, payout.claimed_at,
            )
        token = new_id()
        claimed = await self._store.claim_payout(
            payout_id=payout.id, claim_token=token,
            commission_rates=self._commission_rates, now=self._clock(),
            stale_token=payout.claim_token, claim_lease=self._claim_lease,
        )
        if claimed is None:
            logger.debug("payout={} claimed by another sweeper", payout.id)
            return None

        try:
            # payout id as idempotency key: a retried transfer is a no-op
            ref = await self._transfers.transfer(
                claimed.organizer_id, claimed.amount, claimed.currency,
                idempotency_key=claimed.id,
            )
        except Exception as e:
            logger.error(
                "payout={} transfer of {} to organizer={} failed: {}",
                claimed.id, cents_to_str(claimed.amount),
                claimed.organizer_id, e,
            )
            return await self._store.finish_payout(
                payout_id=claimed.id, claim_token=token,
                status=PayoutStatus.FAILED, now=self._clock(),
                error_message=str(e),
            )

        logger.info(
            "payout={} released {} to organizer={} ref={}",
            claimed.id, cents_to_str(claimed.amount), claimed.organizer_id,
            ref,
        )
        return await self._store.finish_payout(
            payout_id=claimed.id, claim_token=token,
            status=PayoutStatus.RELEASED, now=self._clock(),
            release_reference=ref,
        )
