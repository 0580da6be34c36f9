from __future__ import annotations
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ...helpers import now_ts
from ...infra.sql import Gated


class WebhookSeenStore:
    """Processed delivery ids, kept in the ticket database."""

    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def seen(self, key: str) -> bool:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT 1 FROM webhook_events_seen WHERE idempotency_key=:k
                """), {"k": key})).first()
        return row is not None

    async def mark_seen(self, key: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                  INSERT INTO webhook_events_seen(idempotency_key, created_at)
                  VALUES(:k, :now)
                  ON CONFLICT (idempotency_key) DO NOTHING
                """), {"k": key, "now": now_ts()})
