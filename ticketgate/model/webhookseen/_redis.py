from __future__ import annotations
import redis.asyncio as redis


# ---- keys
def k_seen(key: str) -> str: return f"whseen:{key}"


class WebhookSeenStore:
    """Processed delivery ids with a TTL; the processor stops re-delivering
    long before the key expires."""

    def __init__(self, *, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def seen(self, key: str) -> bool:
        return bool(await self.r.exists(k_seen(key)))

    async def mark_seen(self, key: str) -> None:
        await self.r.set(k_seen(key), "1", ex=self.ttl)
