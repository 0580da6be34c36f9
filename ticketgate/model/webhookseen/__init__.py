# model/webhookseen/__init__.py
from typing import Optional, Protocol, runtime_checkable
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from ... import config
from ...infra.sql import Gated

BACKEND = config.WEBHOOK_SEEN_BACKEND  # 'sql' | 'redis'


@runtime_checkable
class SeenLog(Protocol):
    async def seen(self, key: str) -> bool: ...

    async def mark_seen(self, key: str) -> None: ...


if BACKEND == "redis":
    from ._redis import WebhookSeenStore as _WebhookSeenStore
else:
    from ._sql import WebhookSeenStore as _WebhookSeenStore


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, db: Optional[AsyncSession] = None,
              r: Optional[redis.Redis] = None,
              gated: Optional[Gated] = None,
              ttl_seconds: int = config.WEBHOOK_SEEN_TTL_SECONDS) -> SeenLog:
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError(
                "WebhookSeenStore(redis) requires r=redis.Redis"
            )
        return _WebhookSeenStore(r=r, ttl_seconds=ttl_seconds)
    if db is None or gated is None:
        raise RuntimeError(
            "WebhookSeenStore(sql) requires db=AsyncSession and gated=Gated"
        )
    return _WebhookSeenStore(db=db, gated=gated)


WebhookSeenStore = _WebhookSeenStore
__all__ = ["SeenLog", "WebhookSeenStore", "new_store", "BACKEND"]
