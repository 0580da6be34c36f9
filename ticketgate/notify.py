from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx
from loguru import logger


class Notifier(ABC):
    """Hands holder/organizer messages to the external email/in-app service."""

    @abstractmethod
    async def send(self, user_id: str, kind: str, message: str,
                   data: Optional[Dict[str, Any]] = None) -> None: ...


class LogNotifier(Notifier):
    async def send(self, user_id, kind, message, data=None):
        logger.info("notify user={} kind={}: {}", user_id, kind, message)


class HttpNotifier(Notifier):
    """POSTs JSON to NOTIFY_URL.

    The ticket is already durable when this runs, so a failed delivery is
    logged and dropped rather than failing the caller.
    """

    def __init__(self, client: httpx.AsyncClient, url: str) -> None:
        self.client = client
        self.url = url

    async def send(self, user_id, kind, message, data=None):
        body = {
            "user_id": user_id,
            "type": kind,
            "message": message,
            "data": data or {},
        }
        try:
            r = await self.client.post(self.url, json=body)
            r.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(
                "notification delivery failed user={} kind={}: {}",
                user_id, kind, e,
            )
