"""
Notification sink for payment and bridge lifecycle events.

Fire-and-forget: notify() schedules delivery and returns immediately.
Delivery failures are logged and never reach the caller of the payment
operation that produced the event.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set

import aiohttp

from config import Config
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class NotificationService:
    """Posts lifecycle events to a webhook in background tasks"""

    def __init__(self, webhook_url: Optional[str] = None, timeout_seconds: float = 5.0):
        self.webhook_url = webhook_url if webhook_url is not None else Config.NOTIFICATION_WEBHOOK_URL
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._pending: Set[asyncio.Task] = set()
        self.delivered = 0
        self.failed = 0

    def notify(self, event_type: str, payload: Dict[str, Any]) -> None:
        event = {
            "event": event_type,
            "payload": payload,
            "timestamp": get_naive_utc_now().isoformat(),
        }
        try:
            task = asyncio.get_running_loop().create_task(self._deliver(event))
        except RuntimeError:
            logger.debug(f"No running loop, notification {event_type} not delivered")
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, event: Dict[str, Any]) -> None:
        try:
            if not self.webhook_url:
                logger.info(f"Notification {event['event']}: {json.dumps(event['payload'], default=str)}")
            else:
                async with aiohttp.ClientSession(timeout=self.timeout) as session:
                    body = json.dumps(event, default=str)
                    async with session.post(
                        self.webhook_url, data=body, headers={"Content-Type": "application/json"}
                    ) as response:
                        if response.status >= 400:
                            raise RuntimeError(f"webhook returned {response.status}")
            self.delivered += 1
        except Exception as e:
            self.failed += 1
            logger.error(f"Failed to deliver notification {event['event']}: {e}")

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def get_stats(self) -> Dict[str, int]:
        return {"delivered": self.delivered, "failed": self.failed, "pending": len(self._pending)}
