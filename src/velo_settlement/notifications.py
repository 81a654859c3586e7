"""Fire-and-forget user notifications for settlement events."""
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    SEND_MONEY = "send_money"
    RECEIVE_MONEY = "receive_money"
    DEPOSIT = "deposit"
    SPLIT_PAYMENT_CREATED = "split_payment_created"
    SPLIT_PAYMENT_EXECUTED = "split_payment_executed"


class Notifier(Protocol):
    """Delivery port (push, email, in-app feed)."""

    async def notify(
        self,
        user_id: str,
        event: NotificationType,
        payload: Dict[str, Any],
    ) -> None: ...


class LoggingNotifier:
    """Default notifier: writes events to the log."""

    async def notify(
        self,
        user_id: str,
        event: NotificationType,
        payload: Dict[str, Any],
    ) -> None:
        logger.info(f"Notification {event.value} for user {user_id}", extra={"payload": payload})


class NotificationEmitter:
    """Schedules notifier calls as tracked background tasks.

    Callers never await delivery; failures are logged and dropped.
    """

    def __init__(self, notifier: Optional[Notifier] = None):
        self._notifier = notifier or LoggingNotifier()
        self._background_tasks: set[asyncio.Task[Any]] = set()

    def emit(
        self,
        user_id: str,
        event: NotificationType,
        payload: Dict[str, Any],
    ) -> None:
        task = asyncio.create_task(self._notifier.notify(user_id, event, payload))
        self._background_tasks.add(task)
        task.add_done_callback(self._on_background_task_done)

    def _on_background_task_done(self, task: asyncio.Task[Any]) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Notification delivery failed: {exc}", exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._background_tasks)

    async def drain(self) -> None:
        """Wait for in-flight notifications (shutdown and tests)."""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
