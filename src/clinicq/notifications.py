"""
Notification sink port and a logging implementation.
"""

from __future__ import annotations

import inspect
import logging
from collections import deque
from typing import Awaitable, Deque, Optional, Protocol, Tuple, Union

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    def notify(self, patient_id: str, message: str) -> Union[None, Awaitable[None]]: ...


class LoggingNotificationSink:
    def __init__(self, history_size: int = 200) -> None:
        self.sent: Deque[Tuple[str, str]] = deque(maxlen=history_size)

    def notify(self, patient_id: str, message: str) -> None:
        self.sent.append((patient_id, message))
        logger.info("Notify %s: %s", patient_id, message)


async def notify_safely(sink: NotificationSink, patient_id: Optional[str], message: str) -> bool:
    """Fire-and-forget delivery; failures are logged, never raised."""
    if not patient_id:
        return False
    try:
        result = sink.notify(patient_id, message)
        if inspect.isawaitable(result):
            await result
        return True
    except Exception as exc:
        logger.warning("Notification to %s failed: %s", patient_id, exc)
        return False
