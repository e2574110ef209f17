"""
Observer bus for token lifecycle events.

The refresh scheduler publishes; metrics, alerting or retry-escalation
consumers subscribe explicitly. A failing subscriber is logged and never
affects the publisher or other subscribers.
"""

import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..constants import TokenEventType
from ..db.db_base import utc_now
from ..utils.logger import get_logger


@dataclass(frozen=True)
class TokenEvent:
    event_type: TokenEventType
    provider: str
    tenant_id: str
    occurred_at: datetime = field(default_factory=utc_now)
    attempt: Optional[int] = None
    error: Optional[str] = None
    terminal: bool = False
    will_retry: bool = False
    expires_at: Optional[datetime] = None
    details: Dict[str, Any] = field(default_factory=dict)


TokenEventHandler = Callable[[TokenEvent], None]


class RefreshEventBus:
    """Synchronous publish/subscribe by event type."""

    def __init__(self):
        self._handlers: Dict[TokenEventType, List[TokenEventHandler]] = defaultdict(list)
        self._lock = threading.Lock()
        self.logger = get_logger()

    def subscribe(self, event_type: TokenEventType, handler: TokenEventHandler) -> None:
        with self._lock:
            if handler not in self._handlers[event_type]:
                self._handlers[event_type].append(handler)

    def subscribe_all(self, handler: TokenEventHandler) -> None:
        for event_type in TokenEventType:
            self.subscribe(event_type, handler)

    def unsubscribe(self, event_type: TokenEventType, handler: TokenEventHandler) -> None:
        with self._lock:
            if handler in self._handlers[event_type]:
                self._handlers[event_type].remove(handler)

    def publish(self, event: TokenEvent) -> int:
        """
        Deliver ``event`` to its subscribers.

        Returns:
            Number of handlers that ran without raising
        """
        with self._lock:
            handlers = list(self._handlers[event.event_type])

        delivered = 0
        for handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception as e:
                self.logger.error(
                    "Token event handler failed",
                    extra={
                        "event_type": event.event_type.value,
                        "provider": event.provider,
                        "tenant_id": event.tenant_id,
                        "handler": getattr(handler, "__qualname__", repr(handler)),
                        "error": str(e),
                    },
                    exc_info=True,
                )
        return delivered
