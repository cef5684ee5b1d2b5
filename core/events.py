"""
Structured events emitted by the core for the UI layer.

The core never renders anything; the popup, options page or tray app
subscribes here and decides what to show.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CoreEvent:
    name: str
    user_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventCallback = Callable[[CoreEvent], None]


class EventBus:
    """Synchronous fan-out to subscribers. A failing subscriber never breaks the core."""

    def __init__(self) -> None:
        self._subscribers: List[tuple] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: EventCallback, names: Optional[List[str]] = None) -> Callable[[], None]:
        """
        Register a callback, optionally for a subset of event names.

        Returns:
            A function that removes the subscription.
        """
        entry = (callback, frozenset(names) if names else None)
        with self._lock:
            self._subscribers.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return unsubscribe

    def emit(
        self,
        name: str,
        user_id: str,
        occurred_at: Optional[datetime] = None,
        **payload: Any,
    ) -> CoreEvent:
        event = CoreEvent(
            name=name,
            user_id=user_id,
            payload=payload,
            occurred_at=occurred_at or datetime.now(timezone.utc),
        )
        with self._lock:
            subscribers = list(self._subscribers)
        for callback, names in subscribers:
            if names is not None and name not in names:
                continue
            try:
                callback(event)
            except Exception as e:
                logger.debug(f"Event subscriber error on {name}: {e}")
        return event
