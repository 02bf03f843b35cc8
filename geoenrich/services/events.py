"""In-process event bus between a run and its host (HTTP layer, CLI, tests).

Events: ``progress(current, total)``, ``limit_reached(provider, used, limit)``,
``result(result)``, ``completed(stats)``, ``stopped(stats)``.
"""

from collections import defaultdict, deque
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import structlog

logger = structlog.get_logger()

PROGRESS = "progress"
LIMIT_REACHED = "limit_reached"
RESULT = "result"
COMPLETED = "completed"
STOPPED = "stopped"

Handler = Callable[..., None]


class EventBus:
    def __init__(self, history_size: int = 200):
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self.history: deque[dict[str, Any]] = deque(maxlen=history_size)

    def subscribe(self, event: str, handler: Handler) -> None:
        self._handlers[event].append(handler)

    def unsubscribe(self, event: str, handler: Handler) -> None:
        if handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    def emit(self, event: str, **payload: Any) -> None:
        # Per-result events are too chatty to keep
        if event != RESULT:
            self.history.append({
                "event": event,
                "at": datetime.now(timezone.utc).isoformat(),
                **{k: v for k, v in payload.items() if isinstance(v, (str, int, float, bool, dict, type(None)))},
            })
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(**payload)
            except Exception as e:
                logger.error("Event handler failed", event_name=event, error=str(e))
