"""
In-process event bus.

Services emit named events ("order.created", "order.paid",
"order.status.updated"); listeners registered with `on` run synchronously in
registration order. A failing listener is logged and skipped so the emitter
is never affected.
"""

from collections import defaultdict
from typing import Any, Callable, Dict, List

import structlog

logger = structlog.get_logger(__name__)

Handler = Callable[[Dict[str, Any]], Any]


class EventBus:
    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def on(self, event: str, handler: Handler = None):
        if handler is not None:
            self._handlers[event].append(handler)
            return handler

        def decorator(fn: Handler) -> Handler:
            self._handlers[event].append(fn)
            return fn

        return decorator

    def handlers(self, event: str) -> List[Handler]:
        return list(self._handlers.get(event, []))

    def emit(self, event: str, payload: Dict[str, Any]) -> int:
        """Dispatch to every listener; returns how many completed."""
        done = 0
        for handler in self.handlers(event):
            try:
                handler(payload)
                done += 1
            except Exception as e:
                logger.error("event_handler_failed", event=event, handler=getattr(handler, "__name__", repr(handler)), error=str(e))
        return done
