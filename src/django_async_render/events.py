from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from django_async_render.types import EventName

EVENT_NAMES = ("progress", "complete")


@dataclass(frozen=True)
class RenderEvent:
    """
    Payload passed to the handlers of render cycle events.

    - `type` - Either `"progress"` or `"complete"`
    - `target` - The view instance that the cycle renders. May be `None` if it
      was garbage collected in the meantime.
    - `elapsed` - Milliseconds since the cycle started.
    """

    type: EventName
    target: Any
    elapsed: float


EventHandler = Callable[[RenderEvent], Any]


class EventBus:
    """
    Named-event subscription with synchronous, in-order dispatch.

    Each render cycle owns one bus. Once the bus is closed (the cycle was cancelled),
    subscriptions are ignored and nothing is dispatched anymore.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[EventHandler]] = {name: [] for name in EVENT_NAMES}
        self.closed = False

    def subscribe(self, name: str, handler: EventHandler) -> None:
        if name not in self._handlers:
            raise ValueError(f"Unknown render event '{name}'. Valid events are: {', '.join(EVENT_NAMES)}")
        if not callable(handler):
            raise TypeError(f"Handler for render event '{name}' must be callable, got {handler!r}")
        if self.closed:
            return
        self._handlers[name].append(handler)

    def unsubscribe(self, name: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(name, [])
        if handler in handlers:
            handlers.remove(handler)

    def has_handlers(self, name: str) -> bool:
        return bool(self._handlers.get(name))

    def dispatch(self, event: RenderEvent) -> None:
        if self.closed:
            return
        # Copy, so handlers may (un)subscribe while we iterate
        for handler in list(self._handlers[event.type]):
            handler(event)

    def close(self) -> None:
        self.closed = True
        for handlers in self._handlers.values():
            handlers.clear()
