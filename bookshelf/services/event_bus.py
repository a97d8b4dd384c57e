"""
Event Bus

In-process publish/subscribe used to tell caches that an entity kind changed
without the mutating service knowing who caches what.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], None]


class Events:
    """Event names emitted by the services."""
    BOOK_SAVED = 'book:saved'
    BOOK_DELETED = 'book:deleted'
    BOOK_RESTORED = 'book:restored'

    GENRE_CREATED = 'genre:created'
    GENRE_UPDATED = 'genre:updated'
    GENRE_DELETED = 'genre:deleted'

    SERIES_CREATED = 'series:created'
    SERIES_UPDATED = 'series:updated'
    SERIES_DELETED = 'series:deleted'

    WISHLIST_CHANGED = 'wishlist:changed'

    IMPORT_COMPLETED = 'import:completed'


@dataclass
class _Listener:
    callback: EventHandler
    once: bool = False


class EventBus:
    """Synchronous event bus.

    Handlers run in registration order inside ``emit``. A handler that raises
    is logged and skipped; the publisher and the remaining handlers carry on.
    """

    def __init__(self):
        self._listeners: Dict[str, List[_Listener]] = {}

    def _subscribe(self, event: str, callback: EventHandler, once: bool) -> Callable[[], None]:
        listeners = self._listeners.setdefault(event, [])
        # A callback is registered at most once per event
        if not any(listener.callback == callback for listener in listeners):
            listeners.append(_Listener(callback, once=once))
        return lambda: self.off(event, callback)

    def on(self, event: str, callback: EventHandler) -> Callable[[], None]:
        """Subscribe; returns a function that unsubscribes. Re-subscribing is a no-op."""
        return self._subscribe(event, callback, once=False)

    def once(self, event: str, callback: EventHandler) -> Callable[[], None]:
        return self._subscribe(event, callback, once=True)

    def off(self, event: str, callback: EventHandler) -> None:
        listeners = self._listeners.get(event)
        if not listeners:
            return
        for index, listener in enumerate(listeners):
            if listener.callback == callback:
                del listeners[index]
                break
        if not listeners:
            del self._listeners[event]

    def emit(self, event: str, data: Any = None) -> None:
        # Copy so handlers may (un)subscribe while we iterate
        for listener in list(self._listeners.get(event, [])):
            try:
                listener.callback(data)
            except Exception as e:
                logger.warning(f"Error in event handler for '{event}': {e}")
            if listener.once:
                self.off(event, listener.callback)

    def has_listeners(self, event: str) -> bool:
        return self.listener_count(event) > 0

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def event_names(self) -> List[str]:
        return list(self._listeners.keys())

    def clear(self, event: str = None) -> None:
        if event:
            self._listeners.pop(event, None)
        else:
            self._listeners.clear()
