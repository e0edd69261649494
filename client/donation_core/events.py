"""
EventEmitter — a small explicit pub-sub instance.

Owners create one and hand it to consumers; there is no module-level
registry. Listeners are plain callables invoked synchronously, in
subscription order, on the event loop thread.
"""

from .config import log


class EventEmitter:
    def __init__(self, name="events"):
        self.name = name
        self._listeners = []

    def subscribe(self, listener):
        """Register ``listener``. Returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe():
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass  # already removed

        return unsubscribe

    def emit(self, *args):
        # Copy: a listener may unsubscribe itself while we iterate.
        for listener in list(self._listeners):
            try:
                listener(*args)
            except Exception as e:
                log.error("%s listener %r failed: %s", self.name, listener, e, exc_info=True)

    def __len__(self):
        return len(self._listeners)
