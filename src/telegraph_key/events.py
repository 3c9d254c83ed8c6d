"""Listener registration and event fan-out for :class:`~telegraph_key.decoder.KeyDecoder`."""

from __future__ import annotations

import logging
from threading import Lock
from typing import Callable, List, Tuple

from .code_table import Signal

LOGGER = logging.getLogger(__name__)


class DecoderListener:
    """Receives decoder events.

    Subclass and override the hooks you are interested in; every hook is a
    no-op by default.  Signal sequences are delivered as immutable tuples.
    """

    def signal_appended(self, signal: Signal, buffer: Tuple[Signal, ...]) -> None:
        pass

    def letter_committed(self, character: str, signals: Tuple[Signal, ...]) -> None:
        pass

    def unknown_letter(self, signals: Tuple[Signal, ...]) -> None:
        """Called after :meth:`letter_committed` when ``signals`` had no entry
        in the code table and ``"?"`` was committed in their place."""

    def word_break(self) -> None:
        pass

    def reset(self) -> None:
        pass


class Subscription:
    """Handle returned by :meth:`ListenerRegistry.subscribe`.

    Calling the handle, or :meth:`unsubscribe`, detaches the listener.  Both
    are idempotent.
    """

    def __init__(self, registry: "ListenerRegistry", listener: DecoderListener) -> None:
        self._registry = registry
        self._listener = listener
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._registry.remove(self._listener)

    def __call__(self) -> None:
        self.unsubscribe()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unsubscribe()


class ListenerRegistry:
    """Ordered collection of listeners with per-listener error isolation."""

    def __init__(self) -> None:
        self._listeners: List[DecoderListener] = []
        self._lock = Lock()

    def subscribe(self, listener: DecoderListener) -> Subscription:
        with self._lock:
            self._listeners.append(listener)
        return Subscription(self, listener)

    def remove(self, listener: DecoderListener) -> None:
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:  # pragma: no cover - defensive cleanup
                pass

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)

    def emit(self, hook: str, *args: object) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            handler: Callable[..., None] | None = getattr(listener, hook, None)
            if handler is None:
                continue
            try:
                handler(*args)
            except Exception:
                LOGGER.exception("Listener %r failed while handling %s", listener, hook)


__all__ = ["DecoderListener", "ListenerRegistry", "Subscription"]
