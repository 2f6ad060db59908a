#!/usr/bin/env python3
"""
Observer registry used by every mixer service.

Each Subject keeps its own subscriber list. Callbacks run synchronously in
subscription order, and a failing callback is logged without stopping the
others.
"""

import logging
from typing import Any, Callable, Generic, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Unsubscribe = Callable[[], None]

_UNSET = object()


class Subject(Generic[T]):
    """A set of callbacks that all receive the same value."""

    def __init__(self, name: str, replay_last: bool = False):
        """
        Args:
            name: Label used in log messages.
            replay_last: Call new subscribers immediately with the last
                published value (if any).
        """
        self.name = name
        self.replay_last = replay_last
        self._callbacks: List[Callable[[T], Any]] = []
        self._last: Any = _UNSET

    def __len__(self) -> int:
        return len(self._callbacks)

    @property
    def last_value(self) -> Optional[T]:
        return None if self._last is _UNSET else self._last

    def subscribe(self, callback: Callable[[T], Any]) -> Unsubscribe:
        """Register a callback and return a function that removes it again."""
        self._callbacks.append(callback)
        if self.replay_last and self._last is not _UNSET:
            self._invoke(callback, self._last)

        def unsubscribe():
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return unsubscribe

    def notify(self, value: T):
        """Deliver a value to every current subscriber."""
        self._last = value
        for callback in list(self._callbacks):
            self._invoke(callback, value)

    def remember(self, value: T):
        """Store a value for replay without notifying anyone."""
        self._last = value

    def clear(self):
        self._callbacks.clear()

    def _invoke(self, callback: Callable[[T], Any], value: T):
        try:
            callback(value)
        except Exception as e:
            logger.error(f"❌ {self.name} subscriber failed: {e}", exc_info=True)
