# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
In-process hook bus.

Components emit named events (job:discovered, job:success, ...) and any
number of subscribers receive them. A subscriber that raises is logged and
skipped; emitters are never interrupted by a listener.
"""

import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from gitvan.event_client import EventClient

logger = logging.getLogger(__name__)

Listener = Callable[[str, Dict[str, Any]], None]

WILDCARD = "*"


class HookBus:
    """Publish/subscribe bus for lifecycle events."""

    def __init__(self, event_client: Optional[EventClient] = None):
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._lock = threading.Lock()
        self.event_client = event_client

    def subscribe(self, name: str, listener: Listener) -> Callable[[], None]:
        """Register a listener for an event name ("*" for all events).

        Returns:
            A callable that removes the listener.
        """
        with self._lock:
            self._listeners[name].append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners[name]:
                    self._listeners[name].remove(listener)

        return unsubscribe

    def emit(self, name: str, payload: Optional[Dict[str, Any]] = None) -> None:
        payload = payload or {}
        with self._lock:
            listeners = list(self._listeners.get(name, ())) + list(self._listeners.get(WILDCARD, ()))

        for listener in listeners:
            try:
                listener(name, payload)
            except Exception as e:
                logger.warning(f"Hook listener for '{name}' failed: {e}")

        if self.event_client is not None:
            try:
                self.event_client.log_event(
                    event_type=name,
                    correlation_id=payload.get("run_id"),
                    status=payload.get("status"),
                    payload=payload,
                    error_message=payload.get("error"),
                )
            except OSError as e:
                logger.warning(f"Failed to write event log: {e}")


class HookRecorder:
    """Listener that keeps every event it sees. Handy for status and tests."""

    def __init__(self):
        self.events: List[tuple] = []
        self._lock = threading.Lock()

    def __call__(self, name: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self.events.append((name, payload))

    def names(self) -> List[str]:
        with self._lock:
            return [name for name, _ in self.events]

    def of(self, name: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [payload for n, payload in self.events if n == name]
