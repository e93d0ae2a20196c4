"""Optional diagnostic channel for silently degraded steps.

Malformed structured-data blocks, failed commentary calls and defaulted
extraction fields never change pipeline output. Operators who want to see
them either enable DEBUG on the ``authority_agent.diagnostics`` logger
(``AUTHORITY_DIAGNOSTICS=true``) or subscribe a callback.
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable

logger = logging.getLogger("authority_agent.diagnostics")
logger.addHandler(logging.NullHandler())

Listener = Callable[[str, dict[str, Any]], None]

_listeners: list[Listener] = []
_lock = threading.Lock()


def subscribe(listener: Listener) -> Callable[[], None]:
    with _lock:
        _listeners.append(listener)

    def unsubscribe() -> None:
        with _lock:
            if listener in _listeners:
                _listeners.remove(listener)

    return unsubscribe


def emit(event: str, **fields: Any) -> None:
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug("%s %s", event, fields)
    with _lock:
        listeners = list(_listeners)
    for listener in listeners:
        try:
            listener(event, fields)
        except Exception:
            logger.exception("diagnostic listener failed for %s", event)


def enable(level: int = logging.DEBUG) -> None:
    logger.setLevel(level)
