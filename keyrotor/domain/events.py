"""Rotation and pool events.

Handlers run synchronously in registration order. A failing handler is
logged and skipped; it never fails the operation that published the event.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, DefaultDict, List, Optional, Type, TypeVar

from keyrotor.domain.models import PoolKey, RotationLogEntry, Secret

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SecretRotating:
    secret: Secret


@dataclass(frozen=True)
class SecretRotated:
    secret: Secret
    log: RotationLogEntry


@dataclass(frozen=True)
class SecretRotationFailed:
    secret: Secret
    reason: str
    log: Optional[RotationLogEntry] = None


@dataclass(frozen=True)
class PoolKeyActivated:
    secret_key: str
    pool_key: PoolKey


@dataclass(frozen=True)
class PoolLow:
    secret_key: str
    remaining: int
    threshold: int


E = TypeVar("E")
Handler = Callable[[Any], None]


class EventBus:
    """Typed publish/subscribe list."""

    def __init__(self):
        self._handlers: DefaultDict[type, List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: Type[E], handler: Callable[[E], None]) -> Callable[[E], None]:
        self._handlers[event_type].append(handler)
        return handler

    def unsubscribe(self, event_type: type, handler: Handler) -> None:
        if handler in self._handlers.get(event_type, []):
            self._handlers[event_type].remove(handler)

    def publish(self, event: Any) -> None:
        for handler in list(self._handlers.get(type(event), [])):
            try:
                handler(event)
            except Exception as e:
                logger.warning(
                    f"Event handler {getattr(handler, '__name__', handler)!r} "
                    f"failed for {type(event).__name__}: {e}",
                    exc_info=True,
                )

    def on_rotating(self, handler: Callable[[SecretRotating], None]):
        return self.subscribe(SecretRotating, handler)

    def on_rotated(self, handler: Callable[[SecretRotated], None]):
        return self.subscribe(SecretRotated, handler)

    def on_rotation_failed(self, handler: Callable[[SecretRotationFailed], None]):
        return self.subscribe(SecretRotationFailed, handler)

    def on_pool_key_activated(self, handler: Callable[[PoolKeyActivated], None]):
        return self.subscribe(PoolKeyActivated, handler)

    def on_pool_low(self, handler: Callable[[PoolLow], None]):
        return self.subscribe(PoolLow, handler)
