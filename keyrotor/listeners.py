"""Writes rotation outcomes to a dedicated log channel when enabled."""
import logging
from typing import Optional

from keyrotor.domain.events import EventBus, SecretRotated, SecretRotationFailed
from keyrotor.settings import Settings, get_settings

DEFAULT_CHANNEL = "keyrotor.rotation"


class RotationLogListener:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.channel = logging.getLogger(self.settings.log_channel or DEFAULT_CHANNEL)

    @property
    def enabled(self) -> bool:
        return self.settings.logging_enabled

    def register(self, events: EventBus) -> "RotationLogListener":
        events.on_rotated(self.on_rotated)
        events.on_rotation_failed(self.on_rotation_failed)
        return self

    def on_rotated(self, event: SecretRotated) -> None:
        if not self.enabled:
            return
        self.channel.info(
            f"Secret rotated: {event.secret.key}",
            extra=self._context(event.secret.key, event.log.status.label, event.log.metadata),
        )

    def on_rotation_failed(self, event: SecretRotationFailed) -> None:
        if not self.enabled:
            return
        metadata = event.log.metadata if event.log else {}
        context = self._context(event.secret.key, "Failed", metadata)
        context["error"] = event.reason
        self.channel.error(f"Secret rotation failed: {event.secret.key}", extra=context)

    @staticmethod
    def _context(key: str, status: str, metadata: dict) -> dict:
        return {
            "secret_key": key,
            "status": status,
            "correlation_id": metadata.get("correlation_id"),
            "duration_ms": metadata.get("duration_ms"),
            "source": metadata.get("source"),
        }
