import logging

from keyrotor.logging_hardening import SecretRedactionFilter, redact, setup_logging
from keyrotor.listeners import RotationLogListener
from keyrotor.domain.events import EventBus, SecretRotated, SecretRotationFailed
from keyrotor.domain.models import RotationLogEntry, RotationStatus, Secret
from keyrotor.settings import Settings


def _record(msg, args=None):
    return logging.LogRecord("test", logging.INFO, __file__, 1, msg, args, None)


def test_envelope_fields_are_redacted():
    msg = '{"iv": "' + "a" * 24 + '", "tag": "' + "b" * 32 + '", "ciphertext": "deadbeef"}'
    out = redact(msg)
    assert "a" * 24 not in out
    assert "b" * 32 not in out
    assert "deadbeef" not in out
    assert out.count("[REDACTED]") == 3


def test_value_assignments_are_redacted():
    assert redact("set value=hunter2 for db") == "set value=[REDACTED] for db"
    assert redact("previous_value='old one'") == "previous_value=[REDACTED]"


def test_filter_rewrites_message_and_args():
    record = _record("rotated %s", ("value=s3cret",))
    assert SecretRedactionFilter().filter(record) is True
    assert record.getMessage() == "rotated value=[REDACTED]"


def test_setup_logging_is_idempotent():
    setup_logging(logging.INFO)
    setup_logging(logging.INFO)
    root = logging.getLogger()
    assert sum(isinstance(f, SecretRedactionFilter) for f in root.filters) == 1


class TestRotationLogListener:
    def _log(self):
        return RotationLogEntry(
            secret_id=1,
            status=RotationStatus.SUCCESS,
            rotated_at=None,
            metadata={"correlation_id": "cid-1", "duration_ms": 12.5, "source": "cli"},
        )

    def test_disabled_listener_writes_nothing(self, caplog):
        bus = EventBus()
        RotationLogListener(Settings(_env_file=None, logging_enabled=False)).register(bus)
        with caplog.at_level(logging.INFO, logger="keyrotor.rotation"):
            bus.publish(SecretRotated(Secret(key="svc.token"), self._log()))
        assert caplog.records == []

    def test_rotated_event_written_to_channel(self, caplog):
        bus = EventBus()
        RotationLogListener(Settings(_env_file=None, logging_enabled=True, log_channel="audit.keys")).register(bus)
        with caplog.at_level(logging.INFO, logger="audit.keys"):
            bus.publish(SecretRotated(Secret(key="svc.token"), self._log()))

        record = caplog.records[0]
        assert record.name == "audit.keys"
        assert record.secret_key == "svc.token"
        assert record.correlation_id == "cid-1"
        assert record.status == "Success"

    def test_failed_event_logged_as_error(self, caplog):
        bus = EventBus()
        RotationLogListener(Settings(_env_file=None, logging_enabled=True)).register(bus)
        with caplog.at_level(logging.INFO, logger="keyrotor.rotation"):
            bus.publish(SecretRotationFailed(Secret(key="svc.token"), "provider down"))

        record = caplog.records[0]
        assert record.levelno == logging.ERROR
        assert record.error == "provider down"
        assert record.correlation_id is None
