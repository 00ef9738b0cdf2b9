"""Queries over the rotation audit trail, plus retention pruning."""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from keyrotor.domain.clock import Clock, utcnow
from keyrotor.domain.interfaces import RotationLogStore, SecretStore
from keyrotor.domain.models import RotationLogEntry, RotationStatus
from keyrotor.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class LogQueryService:
    def __init__(
        self,
        logs: RotationLogStore,
        secrets: SecretStore,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        self.logs = logs
        self.secrets = secrets
        self.settings = settings or get_settings()
        self.clock = clock

    def by_status(self, status: RotationStatus) -> List[RotationLogEntry]:
        return self.logs.by_status(status)

    def recent_failures(self, hours: int = 24) -> List[RotationLogEntry]:
        return self.logs.failed_since(self.clock() - timedelta(hours=hours))

    def between(self, start: datetime, end: datetime) -> List[RotationLogEntry]:
        return self.logs.between(start, end)

    def stats(self, key: Optional[str] = None) -> Dict[str, Any]:
        """``{"total": n, "by_status": {status_value: count}}``, optionally for one key."""
        secret_id = None
        if key:
            secret = self.secrets.find(key)
            if secret is None:
                return {"total": 0, "by_status": {}}
            secret_id = secret.id
        by_status = self.logs.status_counts(secret_id)
        return {"total": sum(by_status.values()), "by_status": by_status}

    def prune(self, days: Optional[int] = None, dry_run: bool = False) -> int:
        """Delete log rows older than the retention window. Returns the row count."""
        days = self.settings.log_retention_days if days is None else days
        if days < 1:
            raise ValueError("Retention must be at least one day")
        cutoff = self.clock() - timedelta(days=days)
        if dry_run:
            return self.logs.count_before(cutoff)
        deleted = self.logs.delete_before(cutoff)
        logger.info(f"Pruned {deleted} rotation log(s) older than {days} days")
        return deleted
