"""Queued secret rotation."""
import json
import logging
from typing import Any, Callable, Dict, Optional, Union

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from keyrotor.dependencies import build_manager
from keyrotor.domain.manager import SecretManager
from keyrotor.domain.models import RotationLogEntry

logger = logging.getLogger(__name__)

ManagerFactory = Callable[[Session], SecretManager]


class RotateSecretTask(BaseModel):
    key: str = Field(..., min_length=1)
    recipe: str = Field(..., min_length=1)
    grace_period_minutes: Optional[int] = Field(default=None, ge=0)


def _default_manager(db: Session) -> SecretManager:
    return build_manager(db, source="queue")


def handle_rotate_secret(
    payload: Union[str, bytes, Dict[str, Any], RotateSecretTask],
    session: Session,
    manager_factory: Optional[ManagerFactory] = None,
) -> Optional[RotationLogEntry]:
    """Rotate ``task.key`` with the named recipe. Unknown keys are skipped."""
    if isinstance(payload, (str, bytes)):
        payload = json.loads(payload)
    task = payload if isinstance(payload, RotateSecretTask) else RotateSecretTask.model_validate(payload)

    manager = (manager_factory or _default_manager)(session)
    if not manager.has(task.key):
        logger.info(f"Skipping queued rotation: secret {task.key} does not exist")
        return None

    log = manager.rotate_with(task.key, task.recipe, grace_period_minutes=task.grace_period_minutes)
    logger.info(f"Queued rotation of {task.key} finished: {log.status.label}")
    return log
