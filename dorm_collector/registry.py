"""Registry of monitored dormitories."""

import json
import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError

from .config import password_env_key
from .errors import UnknownEntityError, ValidationError
from .models import MonitoredEntity

logger = logging.getLogger("dorm-collector.registry")


def describe_validation_error(error: PydanticValidationError) -> str:
    """Compact, credential-free message for a pydantic validation error."""
    parts = []
    for item in error.errors():
        field = ".".join(str(p) for p in item.get("loc", ())) or "input"
        parts.append(f"{field}: {item.get('msg', 'invalid')}")
    return "; ".join(parts)


def build_entity(data: Mapping) -> MonitoredEntity:
    """Validate raw dormitory fields.

    Raises:
        ValidationError: If required fields are missing or malformed
    """
    try:
        return MonitoredEntity.model_validate(dict(data))
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid dormitory: {describe_validation_error(e)}")


class EntityRegistry:
    """Process-wide set of monitored dormitories.

    Owned by the process and handed to the collector and the API. The only
    mutations are add() and update_credentials(), both guarded.
    """

    def __init__(self, entities: Iterable[MonitoredEntity] = ()):
        self._entities: Dict[str, MonitoredEntity] = {}
        self._lock = threading.Lock()
        for entity in entities:
            self.add(entity)

    def __len__(self) -> int:
        return len(self._entities)

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._entities

    def add(self, entity: MonitoredEntity) -> MonitoredEntity:
        """Register a new dormitory.

        Raises:
            ValidationError: If the id is already registered
        """
        with self._lock:
            if entity.id in self._entities:
                raise ValidationError(f"Dormitory {entity.id} already exists")
            self._entities[entity.id] = entity
        logger.info(f"Registered dormitory: {entity.id} ({entity.name})")
        return entity

    def update_credentials(self, entity_id: str, account: str, password: str) -> MonitoredEntity:
        """Rotate the portal credentials of a dormitory (id stays fixed)."""
        with self._lock:
            current = self._entities.get(entity_id)
            if current is None:
                raise UnknownEntityError(f"Dormitory {entity_id} not found")
            data = current.model_dump()
            data.update(account=account, password=password)
            updated = build_entity(data)
            self._entities[entity_id] = updated
        logger.info(f"[{entity_id}] Credentials updated")
        return updated

    def get(self, entity_id: str) -> Optional[MonitoredEntity]:
        return self._entities.get(entity_id)

    def require(self, entity_id: str) -> MonitoredEntity:
        entity = self._entities.get(entity_id)
        if entity is None:
            raise UnknownEntityError(f"Dormitory {entity_id} not found")
        return entity

    def list(self) -> List[MonitoredEntity]:
        """Snapshot of registered dormitories in registration order."""
        with self._lock:
            return list(self._entities.values())


def load_entities(path: Path, secrets: Optional[Mapping[str, str]] = None) -> List[MonitoredEntity]:
    """Load dormitories from a JSON file.

    The file holds a list of objects with id, name, building, room_number,
    floor, user_name, account and (optionally) password. A secret named
    DORM_PASSWORD_<ID> overrides or supplies the password.

    Raises:
        ValidationError: If the file is unreadable or an entry is invalid
    """
    secrets = secrets or {}
    if not path.exists():
        logger.warning(f"Dormitory file {path} not found - starting with no dormitories")
        return []

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ValidationError(f"Cannot read dormitory file {path}: {e}")

    if not isinstance(raw, list):
        raise ValidationError(f"Dormitory file {path} must contain a JSON list")

    entities = []
    for item in raw:
        if not isinstance(item, dict):
            raise ValidationError(f"Dormitory file {path} has a non-object entry")
        data = dict(item)
        secret = secrets.get(password_env_key(str(data.get("id", ""))))
        if secret:
            data["password"] = secret
        entities.append(build_entity(data))
    return entities
