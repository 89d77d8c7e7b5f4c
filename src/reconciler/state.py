"""Actual-state persistence for reconciliation.

Stores the last-observed state of each provisioned resource as one JSON file
per resource under {root}/{type}/{name}.json, so that applied progress
survives a crash between steps.
"""

import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from common import ResourceId, StoreCorrupt, StoreWriteError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2
# Version 1 entries predate desired_keys
READABLE_VERSIONS = (1, 2)


@dataclass
class ActualState:
    """Last-observed state of one resource.

    Attributes:
        identity: Resource identity
        resource_id: Identifier assigned by the provisioning backend
        attributes: Observed attributes returned by the backend
        dependencies: Identities this resource depended on when applied
        updated_at: Timestamp of the last successful write
        desired_keys: Top-level attribute names the document declared when
            applied (None for entries written before they were recorded)
    """
    identity: ResourceId
    resource_id: str
    attributes: dict[str, Any] = field(default_factory=dict)
    dependencies: list[ResourceId] = field(default_factory=list)
    updated_at: Optional[float] = None
    desired_keys: Optional[list[str]] = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'schema_version': SCHEMA_VERSION,
            'type': self.identity.type,
            'name': self.identity.name,
            'id': self.resource_id,
            'attributes': self.attributes,
            'dependencies': [str(i) for i in self.dependencies],
        }
        if self.updated_at is not None:
            d['updated_at'] = self.updated_at
        if self.desired_keys is not None:
            d['desired_keys'] = list(self.desired_keys)
        return d

    @classmethod
    def from_dict(cls, data: Any, source: str = '<memory>') -> 'ActualState':
        """Deserialize, validating the schema.

        Raises:
            StoreCorrupt: If data does not match the expected schema
        """
        if not isinstance(data, dict):
            raise StoreCorrupt(source, 'top-level value is not an object')
        version = data.get('schema_version')
        if version not in READABLE_VERSIONS:
            raise StoreCorrupt(source, f'unsupported schema_version {version!r}')
        for key, expected in (('type', str), ('name', str), ('id', str),
                              ('attributes', dict), ('dependencies', list)):
            if key not in data:
                raise StoreCorrupt(source, f"missing field '{key}'")
            if not isinstance(data[key], expected):
                raise StoreCorrupt(source, f"field '{key}' must be {expected.__name__}")

        identity = ResourceId(data['type'], data['name'])
        try:
            dependencies = [ResourceId.parse(str(d)) for d in data['dependencies']]
        except ValueError as e:
            raise StoreCorrupt(source, str(e), identity)

        updated_at = data.get('updated_at')
        if updated_at is not None and not isinstance(updated_at, (int, float)):
            raise StoreCorrupt(source, "field 'updated_at' must be a number", identity)

        desired_keys = data.get('desired_keys')
        if desired_keys is not None and (
                not isinstance(desired_keys, list) or not all(isinstance(k, str) for k in desired_keys)):
            raise StoreCorrupt(source, "field 'desired_keys' must be a list of strings", identity)

        return cls(
            identity=identity,
            resource_id=data['id'],
            attributes=data['attributes'],
            dependencies=dependencies,
            updated_at=updated_at,
            desired_keys=desired_keys,
        )


class StateStore:
    """Durable key-value store of ActualState keyed by (type, name).

    Writes to one key are serialized by a per-key lock; reads take no lock
    since every write is an atomic file replace.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self._locks: dict[ResourceId, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _path(self, identity: ResourceId) -> Path:
        return self.root / identity.type / f'{identity.name}.json'

    def _lock(self, identity: ResourceId) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(identity)
            if lock is None:
                lock = self._locks[identity] = threading.Lock()
            return lock

    def _read(self, path: Path, identity: Optional[ResourceId] = None) -> ActualState:
        try:
            with open(path, encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StoreCorrupt(str(path), f'invalid JSON: {e}', identity)
        except UnicodeDecodeError as e:
            raise StoreCorrupt(str(path), f'undecodable content: {e}', identity)

        state = ActualState.from_dict(data, source=str(path))
        if identity is not None and state.identity != identity:
            raise StoreCorrupt(str(path), f"holds '{state.identity}', expected '{identity}'", identity)
        return state

    def get(self, identity: ResourceId) -> Optional[ActualState]:
        """Get stored state, or None if absent.

        Raises:
            StoreCorrupt: If the entry exists but cannot be deserialized
        """
        path = self._path(identity)
        if not path.exists():
            return None
        return self._read(path, identity)

    def put(self, identity: ResourceId, state: ActualState) -> Path:
        """Atomically overwrite the entry for identity.

        Returns:
            Path where state was saved

        Raises:
            StoreWriteError: If the entry cannot be written
        """
        if state.identity != identity:
            raise ValueError(f"State for '{state.identity}' stored under '{identity}'")
        path = self._path(identity)
        with self._lock(identity):
            state.updated_at = time.time()
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f'.{identity.name}.', suffix='.tmp')
                try:
                    with os.fdopen(fd, 'w', encoding='utf-8') as f:
                        json.dump(state.to_dict(), f, indent=2, sort_keys=True)
                        f.flush()
                        os.fsync(f.fileno())
                    os.replace(tmp_name, path)
                except BaseException:
                    if os.path.exists(tmp_name):
                        os.unlink(tmp_name)
                    raise
            except OSError as e:
                raise StoreWriteError(str(path), str(e), identity) from e
        logger.debug(f"Saved state for {identity} to {path}")
        return path

    def delete(self, identity: ResourceId) -> None:
        """Remove the entry for identity (no-op if absent).

        Raises:
            StoreWriteError: If an existing entry cannot be removed
        """
        path = self._path(identity)
        with self._lock(identity):
            try:
                path.unlink()
            except FileNotFoundError:
                return
            except OSError as e:
                raise StoreWriteError(str(path), str(e), identity) from e
        logger.debug(f"Deleted state for {identity}")

    def identities(self) -> list[ResourceId]:
        """All stored identities, sorted."""
        if not self.root.exists():
            return []
        found = []
        for type_dir in self.root.iterdir():
            if not type_dir.is_dir():
                continue
            for entry in type_dir.glob('*.json'):
                if entry.is_file():
                    found.append(ResourceId(type_dir.name, entry.stem))
        return sorted(found)

    def snapshot(self) -> dict[ResourceId, ActualState]:
        """Read every stored entry.

        Raises:
            StoreCorrupt: If any entry cannot be deserialized
        """
        return {identity: self._read(self._path(identity), identity)
                for identity in self.identities()}

    def __contains__(self, identity: object) -> bool:
        return isinstance(identity, ResourceId) and self._path(identity).exists()
