"""Common types and error taxonomy for infrastructure reconciliation."""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

# Types and names end up in state file paths
NAME_PATTERN = re.compile(r'^[A-Za-z0-9_-]+\Z')


@dataclass(frozen=True, order=True)
class ResourceId:
    """Identity of a resource: (type, logical name).

    Rendered as 'type.name' in messages, state paths and depends_on entries.
    """
    type: str
    name: str

    def __str__(self) -> str:
        return f'{self.type}.{self.name}'

    @classmethod
    def parse(cls, value: str) -> 'ResourceId':
        """Parse 'type.name' into a ResourceId.

        Raises:
            ValueError: If value is not of the form 'type.name'
        """
        rtype, sep, name = value.partition('.')
        if not sep or not NAME_PATTERN.match(rtype) or not NAME_PATTERN.match(name):
            raise ValueError(f"Invalid resource identity '{value}' (expected 'type.name')")
        return cls(rtype, name)


class _Unknown:
    """Sentinel for values not known until apply time."""

    _instance: Optional['_Unknown'] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return '<unknown>'

    def __bool__(self) -> bool:
        return False


UNKNOWN = _Unknown()


def _format_ids(identities: Iterable[ResourceId]) -> str:
    return ', '.join(f"'{i}'" for i in identities)


class ReconcileError(Exception):
    """Base class for all reconciliation errors."""

    def __init__(self, message: str, identities: Iterable[ResourceId] = ()):
        self.identities: tuple[ResourceId, ...] = tuple(identities)
        super().__init__(message)


class BuildError(ReconcileError):
    """Desired-state document cannot be turned into a valid graph."""


class DuplicateIdentity(BuildError):
    def __init__(self, identity: ResourceId, first_index: int, second_index: int):
        self.first_index = first_index
        self.second_index = second_index
        super().__init__(
            f"Duplicate resource '{identity}' declared at positions "
            f"{first_index} and {second_index}",
            [identity],
        )


class UnresolvedReference(BuildError):
    def __init__(self, consumer: str, target: ResourceId, where: str = ''):
        self.consumer = consumer
        self.target = target
        location = f" in {where}" if where else ''
        super().__init__(
            f"'{consumer}' references unknown resource '{target}'{location}",
            [target],
        )


class CyclicDependency(BuildError):
    def __init__(self, cycle: list[ResourceId]):
        self.cycle = list(cycle)
        path = ' -> '.join(str(i) for i in self.cycle)
        super().__init__(f"Dependency cycle detected: {path}", self.cycle)


class PlanInfeasible(ReconcileError):
    """Residual cycle after splitting replacements into destroy/create."""

    def __init__(self, identities: Iterable[ResourceId], detail: str = ''):
        identities = sorted(set(identities))
        message = f"Cannot order plan steps for {_format_ids(identities)}"
        if detail:
            message += f": {detail}"
        super().__init__(message, identities)


class StoreError(ReconcileError):
    """Persisted state cannot be read or written."""


class StoreCorrupt(StoreError):
    """Persisted state cannot be deserialized into the expected schema."""

    def __init__(self, path: str, reason: str, identity: Optional[ResourceId] = None):
        self.path = path
        self.reason = reason
        super().__init__(
            f"Corrupt state at {path}: {reason}",
            [identity] if identity is not None else [],
        )


class StoreWriteError(StoreError):
    """Writing state failed after the backend call already succeeded."""

    def __init__(self, path: str, reason: str, identity: Optional[ResourceId] = None):
        self.path = path
        self.reason = reason
        subject = f" for '{identity}'" if identity is not None else ''
        super().__init__(
            f"State write failed{subject} at {path}: {reason}; "
            f"the backend change was applied but is not recorded",
            [identity] if identity is not None else [],
        )


class ErrorKind(Enum):
    """Provider failure classification."""
    RATE_LIMITED = 'rate_limited'
    CONFLICT = 'conflict'
    TRANSIENT = 'transient'
    PERMANENT = 'permanent'

    @property
    def retryable(self) -> bool:
        return self is not ErrorKind.PERMANENT


class ProviderError(ReconcileError):
    """Failure reported by the provisioning backend for one resource."""

    def __init__(self, kind: ErrorKind, message: str, identity: Optional[ResourceId] = None):
        self.kind = kind
        self.message = message
        super().__init__(
            f"{kind.value}: {message}",
            [identity] if identity is not None else [],
        )

    @property
    def retryable(self) -> bool:
        return self.kind.retryable
