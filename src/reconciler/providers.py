"""Provisioning backend capabilities, dispatched by resource type.

A ProviderRegistry maps resource type -> ResourceKind, a plain record of
(comparator, apply function, replacement-forcing attributes). Types with no
registered kind fall back to equality comparison and the registry backend.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol, runtime_checkable

import requests
import urllib3

from common import ErrorKind, ProviderError, ResourceId

logger = logging.getLogger(__name__)


class Action(Enum):
    CREATE = 'create'
    UPDATE = 'update'
    DESTROY = 'destroy'
    NOOP = 'noop'


# (action, identity, desired_attributes) -> (assigned_id, observed_attributes)
ApplyResult = tuple[str, dict[str, Any]]
ApplyFn = Callable[[Action, ResourceId, dict[str, Any]], ApplyResult]
Comparator = Callable[[str, Any, Any], bool]


@runtime_checkable
class Backend(Protocol):
    """Protocol for provisioning backends."""

    def apply(self, action: Action, identity: ResourceId,
              desired_attributes: dict[str, Any]) -> ApplyResult:
        """Apply one operation; raise ProviderError on failure."""


def default_comparator(attribute: str, desired: Any, actual: Any) -> bool:
    return desired == actual


@dataclass(frozen=True)
class ResourceKind:
    """Capabilities for one resource type.

    Attributes:
        apply: Function performing create/update/destroy
        comparator: Attribute equality test (attribute, desired, actual)
        replace_on: Attributes whose change cannot be applied in place
    """
    apply: ApplyFn
    comparator: Comparator = default_comparator
    replace_on: frozenset[str] = field(default_factory=frozenset)

    def forces_replacement(self, attribute: str) -> bool:
        return attribute in self.replace_on


class ProviderRegistry:
    """Capability table keyed by resource type."""

    def __init__(self, backend: Optional[Backend] = None):
        self.backend = backend
        self._kinds: dict[str, ResourceKind] = {}

    def register(self, resource_type: str,
                 apply: Optional[ApplyFn] = None,
                 comparator: Comparator = default_comparator,
                 replace_on: Optional[set[str]] = None) -> ResourceKind:
        """Register capabilities for a resource type.

        apply defaults to the registry backend's apply; without a backend,
        applying the type fails with a permanent ProviderError.
        """
        if apply is None:
            apply = self.backend.apply if self.backend is not None else self._default_apply
        kind = ResourceKind(apply=apply, comparator=comparator,
                            replace_on=frozenset(replace_on or ()))
        self._kinds[resource_type] = kind
        return kind

    def declare_replacements(self, replace_on: Mapping[str, Iterable[str]]) -> None:
        """Add replacement-forcing attributes per type, keeping any registered
        apply function and comparator."""
        for resource_type, attributes in replace_on.items():
            kind = self._kinds.get(resource_type)
            if kind is None:
                kind = self.register(resource_type, replace_on=set(attributes))
            else:
                kind = self._kinds[resource_type] = replace(
                    kind, replace_on=kind.replace_on | frozenset(attributes))
            logger.debug(f"Replacement attributes for {resource_type}: "
                         f"{', '.join(sorted(kind.replace_on))}")

    def kind_for(self, resource_type: str) -> ResourceKind:
        """Look up capabilities, falling back to the default kind."""
        kind = self._kinds.get(resource_type)
        if kind is not None:
            return kind
        return ResourceKind(apply=self._default_apply)

    def _default_apply(self, action: Action, identity: ResourceId,
                       desired_attributes: dict[str, Any]) -> ApplyResult:
        if self.backend is None:
            raise ProviderError(
                ErrorKind.PERMANENT,
                f"no backend configured for resource type '{identity.type}'",
                identity,
            )
        return self.backend.apply(action, identity, desired_attributes)

    def __contains__(self, resource_type: object) -> bool:
        return resource_type in self._kinds


def _classify_status(status_code: int) -> ErrorKind:
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code == 409:
        return ErrorKind.CONFLICT
    if status_code >= 500:
        return ErrorKind.TRANSIENT
    return ErrorKind.PERMANENT


class HttpBackend:
    """JSON-over-HTTP provisioning backend.

    Each operation is POST {url}/resources/{type}/{name} with body
    {"action": ..., "attributes": {...}}. A 2xx response carries
    {"id": ..., "attributes": {...}}; destroy may return an empty body.
    """

    def __init__(self, url: str, token: Optional[str] = None,
                 timeout: float = 30.0, verify: bool = True,
                 session: Optional[requests.Session] = None):
        self.url = url.rstrip('/')
        self.token = token
        self.timeout = timeout
        self.verify = verify
        self.session = session or requests.Session()
        if not verify:
            # Self-signed certs on lab backends
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def _headers(self) -> dict[str, str]:
        headers = {'Accept': 'application/json'}
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        return headers

    def apply(self, action: Action, identity: ResourceId,
              desired_attributes: dict[str, Any]) -> ApplyResult:
        url = f"{self.url}/resources/{identity.type}/{identity.name}"
        logger.debug("POST %s action=%s", url, action.value)
        try:
            resp = self.session.post(
                url,
                json={'action': action.value, 'attributes': desired_attributes},
                headers=self._headers(),
                timeout=self.timeout,
                verify=self.verify,
            )
        except requests.exceptions.Timeout:
            raise ProviderError(ErrorKind.TRANSIENT, f"timeout calling {url}", identity)
        except requests.exceptions.ConnectionError as e:
            raise ProviderError(ErrorKind.TRANSIENT, f"cannot connect to {url}: {e}", identity)

        if resp.status_code >= 400:
            raise ProviderError(
                _classify_status(resp.status_code),
                f"HTTP {resp.status_code}: {self._error_message(resp)}",
                identity,
            )

        if action is Action.DESTROY and not resp.content:
            return '', {}

        try:
            data = resp.json()
        except ValueError:
            raise ProviderError(ErrorKind.PERMANENT, f"invalid JSON response from {url}", identity)
        if not isinstance(data, dict):
            raise ProviderError(ErrorKind.PERMANENT, f"unexpected response from {url}", identity)

        return str(data.get('id', '')), dict(data.get('attributes') or {})

    @staticmethod
    def _error_message(resp: requests.Response) -> str:
        try:
            data = resp.json()
        except ValueError:
            return resp.text[:200]
        if isinstance(data, dict):
            error = data.get('error')
            if isinstance(error, dict):
                return str(error.get('message', error))
            if error:
                return str(error)
        return resp.text[:200]
