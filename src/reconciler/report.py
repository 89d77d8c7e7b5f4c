"""Per-resource run results for reconciliation.

A run never ends all-or-nothing: each resource finishes as succeeded, failed,
blocked (a dependency failed), skipped (run cancelled) or noop, so a re-run
knows exactly which resources are still inconsistent.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from common import ResourceId

logger = logging.getLogger(__name__)


class NodeStatus(Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    BLOCKED = 'blocked'
    SKIPPED = 'skipped'
    NOOP = 'noop'

    @property
    def terminal_success(self) -> bool:
        return self in (NodeStatus.SUCCEEDED, NodeStatus.NOOP)


@dataclass
class NodeResult:
    """Outcome for one resource.

    Attributes:
        identity: Resource identity
        status: Current status
        actions: Actions performed or attempted, in order (e.g. destroy, create)
        attempts: Backend calls made, including retries
        error: Error message if failed or blocked
        started_at: Timestamp when the first step started
        completed_at: Timestamp when the last step finished
    """
    identity: ResourceId
    status: NodeStatus = NodeStatus.PENDING
    actions: list[str] = field(default_factory=list)
    attempts: int = 0
    error: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def start(self, action: str) -> None:
        self.status = NodeStatus.RUNNING
        self.actions.append(action)
        if self.started_at is None:
            self.started_at = time.time()

    def succeed(self) -> None:
        self.status = NodeStatus.SUCCEEDED
        self.completed_at = time.time()

    def fail(self, error: str) -> None:
        self.status = NodeStatus.FAILED
        self.completed_at = time.time()
        self.error = error

    def block(self, reason: str) -> None:
        self.status = NodeStatus.BLOCKED
        self.error = reason

    def skip(self) -> None:
        self.status = NodeStatus.SKIPPED

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'resource': str(self.identity),
            'status': self.status.value,
        }
        if self.actions:
            d['actions'] = list(self.actions)
        if self.attempts:
            d['attempts'] = self.attempts
        if self.duration is not None:
            d['duration'] = round(self.duration, 2)
        if self.error is not None:
            d['error'] = self.error
        return d


class RunReport:
    """Results for every resource touched by one reconciliation run."""

    def __init__(self, document_name: str):
        self.document_name = document_name
        self._nodes: dict[ResourceId, NodeResult] = {}
        self.outputs: dict[str, Any] = {}
        self.missing_outputs: list[str] = []
        self.cancelled = False
        self.dry_run = False
        self.started_at: Optional[float] = None
        self.completed_at: Optional[float] = None

    def node(self, identity: ResourceId) -> NodeResult:
        """Get or register the result for identity."""
        result = self._nodes.get(identity)
        if result is None:
            result = self._nodes[identity] = NodeResult(identity=identity)
        return result

    def get(self, identity: ResourceId) -> NodeResult:
        """Get a registered result.

        Raises:
            KeyError: If identity was never registered
        """
        return self._nodes[identity]

    @property
    def nodes(self) -> dict[ResourceId, NodeResult]:
        return dict(self._nodes)

    def with_status(self, status: NodeStatus) -> list[ResourceId]:
        return sorted(i for i, r in self._nodes.items() if r.status is status)

    @property
    def succeeded(self) -> list[ResourceId]:
        return self.with_status(NodeStatus.SUCCEEDED)

    @property
    def failed(self) -> list[ResourceId]:
        return self.with_status(NodeStatus.FAILED)

    @property
    def blocked(self) -> list[ResourceId]:
        return self.with_status(NodeStatus.BLOCKED)

    @property
    def skipped(self) -> list[ResourceId]:
        return self.with_status(NodeStatus.SKIPPED)

    @property
    def success(self) -> bool:
        return not self.cancelled and all(
            r.status.terminal_success for r in self._nodes.values()
        )

    def start(self) -> None:
        self.started_at = time.time()

    def finish(self) -> None:
        self.completed_at = time.time()

    def summary(self) -> str:
        counts = {s: len(self.with_status(s)) for s in NodeStatus if self.with_status(s)}
        parts = [f'{n} {s.value}' for s, n in counts.items()]
        state = 'succeeded' if self.success else 'incomplete'
        return f"Run {state}: {', '.join(parts) if parts else 'nothing to do'}"

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'document': self.document_name,
            'success': self.success,
            'cancelled': self.cancelled,
            'nodes': [self._nodes[i].to_dict() for i in sorted(self._nodes)],
            'outputs': dict(self.outputs),
        }
        if self.dry_run:
            d['dry_run'] = True
        if self.missing_outputs:
            d['missing_outputs'] = list(self.missing_outputs)
        if self.started_at and self.completed_at:
            d['duration_seconds'] = round(self.completed_at - self.started_at, 2)
        return d

    def save(self, path: Path) -> Path:
        """Save report to a JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.debug(f"Saved run report to {path}")
        return path
