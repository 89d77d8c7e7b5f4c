"""Desired vs actual state comparison.

Classifies every graph node (and every stored resource missing from the
graph) as create, update, destroy or no-op. Nodes are visited producers
first so that a consumer's references can be judged against what will
happen to its producers:

- producer unchanged: the reference resolves to the producer's stored value
- producer created or replaced: the reference is unknown (assumed changed)
- producer updated: unknown only if the update touches the referenced
  top-level attribute

A node whose producer is being replaced is replaced as well, so that it
releases the old producer before that producer is destroyed.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from common import UNKNOWN, ResourceId
from document import Reference
from reconciler.graph import ResourceGraph, ResourceNode
from reconciler.providers import Action, ProviderRegistry
from reconciler.resolve import contains_unknown, resolve_from_store, resolve_value
from reconciler.state import ActualState

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass(frozen=True)
class AttributeChange:
    """Old and new value of one top-level attribute."""
    old: Any
    new: Any
    forces_replacement: bool = False

    @property
    def unknown(self) -> bool:
        return contains_unknown(self.new)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'old': None if self.old is _MISSING else self.old,
            'new': '(known after apply)' if self.unknown else self.new,
        }
        if self.forces_replacement:
            d['forces_replacement'] = True
        return d


@dataclass
class DiffEntry:
    """Classification of one resource.

    A replacement appears as two entries for the same identity, a DESTROY
    and a CREATE, both with replacement=True.

    Attributes:
        identity: Resource identity
        action: CREATE, UPDATE, DESTROY or NOOP
        changes: Attribute-level changes (UPDATE and replacement CREATE)
        replacement: Part of a destroy-then-create pair
        prior: Stored state at diff time, if any
        index: Declaration index; None for resources no longer declared
    """
    identity: ResourceId
    action: Action
    changes: dict[str, AttributeChange] = field(default_factory=dict)
    replacement: bool = False
    prior: Optional[ActualState] = None
    index: Optional[int] = None

    @property
    def key(self) -> tuple[ResourceId, Action]:
        return (self.identity, self.action)

    @property
    def is_noop(self) -> bool:
        return self.action is Action.NOOP

    @property
    def declared(self) -> bool:
        return self.index is not None

    def sort_key(self) -> tuple:
        """Declared resources in document order, then removed ones by identity."""
        if self.index is not None:
            return (0, self.index, '', '')
        return (1, 0, self.identity.type, self.identity.name)

    def describe(self) -> str:
        label = self.action.value
        if self.replacement:
            label += ' (replace)'
        return f'{label} {self.identity}'

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'resource': str(self.identity),
            'action': self.action.value,
        }
        if self.replacement:
            d['replacement'] = True
        if self.changes:
            d['changes'] = {k: c.to_dict() for k, c in self.changes.items()}
        return d


class Differ:
    """Compares a ResourceGraph against a state snapshot."""

    def __init__(self, graph: ResourceGraph, registry: ProviderRegistry):
        self.graph = graph
        self.registry = registry

    def diff(self, snapshot: dict[ResourceId, ActualState],
             destroy_all: bool = False) -> list[DiffEntry]:
        """Produce one entry per node (two for replacements) plus one
        DESTROY per stored resource absent from the graph.

        Args:
            snapshot: Stored state keyed by identity
            destroy_all: Classify every stored resource as DESTROY (teardown)
        """
        if destroy_all:
            entries = self._diff_teardown(snapshot)
        else:
            entries = self._diff_nodes(snapshot)

        for identity in sorted(snapshot):
            if identity not in self.graph:
                entries.append(DiffEntry(identity, Action.DESTROY, prior=snapshot[identity]))

        entries.sort(key=lambda e: (e.sort_key(), e.action is not Action.DESTROY))
        counts: dict[str, int] = {}
        for entry in entries:
            counts[entry.action.value] = counts.get(entry.action.value, 0) + 1
        logger.debug(f"Diff for '{self.graph.document.name}': {counts}")
        return entries

    def _diff_teardown(self, snapshot: dict[ResourceId, ActualState]) -> list[DiffEntry]:
        entries = []
        for node in self.graph.nodes:
            prior = snapshot.get(node.identity)
            action = Action.DESTROY if prior is not None else Action.NOOP
            entries.append(DiffEntry(node.identity, action, prior=prior, index=node.index))
        return entries

    def _diff_nodes(self, snapshot: dict[ResourceId, ActualState]) -> list[DiffEntry]:
        planned: dict[ResourceId, DiffEntry] = {}
        entries: list[DiffEntry] = []

        def _lookup(ref: Reference) -> Any:
            producer = planned[ref.target]
            if producer.action is Action.CREATE:
                return UNKNOWN
            if producer.action is Action.UPDATE and ref.root_attribute in producer.changes:
                return UNKNOWN
            return resolve_from_store(ref, snapshot.get(ref.target))

        for node in self.graph.topological_order():
            prior = snapshot.get(node.identity)
            if prior is None:
                entry = DiffEntry(node.identity, Action.CREATE, index=node.index,
                                  changes=self._changes(node, None, _lookup))
                planned[node.identity] = entry
                entries.append(entry)
                continue

            changes = self._changes(node, prior, _lookup)
            replaced_producers = sorted(
                str(p) for p in self.graph.dependencies_of(node.identity) if planned[p].replacement
            )
            forced = sorted(k for k, c in changes.items() if c.forces_replacement)
            if replaced_producers or forced:
                reasons = forced + [f'replaced {p}' for p in replaced_producers]
                logger.debug(f"{node.identity} requires replacement ({', '.join(reasons)})")
                entries.append(DiffEntry(node.identity, Action.DESTROY, replacement=True,
                                         prior=prior, index=node.index))
                entry = DiffEntry(node.identity, Action.CREATE, changes=changes,
                                  replacement=True, prior=prior, index=node.index)
            elif not changes:
                entry = DiffEntry(node.identity, Action.NOOP, prior=prior, index=node.index)
            else:
                entry = DiffEntry(node.identity, Action.UPDATE, changes=changes,
                                  prior=prior, index=node.index)
            planned[node.identity] = entry
            entries.append(entry)

        return entries

    def _changes(self, node: ResourceNode, prior: Optional[ActualState],
                 lookup) -> dict[str, AttributeChange]:
        kind = self.registry.kind_for(node.type)
        changes: dict[str, AttributeChange] = {}
        for key, desired in node.attributes.items():
            resolved = resolve_value(desired, lookup)
            old = prior.attributes.get(key, _MISSING) if prior is not None else _MISSING
            if prior is None:
                changes[key] = AttributeChange(old, resolved)
                continue
            if contains_unknown(resolved) or old is _MISSING \
                    or not kind.comparator(key, resolved, old):
                changes[key] = AttributeChange(old, resolved, kind.forces_replacement(key))

        # Attributes dropped from the document since the last apply
        if prior is not None and prior.desired_keys:
            for key in prior.desired_keys:
                if key not in node.attributes:
                    old = prior.attributes.get(key, _MISSING)
                    changes[key] = AttributeChange(old, None, kind.forces_replacement(key))
        return changes
