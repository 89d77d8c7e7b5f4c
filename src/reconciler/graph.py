"""Resource graph for desired-state reconciliation.

Builds a dependency DAG from a Document: one ResourceNode per declaration,
plus ReferenceEdges for every reference and depends_on entry. Nodes live in
an arena keyed by identity; edges are indexed in both directions.
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterator, Mapping, Optional

from common import CyclicDependency, DuplicateIdentity, ResourceId, UnresolvedReference
from document import Document, Reference, iter_references

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReferenceEdge:
    """Dependency of a consuming node on a producing node.

    Attributes:
        consumer: Node holding the reference
        producer: Node being referenced
        attribute: Attribute path borrowed (None for depends_on edges)
    """
    consumer: ResourceId
    producer: ResourceId
    attribute: Optional[str] = None

    def __str__(self) -> str:
        borrowed = f' ({self.attribute})' if self.attribute else ''
        return f'{self.consumer} -> {self.producer}{borrowed}'


@dataclass(frozen=True)
class ResourceNode:
    """A declared resource with its outgoing edges.

    Attributes:
        identity: (type, name)
        attributes: Desired attributes, read-only; values may hold References
        edges: Outgoing edges to producers, in discovery order
        index: Declaration position in the document
    """
    identity: ResourceId
    attributes: Mapping[str, Any]
    edges: tuple[ReferenceEdge, ...] = ()
    index: int = 0

    @property
    def type(self) -> str:
        return self.identity.type

    @property
    def name(self) -> str:
        return self.identity.name

    @property
    def references(self) -> list[Reference]:
        return list(iter_references(dict(self.attributes)))

    def __repr__(self) -> str:
        return f"ResourceNode({self.identity}, edges={len(self.edges)})"


class ResourceGraph:
    """Validated dependency graph built from a Document.

    Raises on construction:
        DuplicateIdentity: Two declarations share (type, name)
        UnresolvedReference: A reference, depends_on or output names no node
        CyclicDependency: Edges form a cycle
    """

    def __init__(self, document: Document):
        self.document = document
        self._nodes: dict[ResourceId, ResourceNode] = {}
        self._dependencies: dict[ResourceId, list[ResourceId]] = {}
        self._dependents: dict[ResourceId, list[ResourceId]] = {}
        self._build(document)

    def _build(self, document: Document) -> None:
        seen: dict[ResourceId, int] = {}
        for decl in document.resources:
            if decl.identity in seen:
                raise DuplicateIdentity(decl.identity, seen[decl.identity], decl.index)
            seen[decl.identity] = decl.index

        for decl in document.resources:
            edges: list[ReferenceEdge] = []
            for ref in iter_references(decl.attributes):
                if ref.target not in seen:
                    raise UnresolvedReference(str(decl.identity), ref.target, f"attribute {ref}")
                edges.append(ReferenceEdge(decl.identity, ref.target, ref.attribute))
            for target in decl.depends_on:
                if target not in seen:
                    raise UnresolvedReference(str(decl.identity), target, 'depends_on')
                edges.append(ReferenceEdge(decl.identity, target))

            self._nodes[decl.identity] = ResourceNode(
                identity=decl.identity,
                attributes=MappingProxyType(dict(decl.attributes)),
                edges=tuple(edges),
                index=decl.index,
            )

        for identity in self._nodes:
            self._dependencies[identity] = []
            self._dependents[identity] = []
        for node in self._nodes.values():
            for edge in node.edges:
                if edge.producer not in self._dependencies[edge.consumer]:
                    self._dependencies[edge.consumer].append(edge.producer)
                    self._dependents[edge.producer].append(edge.consumer)

        for out_name, ref in document.outputs.items():
            if ref.target not in self._nodes:
                raise UnresolvedReference(f'output {out_name}', ref.target)

        self._check_cycles()
        logger.debug(f"Built graph for '{document.name}': "
                     f"{len(self._nodes)} nodes, {len(self.edges)} edges")

    def _check_cycles(self) -> None:
        """Depth-first traversal with an explicit path stack."""
        visited: set[ResourceId] = set()

        for root in self._nodes:
            if root in visited:
                continue
            visited.add(root)
            path: list[ResourceId] = [root]
            on_path: set[ResourceId] = {root}
            pending: list[Iterator[ResourceId]] = [iter(self._dependencies[root])]

            while pending:
                producer = next(pending[-1], None)
                if producer is None:
                    pending.pop()
                    on_path.discard(path.pop())
                    continue
                if producer in on_path:
                    start = path.index(producer)
                    raise CyclicDependency(path[start:] + [producer])
                if producer not in visited:
                    visited.add(producer)
                    path.append(producer)
                    on_path.add(producer)
                    pending.append(iter(self._dependencies[producer]))

    @property
    def nodes(self) -> list[ResourceNode]:
        """Nodes in declaration order."""
        return sorted(self._nodes.values(), key=lambda n: n.index)

    @property
    def edges(self) -> list[ReferenceEdge]:
        return [edge for node in self.nodes for edge in node.edges]

    @property
    def outputs(self) -> dict[str, Reference]:
        return dict(self.document.outputs)

    def get_node(self, identity: ResourceId) -> ResourceNode:
        """Get a node by identity.

        Raises:
            KeyError: If identity not in graph
        """
        return self._nodes[identity]

    def dependencies_of(self, identity: ResourceId) -> list[ResourceId]:
        """Producers this node depends on (direct only)."""
        return list(self._dependencies[identity])

    def dependents_of(self, identity: ResourceId) -> list[ResourceId]:
        """Consumers depending on this node (direct only)."""
        return list(self._dependents[identity])

    def topological_order(self) -> list[ResourceNode]:
        """Producers before consumers; ties broken by declaration order."""
        remaining = {i: len(deps) for i, deps in self._dependencies.items()}
        ready = sorted((i for i, n in remaining.items() if n == 0),
                       key=lambda i: self._nodes[i].index)
        ordered: list[ResourceNode] = []
        while ready:
            identity = ready.pop(0)
            ordered.append(self._nodes[identity])
            for consumer in self._dependents[identity]:
                remaining[consumer] -= 1
                if remaining[consumer] == 0:
                    ready.append(consumer)
            ready.sort(key=lambda i: self._nodes[i].index)
        return ordered

    def __contains__(self, identity: object) -> bool:
        return identity in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self.nodes)
