"""Execution planning: order diff entries into dependency-respecting batches.

Every non-noop DiffEntry becomes a plan step. Steps are ordered by layered
Kahn topological sort; each batch holds the steps whose dependencies all sit
in earlier batches, so the steps of one batch may run concurrently.

Step dependencies:
- create/update of a consumer waits for create/update of its producers
  (carried through unchanged nodes)
- destroy of a resource waits for destroy of everything that depended on it
- destroy of a removed or replaced resource waits for create/update of
  surviving resources that recorded a dependency on it
- the create half of a replacement waits for its destroy half
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable

from common import PlanInfeasible, ResourceId
from reconciler.differ import DiffEntry
from reconciler.graph import ResourceGraph
from reconciler.providers import Action

logger = logging.getLogger(__name__)

StepKey = tuple[ResourceId, Action]


@dataclass
class ExecutionPlan:
    """Ordered batches of plan steps.

    Attributes:
        batches: Steps grouped for concurrent execution, in execution order
        dependencies: Step key -> keys of steps that must succeed first
        noops: Entries requiring no action
    """
    batches: list[list[DiffEntry]] = field(default_factory=list)
    dependencies: dict[StepKey, set[StepKey]] = field(default_factory=dict)
    noops: list[DiffEntry] = field(default_factory=list)

    @property
    def steps(self) -> list[DiffEntry]:
        return [entry for batch in self.batches for entry in batch]

    @property
    def is_empty(self) -> bool:
        return not self.batches

    def batch_index(self, key: StepKey) -> int:
        """Batch position of a step.

        Raises:
            KeyError: If no step has this key
        """
        for i, batch in enumerate(self.batches):
            if any(entry.key == key for entry in batch):
                return i
        raise KeyError(key)

    def counts(self) -> dict[str, int]:
        counts = {a.value: 0 for a in (Action.CREATE, Action.UPDATE, Action.DESTROY)}
        replaced = {e.identity for e in self.steps if e.replacement}
        for entry in self.steps:
            if not entry.replacement:
                counts[entry.action.value] += 1
        counts['replace'] = len(replaced)
        return counts

    def to_dict(self) -> dict:
        return {
            'batches': [[entry.to_dict() for entry in batch] for batch in self.batches],
            'summary': self.counts(),
        }


def format_plan(plan: ExecutionPlan, name: str = '') -> str:
    """Render a plan preview."""
    title = f"Plan for '{name}'" if name else 'Plan'
    lines = ['', f'{title}:', '']
    if plan.is_empty:
        lines.append('  No changes. Actual state matches desired state.')
    for i, batch in enumerate(plan.batches, 1):
        lines.append(f'  Batch {i}:')
        for entry in batch:
            marker = {'create': '+', 'update': '~', 'destroy': '-'}[entry.action.value]
            lines.append(f'    {marker} {entry.describe()}')
            for attr, change in sorted(entry.changes.items()):
                if entry.action is Action.UPDATE or change.forces_replacement:
                    d = change.to_dict()
                    suffix = '  # forces replacement' if change.forces_replacement else ''
                    lines.append(f"        {attr}: {d['old']!r} -> {d['new']!r}{suffix}")
    c = plan.counts()
    lines.append('')
    lines.append(f"  {c['create']} to create, {c['update']} to update, "
                 f"{c['replace']} to replace, {c['destroy']} to destroy.")
    lines.append('')
    return '\n'.join(lines)


class Planner:
    """Builds an ExecutionPlan from diff entries and the dependency graph."""

    def __init__(self, graph: ResourceGraph):
        self.graph = graph

    def plan(self, entries: Iterable[DiffEntry]) -> ExecutionPlan:
        """Order entries into batches.

        Raises:
            PlanInfeasible: If the step dependencies contain a cycle
        """
        entries = list(entries)
        steps = {e.key: e for e in entries if not e.is_noop}
        noops = [e for e in entries if e.is_noop]

        apply_side: dict[ResourceId, StepKey] = {}
        destroy_side: dict[ResourceId, StepKey] = {}
        for key, entry in steps.items():
            if entry.action is Action.DESTROY:
                destroy_side[entry.identity] = key
            else:
                apply_side[entry.identity] = key

        deps: dict[StepKey, set[StepKey]] = {key: set() for key in steps}

        # Producers' create/update before consumers' create/update.
        for identity, key in apply_side.items():
            for producer in self._nearest(identity, self._graph_dependencies, apply_side):
                deps[key].add(apply_side[producer])

        # Dependents destroyed before what they depended on.
        destroy_dependents = self._destroy_dependents(steps)
        for identity, key in destroy_side.items():
            for consumer in self._nearest(identity, destroy_dependents, destroy_side):
                deps[key].add(destroy_side[consumer])

        # Survivors migrate off a removed or replaced resource before it is
        # destroyed. Replaced dependents already release it in their destroy half.
        for identity, key in destroy_side.items():
            for survivor, survivor_key in apply_side.items():
                if survivor in destroy_side:
                    continue
                if identity in self._prior_dependencies(survivor, steps):
                    deps[key].add(survivor_key)

        # Replacement: destroy half before create half.
        for identity, key in apply_side.items():
            entry = steps[key]
            if entry.replacement and identity in destroy_side:
                deps[key].add(destroy_side[identity])

        batches = self._layer(steps, deps)
        plan = ExecutionPlan(batches=batches, dependencies=deps, noops=noops)
        logger.debug(f"Planned {len(steps)} steps in {len(batches)} batches "
                     f"({len(noops)} unchanged)")
        return plan

    def _graph_dependencies(self, identity: ResourceId) -> list[ResourceId]:
        if identity not in self.graph:
            return []
        return self.graph.dependencies_of(identity)

    def _recorded_dependencies(self, identity: ResourceId,
                               steps: dict[StepKey, DiffEntry]) -> set[ResourceId]:
        """Dependencies from the graph plus those recorded in stored state."""
        return set(self._graph_dependencies(identity)) | self._prior_dependencies(identity, steps)

    @staticmethod
    def _prior_dependencies(identity: ResourceId,
                            steps: dict[StepKey, DiffEntry]) -> set[ResourceId]:
        found: set[ResourceId] = set()
        for action in (Action.UPDATE, Action.CREATE, Action.DESTROY):
            entry = steps.get((identity, action))
            if entry is not None and entry.prior is not None:
                found.update(entry.prior.dependencies)
        return found

    def _destroy_dependents(self, steps: dict[StepKey, DiffEntry]) -> Callable[[ResourceId], list[ResourceId]]:
        """Reverse index of destroy-side dependencies."""
        dependents: dict[ResourceId, set[ResourceId]] = {}
        identities = {key[0] for key in steps} | {n.identity for n in self.graph.nodes}
        for identity in identities:
            for producer in self._recorded_dependencies(identity, steps):
                dependents.setdefault(producer, set()).add(identity)

        def _lookup(identity: ResourceId) -> list[ResourceId]:
            return sorted(dependents.get(identity, ()))
        return _lookup

    @staticmethod
    def _nearest(start: ResourceId,
                 neighbors: Callable[[ResourceId], list[ResourceId]],
                 targets: dict[ResourceId, StepKey]) -> set[ResourceId]:
        """Neighbours of start that own a step, walking through those that don't."""
        found: set[ResourceId] = set()
        seen = {start}
        pending = list(neighbors(start))
        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            if current in targets:
                found.add(current)
            else:
                pending.extend(neighbors(current))
        return found

    @staticmethod
    def _layer(steps: dict[StepKey, DiffEntry],
               deps: dict[StepKey, set[StepKey]]) -> list[list[DiffEntry]]:
        """Layered Kahn's algorithm with declaration-order tie breaking."""
        remaining = {key: len(d) for key, d in deps.items()}
        dependents: dict[StepKey, list[StepKey]] = {key: [] for key in steps}
        for key, d in deps.items():
            for dep in d:
                dependents[dep].append(key)

        def _order(key: StepKey) -> tuple:
            entry = steps[key]
            return (entry.sort_key(), entry.action is not Action.DESTROY)

        ready = sorted((k for k, n in remaining.items() if n == 0), key=_order)
        batches: list[list[DiffEntry]] = []
        placed = 0
        while ready:
            batches.append([steps[k] for k in ready])
            placed += len(ready)
            next_ready: list[StepKey] = []
            for key in ready:
                for dependent in dependents[key]:
                    remaining[dependent] -= 1
                    if remaining[dependent] == 0:
                        next_ready.append(dependent)
            ready = sorted(next_ready, key=_order)

        if placed != len(steps):
            stuck = [k for k, n in remaining.items() if n > 0]
            detail = ', '.join(sorted(f'{a.value} {i}' for i, a in stuck))
            raise PlanInfeasible([i for i, _ in stuck], f'residual cycle among {detail}')
        return batches
