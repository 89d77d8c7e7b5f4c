"""Plan execution against a provisioning backend.

Batches run one after another; the steps of a batch run concurrently on a
bounded worker pool. Each successful step is committed to the State Store on
its own, so a crash loses at most the steps that were in flight.

A failed step fails only its resource: steps that depend on it are blocked
and never dispatched, independent steps carry on. Cancellation is checked
between batches; steps already running are allowed to finish.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from common import UNKNOWN, ProviderError, ResourceId, StoreError
from config import EngineSettings
from document import Reference
from reconciler.differ import DiffEntry
from reconciler.graph import ResourceGraph
from reconciler.planner import ExecutionPlan, StepKey
from reconciler.providers import Action, ApplyResult, ProviderRegistry, ResourceKind
from reconciler.report import NodeResult, NodeStatus, RunReport
from reconciler.resolve import contains_unknown, resolve_from_store, resolve_value
from reconciler.state import ActualState, StateStore

logger = logging.getLogger(__name__)


@dataclass
class Executor:
    """Drives an ExecutionPlan to completion.

    Attributes:
        graph: Dependency graph the plan was built from
        store: State Store receiving each successful step
        registry: Capability table used to apply steps
        settings: Worker pool size and retry policy
        sleep: Delay function used between retries
        cancel_event: Set to stop dispatching further batches
    """
    graph: ResourceGraph
    store: StateStore
    registry: ProviderRegistry
    settings: EngineSettings = field(default_factory=EngineSettings)
    sleep: Callable[[float], None] = time.sleep
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    def cancel(self) -> None:
        """Request cancellation; takes effect before the next batch starts."""
        logger.info("Cancellation requested; finishing in-flight steps")
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def execute(self, plan: ExecutionPlan, report: Optional[RunReport] = None) -> RunReport:
        """Execute every batch of the plan.

        Returns:
            RunReport with a status per resource

        Raises:
            StoreError: If the State Store cannot be read or written mid-run
                (raised after in-flight steps of the current batch have ended)
        """
        if report is None:
            report = RunReport(self.graph.document.name)
        report.start()

        for entry in plan.noops:
            report.node(entry.identity).status = NodeStatus.NOOP

        outcome: dict[StepKey, NodeStatus] = {}
        fatal: Optional[StoreError] = None

        with ThreadPoolExecutor(max_workers=self.settings.max_workers,
                                thread_name_prefix='reconcile') as pool:
            for index, batch in enumerate(plan.batches):
                if fatal is not None or self.cancel_event.is_set():
                    self._skip(batch, outcome, report)
                    continue

                logger.info(f"Batch {index + 1}/{len(plan.batches)}: "
                            f"{', '.join(e.describe() for e in batch)}")

                runnable: list[DiffEntry] = []
                for entry in batch:
                    reason = self._blocked_reason(entry, plan, outcome)
                    if reason:
                        outcome[entry.key] = NodeStatus.BLOCKED
                        result = report.node(entry.identity)
                        if result.status is not NodeStatus.FAILED:
                            result.block(reason)
                        logger.warning(f"[{entry.action.value}] {entry.identity} blocked: {reason}")
                        continue
                    report.node(entry.identity)
                    runnable.append(entry)

                futures = {pool.submit(self._run_step, entry, report.node(entry.identity)): entry
                           for entry in runnable}
                for future in as_completed(futures):
                    entry = futures[future]
                    try:
                        outcome[entry.key] = future.result()
                    except StoreError as e:
                        logger.error(f"State store failure while applying {entry.identity}: {e}")
                        report.node(entry.identity).fail(str(e))
                        outcome[entry.key] = NodeStatus.FAILED
                        fatal = fatal or e
                    except Exception as e:
                        logger.exception(f"Unexpected error applying {entry.identity}")
                        report.node(entry.identity).fail(f"unexpected error: {e}")
                        outcome[entry.key] = NodeStatus.FAILED

        self._settle_replacements(plan, outcome, report)
        report.cancelled = self.cancel_event.is_set()
        report.finish()
        logger.info(report.summary())

        if fatal is not None:
            raise fatal
        return report

    def _skip(self, batch: list[DiffEntry], outcome: dict[StepKey, NodeStatus],
              report: RunReport) -> None:
        for entry in batch:
            outcome[entry.key] = NodeStatus.SKIPPED
            result = report.node(entry.identity)
            if result.status in (NodeStatus.PENDING, NodeStatus.SUCCEEDED):
                result.skip()

    @staticmethod
    def _blocked_reason(entry: DiffEntry, plan: ExecutionPlan,
                        outcome: dict[StepKey, NodeStatus]) -> str:
        for dep in sorted(plan.dependencies.get(entry.key, ()), key=lambda k: (k[0], k[1].value)):
            status = outcome.get(dep)
            if status is not NodeStatus.SUCCEEDED:
                identity, action = dep
                state = status.value if status is not None else 'not run'
                return f"dependency {action.value} {identity} {state}"
        return ''

    def _run_step(self, entry: DiffEntry, result: NodeResult) -> NodeStatus:
        identity = entry.identity
        result.start(entry.action.value)
        kind = self.registry.kind_for(identity.type)

        if entry.action is Action.DESTROY:
            attributes = dict(entry.prior.attributes) if entry.prior is not None else {}
        else:
            attributes, unresolved = self._resolve_desired(identity)
            if unresolved:
                message = f"unresolved reference(s) at apply time: {', '.join(unresolved)}"
                logger.error(f"[{entry.action.value}] {identity} failed: {message}")
                result.fail(message)
                return NodeStatus.FAILED

        logger.info(f"[{entry.action.value}] {identity}")
        try:
            assigned_id, observed = self._apply_with_retry(kind, entry, attributes, result)
        except ProviderError as e:
            logger.error(f"[{entry.action.value}] {identity} failed: {e}")
            result.fail(str(e))
            return NodeStatus.FAILED

        if entry.action is Action.DESTROY:
            self.store.delete(identity)
        else:
            if not assigned_id and entry.prior is not None and not entry.replacement:
                assigned_id = entry.prior.resource_id
            merged = dict(attributes)
            merged.update(observed)
            dependencies = self.graph.dependencies_of(identity) if identity in self.graph else []
            self.store.put(identity, ActualState(
                identity=identity,
                resource_id=assigned_id,
                attributes=merged,
                dependencies=dependencies,
                desired_keys=list(attributes),
            ))

        result.succeed()
        logger.info(f"[{entry.action.value}] {identity} done"
                    + (f" (id={assigned_id})" if entry.action is not Action.DESTROY else ''))
        return NodeStatus.SUCCEEDED

    def _resolve_desired(self, identity: ResourceId) -> tuple[dict[str, Any], list[str]]:
        """Resolve a node's desired attributes against persisted producer state."""
        unresolved: list[str] = []

        def _lookup(ref: Reference) -> Any:
            value = resolve_from_store(ref, self.store.get(ref.target))
            if value is UNKNOWN:
                unresolved.append(str(ref))
            return value

        node = self.graph.get_node(identity)
        resolved = {k: resolve_value(v, _lookup) for k, v in node.attributes.items()}
        if not unresolved and contains_unknown(resolved):
            unresolved.append('<unknown>')
        return resolved, unresolved

    def _apply_with_retry(self, kind: ResourceKind, entry: DiffEntry,
                          attributes: dict[str, Any], result: NodeResult) -> ApplyResult:
        """Call the backend, retrying retryable errors with exponential backoff.

        Raises:
            ProviderError: Permanent error, or retryable error on the last attempt
        """
        max_attempts = self.settings.max_attempts
        for attempt in range(1, max_attempts + 1):
            result.attempts += 1
            try:
                return kind.apply(entry.action, entry.identity, attributes)
            except ProviderError as e:
                if not e.retryable or attempt == max_attempts:
                    raise
                delay = self.settings.delay_for(attempt)
                logger.warning("[%s] %s attempt %d/%d failed (%s), retrying in %.1fs",
                               entry.action.value, entry.identity, attempt, max_attempts,
                               e.kind.value, delay)
                self.sleep(delay)
        raise AssertionError('unreachable')

    @staticmethod
    def _settle_replacements(plan: ExecutionPlan, outcome: dict[StepKey, NodeStatus],
                             report: RunReport) -> None:
        """A replacement whose old resource is gone but whose new one is not
        in place is a failure, whatever stopped the create half."""
        for entry in plan.steps:
            if not entry.replacement or entry.action is not Action.CREATE:
                continue
            destroyed = outcome.get((entry.identity, Action.DESTROY)) is NodeStatus.SUCCEEDED
            created = outcome.get(entry.key) is NodeStatus.SUCCEEDED
            if destroyed and not created:
                result = report.node(entry.identity)
                detail = result.error or (outcome.get(entry.key) or NodeStatus.PENDING).value
                result.fail(f"destroyed for replacement but not recreated: {detail}")
                logger.error(f"{entry.identity} destroyed for replacement but not recreated")
