"""Reconciliation facade: build -> diff -> plan -> execute -> outputs.

The document is handed in explicitly and threaded through every stage;
nothing is read from ambient process state.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

from config import EngineSettings, get_state_dir, load_settings
from document import Document
from reconciler.differ import DiffEntry, Differ
from reconciler.executor import Executor
from reconciler.graph import ResourceGraph
from reconciler.outputs import resolve_outputs
from reconciler.planner import ExecutionPlan, Planner, format_plan
from reconciler.providers import ProviderRegistry
from reconciler.report import NodeStatus, RunReport
from reconciler.state import StateStore

logger = logging.getLogger(__name__)


@dataclass
class Reconciler:
    """Runs the reconciliation pipeline for one document.

    Attributes:
        document: Desired-state document
        registry: Capability table for applying resources
        store: State Store (default: .states/<document> or settings.state_dir)
        settings: Engine settings (default: config file merged with the
            document's settings block)
    """
    document: Document
    registry: ProviderRegistry
    store: Optional[StateStore] = None
    settings: Optional[EngineSettings] = None
    _graph: Optional[ResourceGraph] = field(default=None, init=False, repr=False)
    _cancel: threading.Event = field(default_factory=threading.Event, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.settings is None:
            self.settings = load_settings(overrides=self.document.settings)
        if self.store is None:
            self.store = StateStore(get_state_dir(self.document.name, self.settings))
        if self.document.replace_on:
            self.registry.declare_replacements(self.document.replace_on)

    def build(self) -> ResourceGraph:
        """Build (once) and return the validated graph."""
        if self._graph is None:
            self._graph = ResourceGraph(self.document)
        return self._graph

    def diff(self, destroy: bool = False) -> list[DiffEntry]:
        graph = self.build()
        snapshot = self.store.snapshot()
        return Differ(graph, self.registry).diff(snapshot, destroy_all=destroy)

    def plan(self, destroy: bool = False) -> ExecutionPlan:
        """Build, diff and plan without touching the backend."""
        plan = Planner(self.build()).plan(self.diff(destroy=destroy))
        c = plan.counts()
        logger.info(f"Plan for '{self.document.name}': {c['create']} to create, "
                    f"{c['update']} to update, {c['replace']} to replace, "
                    f"{c['destroy']} to destroy ({len(plan.batches)} batches)")
        return plan

    def apply(self, dry_run: bool = False, destroy: bool = False) -> RunReport:
        """Converge actual state onto the document.

        Args:
            dry_run: Print the plan and stop before any backend call
            destroy: Tear down every stored resource instead

        Raises:
            BuildError, PlanInfeasible, StoreError: Fatal errors, raised
                before (or, for StoreError, instead of) further mutation
        """
        plan = self.plan(destroy=destroy)
        report = RunReport(self.document.name)

        if dry_run:
            print(format_plan(plan, self.document.name))
            report.dry_run = True
            for entry in plan.noops:
                report.node(entry.identity).status = NodeStatus.NOOP
            return report

        if plan.is_empty:
            logger.info(f"'{self.document.name}' is up to date")

        executor = Executor(
            graph=self.build(),
            store=self.store,
            registry=self.registry,
            settings=self.settings,
            cancel_event=self._cancel,
        )
        report = executor.execute(plan, report)

        if not destroy:
            report.outputs, report.missing_outputs = resolve_outputs(
                self.document.outputs, self.store, report)
            for name in report.missing_outputs:
                logger.warning(f"Output '{name}' could not be resolved")
        return report

    def destroy(self, dry_run: bool = False) -> RunReport:
        """Destroy every stored resource, dependents first."""
        return self.apply(dry_run=dry_run, destroy=True)

    def cancel(self) -> None:
        """Cooperatively cancel a running apply between batches."""
        logger.info("Cancellation requested")
        self._cancel.set()

    def outputs(self) -> dict:
        """Resolve outputs from stored state without running anything."""
        resolved, _ = resolve_outputs(self.document.outputs, self.store)
        return resolved
