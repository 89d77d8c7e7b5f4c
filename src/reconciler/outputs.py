"""Document outputs, resolved from actual state after a run."""

import logging
from typing import Any, Optional

from common import UNKNOWN
from document import Reference
from reconciler.report import RunReport
from reconciler.resolve import resolve_from_store
from reconciler.state import StateStore

logger = logging.getLogger(__name__)


def resolve_outputs(outputs: dict[str, Reference], store: StateStore,
                    report: Optional[RunReport] = None) -> tuple[dict[str, Any], list[str]]:
    """Resolve each output whose producer ended in a successful state.

    A producer absent from the report counts as unchanged. Outputs whose
    producer failed, was blocked or skipped, or whose attribute is absent
    from stored state, are returned as missing instead.

    Returns:
        (resolved, missing) where resolved maps output name -> value
    """
    resolved: dict[str, Any] = {}
    missing: list[str] = []
    for name, ref in outputs.items():
        if report is not None and ref.target in report.nodes:
            status = report.get(ref.target).status
            if not status.terminal_success:
                logger.debug(f"Output '{name}' unavailable: {ref.target} is {status.value}")
                missing.append(name)
                continue
        value = resolve_from_store(ref, store.get(ref.target))
        if value is UNKNOWN:
            missing.append(name)
            continue
        resolved[name] = value
    return resolved, missing
