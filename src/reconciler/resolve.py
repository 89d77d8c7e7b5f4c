"""Reference resolution against actual state."""

from typing import Any, Callable, Optional

from common import UNKNOWN
from document import Reference
from reconciler.state import ActualState

Lookup = Callable[[Reference], Any]


def state_view(state: ActualState) -> dict[str, Any]:
    """Attributes as seen by references: observed attributes plus 'id'."""
    view = {'id': state.resource_id}
    view.update(state.attributes)
    return view


def lookup_path(value: Any, path: list[str]) -> Any:
    """Walk a dotted attribute path through mappings and lists.

    Raises:
        KeyError: If any segment is missing (list segments must be
            non-negative integers within range)
    """
    for segment in path:
        if isinstance(value, dict):
            if segment not in value:
                raise KeyError(segment)
            value = value[segment]
        elif isinstance(value, list):
            if not (segment.isascii() and segment.isdigit()) or int(segment) >= len(value):
                raise KeyError(segment)
            value = value[int(segment)]
        else:
            raise KeyError(segment)
    return value


def resolve_value(value: Any, lookup: Lookup) -> Any:
    """Replace every Reference in value with lookup(ref)."""
    if isinstance(value, Reference):
        return lookup(value)
    if isinstance(value, dict):
        return {k: resolve_value(v, lookup) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_value(v, lookup) for v in value]
    return value


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False


def resolve_from_store(ref: Reference, state: Optional[ActualState]) -> Any:
    """Resolve a reference from a producer's stored state, UNKNOWN if absent."""
    if state is None:
        return UNKNOWN
    try:
        return lookup_path(state_view(state), ref.path)
    except KeyError:
        return UNKNOWN
