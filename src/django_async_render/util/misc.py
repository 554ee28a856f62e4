import inspect
from itertools import count
from types import MappingProxyType
from typing import Any, Mapping, Optional

CYCLE_ID_PREFIX = "c"

_id_counter = count(1)

# Values of these types are compared by equality when deciding whether two
# sets of props describe the same render. Anything else must be the same object.
IMMUTABLE_SCALARS = (str, bytes, int, float, complex, bool, type(None), tuple, frozenset)


def gen_cycle_id() -> str:
    """Generate a short ID that identifies a single render cycle, e.g. `c1a`."""
    return f"{CYCLE_ID_PREFIX}{next(_id_counter):x}"


def freeze_props(props: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    """Make a read-only snapshot of the props, so later edits by the caller don't leak in."""
    return MappingProxyType(dict(props or {}))


def is_same_value(a: Any, b: Any) -> bool:
    if a is b:
        return True
    if isinstance(a, IMMUTABLE_SCALARS) and type(a) is type(b):
        return a == b
    return False


def props_equal(a: Optional[Mapping[str, Any]], b: Optional[Mapping[str, Any]]) -> bool:
    """Shallow comparison of two props mappings."""
    if a is b:
        return True
    if a is None or b is None:
        return False
    if a.keys() != b.keys():
        return False
    return all(is_same_value(a[key], b[key]) for key in a)


def is_awaitable(obj: Any) -> bool:
    return inspect.isawaitable(obj)


def get_name(obj: Any) -> str:
    return getattr(obj, "__qualname__", None) or getattr(obj, "__name__", None) or type(obj).__name__
