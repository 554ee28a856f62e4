import inspect
from typing import Any, Callable, Dict, Optional, TypeVar
from weakref import ReferenceType, WeakMethod, finalize, ref

GLOBAL_REFS: Dict[int, ReferenceType] = {}


T = TypeVar("T")


def cached_ref(obj: T) -> ReferenceType[T]:
    """
    Same as `weakref.ref()`, creating a weak reference to a given object.
    But unlike `weakref.ref()`, this function also caches the result,
    so it returns the same reference for the same object.
    """
    key = id(obj)
    existing = GLOBAL_REFS.get(key)
    if existing is not None and existing() is obj:
        return existing

    GLOBAL_REFS[key] = ref(obj)

    # Remove this entry from GLOBAL_REFS when the object is deleted.
    finalize(obj, GLOBAL_REFS.pop, key, None)

    return GLOBAL_REFS[key]


def target_ref(obj: Optional[T]) -> Callable[[], Optional[T]]:
    """
    Reference to the view instance that owns a render cycle.

    Cycles outlive neither their instance nor their slot, so they keep only
    a weak reference when the object supports it. Objects that can't be weakly
    referenced (e.g. plain `object()` or builtins) are held strongly.
    """
    if obj is None:
        return _none
    try:
        return cached_ref(obj)
    except TypeError:
        return lambda: obj


def _none() -> Any:
    return None


def weak_callback(fn: Callable[..., Any]) -> Callable[..., Any]:
    """
    Wrap a callback so that, if it's a bound method, it doesn't keep its object alive.

    Once the object is garbage collected, calling the wrapper does nothing.
    Other callables are returned as they are.
    """
    if not inspect.ismethod(fn):
        return fn

    method_ref = WeakMethod(fn)

    def call(*args: Any, **kwargs: Any) -> Any:
        method = method_ref()
        if method is None:
            return None
        return method(*args, **kwargs)

    return call
