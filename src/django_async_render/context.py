from contextvars import ContextVar
from typing import TYPE_CHECKING, Optional, Tuple

if TYPE_CHECKING:
    from django_async_render.cycle import RenderCycle


# We want to know which render cycle the code is currently running in, so that hooks like
# `use_progress()` don't have to be passed the cycle explicitly.
#
# There are two ways code may find itself "inside" a cycle:
#
# 1. Synchronously, between `InstanceRegistry.acquire()` and `InstanceRegistry.close()`.
#    Views may render other views, so acquisitions are kept as a stack. The stack is an
#    immutable tuple, so that copies of the context (e.g. the one taken by `asyncio.Task`)
#    are not affected when the invocation finishes and the entry is popped.
#
# 2. Inside the async body itself. The body runs as an `asyncio.Task`, which takes a copy
#    of the context when it's created. We set `_running_cycle` right before that, so the
#    body sees its own cycle even after it resumed from an `await`.
_open_cycles: ContextVar[Tuple["RenderCycle", ...]] = ContextVar("async_render_open_cycles", default=())
_running_cycle: ContextVar[Optional["RenderCycle"]] = ContextVar("async_render_running_cycle", default=None)


def current_cycle() -> "RenderCycle":
    """
    Return the render cycle of the view that is currently being rendered.

    Raises `RuntimeError` when called outside of a view's render or async body.
    """
    cycle = _running_cycle.get()
    if cycle is not None:
        return cycle

    stack = _open_cycles.get()
    if stack:
        return stack[-1]

    raise RuntimeError(
        "No render cycle is active. Hooks like `use_progress()` may be called only "
        "while a view is being rendered."
    )
