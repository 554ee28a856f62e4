from typing import Callable, Optional, Tuple

from django_async_render.context import current_cycle
from django_async_render.events import EventHandler
from django_async_render.types import Props

ShowFn = Callable[..., None]
CheckFn = Callable[[], None]
DelayFn = Callable[..., None]


def use_progress(
    delay_empty: Optional[float] = None,
    delay_rendered: Optional[float] = None,
) -> Tuple[ShowFn, CheckFn, DelayFn]:
    """
    Access the progress functions of the render cycle that's currently running.

    Returns a tuple of `(show, check, delay)`:

    - `show(value, label=None)` - Stage a progress candidate
    - `check()` - Raise `RenderInterrupted` if the cycle was cancelled
    - `delay(delay_empty, delay_rendered)` - Change the progress delays

    ```python
    @async_view
    async def UserCard(props):
        show, check, delay = use_progress(delay_empty=100)

        show("<p>Loading...</p>", "initial")
        user = await fetch_user(props["id"])
        check()
        return f"<p>{user.name}</p>"
    ```
    """
    cycle = current_cycle()
    cycle.set_delays(delay_empty, delay_rendered)
    return cycle.stage, cycle.check, cycle.set_delays


def use_render_event(name: str, handler: EventHandler) -> None:
    """Listen to `"progress"` or `"complete"` events of the current render cycle."""
    cycle = current_cycle()
    cycle.subscribe(name, handler)


def use_previous_props() -> Optional[Props]:
    """Props of the last render cycle of this view that ran to completion, or `None`."""
    cycle = current_cycle()
    return cycle.prev_props
