import asyncio
import time
from contextlib import contextmanager
from contextvars import Token
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Generator, Iterable, Mapping, NamedTuple, Optional, Tuple
from weakref import WeakKeyDictionary

from django_async_render.context import _open_cycles
from django_async_render.cycle import RenderCycle
from django_async_render.seeds import SeedLike, SeedStore
from django_async_render.util.logger import trace_cycle_msg
from django_async_render.util.misc import get_name, props_equal
from django_async_render.util.weakref import weak_callback


@dataclass
class Slot:
    """Per-instance storage that owns at most one live render cycle."""

    cycle: Optional[RenderCycle] = None
    # Schedules another synchronous invocation of the view instance
    trigger: Optional[Callable[[], Any]] = None
    # Props of the last cycle that resolved or rejected
    completed_props: Optional[Mapping[str, Any]] = None
    # Force a new cycle on next acquisition, even if the props didn't change
    invalidated: bool = False
    # Re-invocation was requested before the instance confirmed it's mounted
    rerun_deferred: bool = False
    rerun_scheduled: bool = False
    released: bool = False
    open_token: Optional["Token[Tuple[RenderCycle, ...]]"] = None


class AcquireResult(NamedTuple):
    cycle: RenderCycle
    fresh: bool
    """
    `True` if the cycle was just created and the caller should run the async body.
    `False` if an existing cycle was reused (or it was resolved from a seed).
    """


class InstanceRegistry:
    """
    Keeps track of the render cycle of each view instance.

    On each invocation of a view, the view calls `acquire()` (or uses `invocation()`).
    The registry then either:

    - Reuses the current cycle, if the view was invoked with the same identity and props.
    - Or cancels the current cycle (if still running), and creates a new one.

    The first cycle of an instance may be resolved right away from a planted seed.

    When a cycle wants the view to be invoked again (its output changed),
    the registry calls the trigger that the view passed to `acquire()`.
    Multiple requests within the same event loop iteration result in a single call.

    **Example:**

    ```python
    registry = InstanceRegistry()

    with registry.invocation(view, UserCard, props, trigger=view.update) as (cycle, fresh):
        if fresh:
            cycle.run(body, props)

    output = cycle.current_output()
    ```
    """

    def __init__(
        self,
        seeds: Optional[SeedStore] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.seeds = seeds if seeds is not None else SeedStore()
        self.clock = clock
        # Keyed weakly by the view instance, so slots of forgotten instances don't pile up.
        self._slots: "WeakKeyDictionary[Any, Slot]" = WeakKeyDictionary()

    def __len__(self) -> int:
        return len(self._slots)

    def __contains__(self, slot_key: Any) -> bool:
        return slot_key in self._slots

    def get(self, slot_key: Any) -> Optional[RenderCycle]:
        slot = self._slots.get(slot_key)
        return slot.cycle if slot is not None else None

    def acquire(
        self,
        slot_key: Any,
        identity: Any,
        props: Optional[Mapping[str, Any]] = None,
        *,
        trigger: Optional[Callable[[], Any]] = None,
        target: Any = None,
        show_progress: bool = True,
        delay_empty: Optional[float] = None,
        delay_rendered: Optional[float] = None,
    ) -> AcquireResult:
        """
        Return the live cycle for the given slot, creating a new one if needed.

        The acquisition stays open until `close()` is called. While open, hooks
        like `use_progress()` resolve to the acquired cycle.

        `slot_key` is usually the view instance. Slots are held only as long as their key
        is alive, so the key must support weak references. Plain strings or numbers don't.

        Raises `RuntimeError` if an acquisition for the same slot is already open.
        Raises `TypeError` if `slot_key` can't be weakly referenced.
        """
        props = props or {}
        try:
            slot = self._slots.get(slot_key)
        except TypeError:
            raise TypeError(
                f"Render slot key must support weak references, e.g. a view instance. Got {type(slot_key).__name__}"
            ) from None
        if slot is None:
            slot = self._slots[slot_key] = Slot()
        elif slot.open_token is not None:
            raise RuntimeError(f"Render cycle of '{get_name(identity)}' is already being acquired (nested invocation)")

        if trigger is not None:
            slot.trigger = weak_callback(trigger)

        cycle = slot.cycle
        if (
            cycle is None
            or cycle.is_cancelled()
            or slot.invalidated
            or cycle.identity is not identity
            or not props_equal(cycle.props, props)
        ):
            cycle = self._replace(
                slot,
                identity,
                props,
                target=target,
                show_progress=show_progress,
                delay_empty=delay_empty,
                delay_rendered=delay_rendered,
            )
            # Cycles resolved from a seed have nothing to run
            fresh = not cycle.has_ended()
        else:
            fresh = False

        slot.open_token = _open_cycles.set((*_open_cycles.get(), cycle))
        return AcquireResult(cycle, fresh)

    def close(self, slot_key: Any) -> None:
        """Close the acquisition opened by `acquire()`. Call once the invocation completed."""
        slot = self._slots.get(slot_key)
        if slot is None or slot.open_token is None:
            return
        _open_cycles.reset(slot.open_token)
        slot.open_token = None

    @contextmanager
    def invocation(
        self,
        slot_key: Any,
        identity: Any,
        props: Optional[Mapping[str, Any]] = None,
        **kwargs: Any,
    ) -> Generator[AcquireResult, None, None]:
        """Same as `acquire()`, but closes the acquisition when leaving the block."""
        result = self.acquire(slot_key, identity, props, **kwargs)
        try:
            yield result
        finally:
            self.close(slot_key)

    def confirm_mounted(self, slot_key: Any) -> None:
        """
        Mark the current cycle as mounted. Call after the view instance was committed.

        Re-invocations requested by the cycle before it was mounted are deferred until now.
        """
        slot = self._slots.get(slot_key)
        if slot is None or slot.cycle is None or slot.cycle.mounted:
            return

        slot.cycle.mounted = True
        if slot.rerun_deferred:
            slot.rerun_deferred = False
            if not slot.cycle.is_cancelled():
                self._schedule_rerun(slot)

    def release(self, slot_key: Any) -> None:
        """Cancel the live cycle of a view instance that was permanently removed, and forget the slot."""
        slot = self._slots.pop(slot_key, None)
        if slot is None:
            return

        slot.released = True
        if slot.open_token is not None:
            _open_cycles.reset(slot.open_token)
            slot.open_token = None
        if slot.cycle is not None:
            trace_cycle_msg("SLOT_RELEASED", slot.cycle.name, slot.cycle.id, slot.cycle.state.value)
            slot.cycle.cancel()

    def invalidate(self, slot_key: Any, rerun: bool = True) -> None:
        """
        Make the next acquisition start a new cycle, even if the props are the same.

        If `rerun=True`, also request a re-invocation of the view.
        """
        slot = self._slots.get(slot_key)
        if slot is None:
            return
        slot.invalidated = True
        if rerun:
            self._schedule_rerun(slot)

    def plant(self, entries: Iterable[SeedLike], append: bool = False) -> None:
        self.seeds.plant(entries, append=append)

    def _replace(
        self,
        slot: Slot,
        identity: Any,
        props: Mapping[str, Any],
        target: Any,
        show_progress: bool,
        delay_empty: Optional[float],
        delay_rendered: Optional[float],
    ) -> RenderCycle:
        previous = slot.cycle
        if previous is not None:
            if previous.has_settled():
                slot.completed_props = previous.props
            previous.cancel()

        cycle = RenderCycle(
            identity,
            props,
            target=target,
            previous=previous,
            prev_props=slot.completed_props,
            show_progress=show_progress,
            delay_empty=delay_empty,
            delay_rendered=delay_rendered,
            request_rerun=partial(self._request_rerun, slot),
            clock=self.clock,
        )
        slot.cycle = cycle
        slot.invalidated = False
        slot.rerun_deferred = False

        # Only the very first render of an instance may be hydrated
        if previous is None:
            seed = self.seeds.take(identity, props)
            if seed is not None:
                cycle.resolve_from_seed(seed.result)

        trace_cycle_msg(
            "CYCLE_CREATED",
            cycle.name,
            cycle.id,
            cycle.state.value,
            extra=f"replaces {previous.id}" if previous is not None else "",
        )
        return cycle

    def _request_rerun(self, slot: Slot, cycle: RenderCycle) -> None:
        # Guard against callbacks of cycles that were superseded in the meantime
        if slot.released or slot.cycle is not cycle or cycle.is_cancelled():
            trace_cycle_msg("RERUN_IGNORED", cycle.name, cycle.id, cycle.state.value, extra="stale cycle")
            return
        if not cycle.mounted:
            slot.rerun_deferred = True
            return
        self._schedule_rerun(slot)

    def _schedule_rerun(self, slot: Slot) -> None:
        if slot.rerun_scheduled or slot.trigger is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop, so nothing will settle asynchronously either.
            # The next invocation will pick up the change.
            return
        slot.rerun_scheduled = True
        loop.call_soon(self._rerun, slot)

    def _rerun(self, slot: Slot) -> None:
        slot.rerun_scheduled = False
        if slot.released or slot.trigger is None:
            return
        if slot.cycle is not None:
            trace_cycle_msg("RERUN", slot.cycle.name, slot.cycle.id, slot.cycle.state.value)
        slot.trigger()


_default_registry = InstanceRegistry()


def get_default_registry() -> InstanceRegistry:
    """Registry used by views that weren't given one explicitly."""
    return _default_registry


def set_default_registry(registry: InstanceRegistry) -> InstanceRegistry:
    """Replace the default registry, returning the previous one."""
    global _default_registry
    previous = _default_registry
    _default_registry = registry
    return previous


def get_default_seed_store() -> SeedStore:
    return _default_registry.seeds


def plant(entries: Iterable[SeedLike], append: bool = False) -> None:
    """
    Plant seeds into the default registry's seed store, so that first renders
    of matching views use the precomputed results.

    ```python
    from django_async_render import plant

    plant([{"identity": UserCard, "props": {"id": 1}, "result": "<p>Jane</p>"}])
    ```
    """
    get_default_seed_store().plant(entries, append=append)
