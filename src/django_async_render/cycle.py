import asyncio
import math
import time
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional

from django_async_render.app_settings import app_settings
from django_async_render.context import _running_cycle
from django_async_render.errors import MissingProgressDeclaration, RenderInterrupted
from django_async_render.events import EventBus, EventHandler, RenderEvent
from django_async_render.progress import ProgressCandidate, ProgressScheduler
from django_async_render.signals import cycle_cancelled, cycle_settled, cycle_started
from django_async_render.types import AsyncBody, EventName
from django_async_render.util.logger import trace_cycle_msg
from django_async_render.util.misc import freeze_props, gen_cycle_id, get_name, is_awaitable
from django_async_render.util.weakref import target_ref


class CycleState(str, Enum):
    INITIAL = "initial"
    RERENDERING = "rerendering"
    RUNNING = "running"
    SUSPENDED = "suspended"
    RESOLVED = "resolved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


SETTLED_STATES: FrozenSet[CycleState] = frozenset({CycleState.RESOLVED, CycleState.REJECTED})
TERMINAL_STATES: FrozenSet[CycleState] = SETTLED_STATES | {CycleState.CANCELLED}

# Which states may follow which. States are never re-entered.
_TRANSITIONS: Dict[CycleState, FrozenSet[CycleState]] = {
    CycleState.INITIAL: frozenset({CycleState.RUNNING, CycleState.RESOLVED, CycleState.CANCELLED}),
    CycleState.RERENDERING: frozenset({CycleState.RUNNING, CycleState.CANCELLED}),
    CycleState.RUNNING: frozenset(
        {CycleState.SUSPENDED, CycleState.RESOLVED, CycleState.REJECTED, CycleState.CANCELLED},
    ),
    CycleState.SUSPENDED: frozenset({CycleState.RESOLVED, CycleState.REJECTED, CycleState.CANCELLED}),
    CycleState.RESOLVED: frozenset(),
    CycleState.REJECTED: frozenset(),
    CycleState.CANCELLED: frozenset(),
}

_NOTHING = object()

RerunCallback = Callable[["RenderCycle"], None]


class RenderCycle:
    """
    A single asynchronous rendering attempt of a view instance.

    The cycle runs the view's async body, collects the progress output that the body
    stages while it's waiting, and tells the view what it should display at any moment:

    1. The final output, once the body resolved.
    2. Otherwise the latest progress candidate that may already be shown,
       as decided by the [`ProgressScheduler`](#django_async_render.ProgressScheduler).
    3. Otherwise the output the view showed before this cycle started (stale-while-revalidate).
    4. Otherwise `None`.

    Whenever that answer changes (a progress candidate became displayable, the body
    settled), the cycle asks for the view to be invoked again via `request_rerun`.

    Cycles are created by the [`InstanceRegistry`](#django_async_render.InstanceRegistry),
    which also makes sure that there is only one live cycle per view instance.

    **Example:**

    ```python
    async def body(props):
        cycle.show("<p>Loading...</p>", "initial")
        user = await fetch_user(props["id"])
        return f"<p>{user.name}</p>"

    cycle = RenderCycle(body, {"id": 1})
    cycle.run(body, cycle.props)
    cycle.current_output()  # "<p>Loading...</p>"
    ```
    """

    def __init__(
        self,
        identity: Any,
        props: Optional[Mapping[str, Any]] = None,
        *,
        target: Any = None,
        previous: Optional["RenderCycle"] = None,
        prev_props: Optional[Mapping[str, Any]] = None,
        show_progress: bool = True,
        delay_empty: Optional[float] = None,
        delay_rendered: Optional[float] = None,
        request_rerun: Optional[RerunCallback] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.id = gen_cycle_id()
        self.identity = identity
        self.props = freeze_props(props)
        self.prev_props = prev_props
        self.show_progress = show_progress
        self.mounted = False
        self.clock = clock
        self.started_at = clock()

        self.progress_log: List[ProgressCandidate] = []
        self.scheduler = ProgressScheduler(delay_empty, delay_rendered)
        self.events = EventBus()

        # Keep showing what the previous cycle showed, unless it failed.
        self.rerendering = previous is not None
        if previous is not None and previous.state is not CycleState.REJECTED:
            self.prior_output = previous.last_output
        else:
            self.prior_output = None
        # Whether a final output was rendered before. What is shown may still be just
        # a progress placeholder of a superseded cycle, which is not rendered content.
        self.has_prior_final = previous is not None and (
            previous.state is CycleState.RESOLVED
            or (previous.state is CycleState.CANCELLED and previous.has_prior_final)
        )
        self.last_output: Any = self.prior_output

        self.state = CycleState.RERENDERING if self.rerendering else CycleState.INITIAL

        self._target = target_ref(target)
        self._request_rerun = request_rerun
        self._final: Any = _NOTHING
        self._error: Optional[BaseException] = None
        self._task: Optional["asyncio.Future[Any]"] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._synchronous = False
        self._progress_displayed = False

    def __repr__(self) -> str:
        return f"<RenderCycle {self.id} {self.name} state={self.state.value}>"

    @property
    def name(self) -> str:
        return get_name(self.identity)

    @property
    def target(self) -> Any:
        return self._target()

    @property
    def has_prior_output(self) -> bool:
        """Whether the view already shows a final output, so progress waits for `delay_rendered`."""
        return self.has_prior_final

    @property
    def final_output(self) -> Any:
        return None if self._final is _NOTHING else self._final

    @property
    def deferred_error(self) -> Optional[BaseException]:
        return self._error

    def elapsed(self) -> float:
        """Milliseconds since the cycle was created."""
        return (self.clock() - self.started_at) * 1000

    ##########################
    # State queries
    ##########################

    def has_ended(self) -> bool:
        return self.state in TERMINAL_STATES

    def has_settled(self) -> bool:
        return self.state in SETTLED_STATES

    def is_cancelled(self) -> bool:
        """
        Cooperative cancellation check. The async body may poll this to abandon work early.
        """
        return self.state is CycleState.CANCELLED

    def is_rerendering(self) -> bool:
        """Whether this cycle replaced an earlier cycle of the same view instance."""
        return self.rerendering

    def check(self) -> None:
        """Raise `RenderInterrupted` if the cycle has been cancelled."""
        if self.is_cancelled():
            raise RenderInterrupted(f"Render cycle {self.id} of '{self.name}' was cancelled")

    ##########################
    # Progress
    ##########################

    def stage(self, value: Any, label: Optional[str] = None) -> None:
        """
        Stage a progress candidate, to be displayed while the body is still running.

        `label` may be `"initial"` to display the candidate immediately if the view has
        nothing on screen yet, or `"always"` to display it immediately in any case.
        Candidates without a label are displayed only once the progress delay passed.
        """
        if self.has_ended():
            return

        self.progress_log.append(ProgressCandidate(value=value, label=label, timestamp=self.clock()))
        self._dispatch("progress")
        self._on_progress_staged(rerun=not self._synchronous)

    show = stage

    def progress_for(self, label: str) -> Any:
        """Return the latest progress value staged with given label, or `None`."""
        for candidate in reversed(self.progress_log):
            if candidate.label == label:
                return candidate.value
        return None

    def set_delays(self, delay_empty: Optional[float] = None, delay_rendered: Optional[float] = None) -> None:
        """
        Set after how many milliseconds the progress may be displayed.

        - `delay_empty` applies when the view has nothing on screen yet.
        - `delay_rendered` applies when the view already shows a previous output.

        `None` leaves the delay unchanged. Once a progress candidate has been displayed,
        the delays are fixed and further calls are ignored.
        """
        if self._progress_displayed or self.has_ended():
            return

        self.scheduler.set_delays(delay_empty, delay_rendered)

        if self.state is CycleState.SUSPENDED:
            self._clear_timer()
            self._on_progress_staged(rerun=True)

    delay = set_delays

    ##########################
    # Events
    ##########################

    def subscribe(self, name: str, handler: EventHandler) -> None:
        """
        Listen to events of this cycle. `name` is either `"progress"` or `"complete"`.

        - `progress` is dispatched each time the body stages a progress candidate.
        - `complete` is dispatched once, when the body resolves or rejects.
        """
        self.events.subscribe(name, handler)

    on = subscribe

    ##########################
    # Output
    ##########################

    def current_output(self) -> Any:
        if self.state is CycleState.RESOLVED:
            output = self._final
        elif self.state in TERMINAL_STATES:
            # Rejected cycles are re-raised by the caller, and cancelled cycles
            # shouldn't be asked anymore. Either way, keep what was last shown.
            return self.last_output
        else:
            candidate = None
            if self.show_progress:
                candidate = self.scheduler.select(self.progress_log, self.elapsed(), self.has_prior_output)
            if candidate is not None:
                self._progress_displayed = True
                output = candidate.value
            else:
                output = self.prior_output

        self.last_output = output
        return output

    def current_error(self) -> Optional[BaseException]:
        return self._error

    ##########################
    # Running
    ##########################

    def run(self, body: AsyncBody, *args: Any, **kwargs: Any) -> None:
        """
        Call the async body and run it up to its first suspension point.

        Any error raised before the body suspends is captured the same way as
        if the body had failed asynchronously. It is NOT raised from here.

        If the body returns a coroutine, it is run as an eagerly started `asyncio.Task`,
        so this has to be called from within a running event loop. Bodies that
        return a plain value resolve right away.
        """
        if self.state not in (CycleState.INITIAL, CycleState.RERENDERING):
            return

        self._transition(CycleState.RUNNING)
        cycle_started.send(sender=self.identity, cycle=self)

        self._synchronous = True
        try:
            self._run_synchronous(body, args, kwargs)
        finally:
            self._synchronous = False

    def _run_synchronous(self, body: AsyncBody, args: Any, kwargs: Any) -> None:
        # The body (and the task created from it) sees this cycle as the current one
        token = _running_cycle.set(self)
        try:
            result = body(*args, **kwargs)
            if is_awaitable(result):
                self._task = _start_task(result, name=f"async-render-{self.id}")
        except Exception as err:
            self._reject(err)
            return
        finally:
            _running_cycle.reset(token)

        task = self._task
        if task is None:
            self._resolve(result)
            return

        # Cancelled while the body was running, e.g. the view was removed
        if self.has_ended():
            task.add_done_callback(_consume_result)
            return

        if task.done():
            self._on_task_done(task)
            return

        self._transition(CycleState.SUSPENDED)

        if self.show_progress and not self.progress_log and app_settings.REQUIRE_PROGRESS:
            # The rest of the body still runs, but its result is discarded
            task.add_done_callback(_consume_result)
            self._reject(MissingProgressDeclaration(self.name))
            return

        task.add_done_callback(self._on_task_done)
        self._on_progress_staged(rerun=False)

    async def settled(self) -> Any:
        """
        Wait until the cycle settles. Return the final output, or raise the deferred error.

        Raises `RenderInterrupted` if the cycle was cancelled.
        """
        task = self._task
        if task is not None and self.state is CycleState.SUSPENDED:
            await asyncio.wait([task])
            # Our done callback may be scheduled but not yet called
            self._on_task_done(task)

        if self.is_cancelled():
            raise RenderInterrupted(f"Render cycle {self.id} of '{self.name}' was cancelled")
        if self._error is not None:
            raise self._error
        return self.final_output

    def cancel(self) -> None:
        """
        Cancel the cycle. The body's eventual result is discarded, no more events
        are dispatched and no more re-invocations are requested.

        Does nothing if the cycle has already ended.
        """
        if self.has_ended():
            return

        self._clear_timer()
        self._transition(CycleState.CANCELLED)
        self.events.close()
        cycle_cancelled.send(sender=self.identity, cycle=self)

    def resolve_from_seed(self, result: Any) -> None:
        """Skip the async body entirely, using a precomputed result as the final output."""
        self._final = result
        self._transition(CycleState.RESOLVED)
        self.last_output = result
        cycle_settled.send(sender=self.identity, cycle=self)

    ##########################
    # Internal
    ##########################

    def _on_task_done(self, task: "asyncio.Future[Any]") -> None:
        if self.has_ended():
            _consume_result(task)
            return

        if task.cancelled():
            trace_cycle_msg("TASK_CANCELLED", self.name, self.id, self.state.value)
            self.cancel()
            return

        error = task.exception()
        if error is not None:
            self._reject(error)
        else:
            self._resolve(task.result())

    def _resolve(self, value: Any) -> None:
        # Returning nothing means "keep showing what was shown last"
        if value is None:
            value = self.progress_log[-1].value if self.progress_log else self.prior_output
        self._settle(CycleState.RESOLVED, value=value)

    def _reject(self, error: BaseException) -> None:
        self._settle(CycleState.REJECTED, error=error)

    def _settle(self, state: CycleState, value: Any = None, error: Optional[BaseException] = None) -> None:
        if self.has_ended():
            return

        self._clear_timer()
        if state is CycleState.REJECTED:
            self._error = error
        else:
            self._final = value

        self._transition(state, extra=f"error: {error!r}" if error is not None else "")
        # Errors raised by `complete` handlers or signal receivers propagate to whoever
        # settled the cycle, but the view must still be re-invoked with the result.
        try:
            self._dispatch("complete")
        finally:
            self.events.close()
            try:
                cycle_settled.send(sender=self.identity, cycle=self)
            finally:
                # If we're still inside `run()`, the caller reads the result directly
                if not self._synchronous:
                    self._request()

    def _on_progress_staged(self, rerun: bool) -> None:
        if not self.show_progress or self.state is not CycleState.SUSPENDED or not self.progress_log:
            return

        elapsed = self.elapsed()
        latest = self.progress_log[-1]
        if self.scheduler.is_eligible(elapsed, self.has_prior_output, latest.label):
            if rerun:
                self._request()
            return

        if self._timer is not None:
            return

        wait = self.scheduler.eligible_in(elapsed, self.has_prior_output)
        if math.isinf(wait):
            return

        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(wait / 1000, self._on_progress_timer)
        trace_cycle_msg("TIMER_SET", self.name, self.id, self.state.value, extra=f"in {wait:.1f} ms")

    def _on_progress_timer(self) -> None:
        self._timer = None
        if self.state is not CycleState.SUSPENDED:
            return
        trace_cycle_msg("TIMER_FIRED", self.name, self.id, self.state.value, extra=f"after {self.elapsed():.1f} ms")
        # Timers may fire a little early, in which case this sets a new one
        self._on_progress_staged(rerun=True)

    def _clear_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _request(self) -> None:
        if self.is_cancelled() or self._request_rerun is None:
            return
        self._request_rerun(self)

    def _dispatch(self, event_type: EventName) -> None:
        if self.events.closed or not self.events.has_handlers(event_type):
            return
        self.events.dispatch(RenderEvent(type=event_type, target=self.target, elapsed=self.elapsed()))

    def _transition(self, state: CycleState, extra: str = "") -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Render cycle {self.id} of '{self.name}' cannot go from '{self.state.value}' to '{state.value}'"
            )
        trace_cycle_msg(f"CYCLE_{state.name}", self.name, self.id, self.state.value, extra=extra)
        self.state = state


def _start_task(awaitable: Any, name: str) -> "asyncio.Future[Any]":
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        if asyncio.iscoroutine(awaitable):
            # Avoid "coroutine was never awaited" warning
            awaitable.close()
        raise

    if asyncio.iscoroutine(awaitable):
        # Eager start runs the coroutine right here, up to its first real suspension point.
        return asyncio.Task(awaitable, loop=loop, name=name, eager_start=True)
    return asyncio.ensure_future(awaitable, loop=loop)


def _consume_result(task: "asyncio.Future[Any]") -> None:
    # Retrieve the exception of a discarded task, so asyncio doesn't log it as never retrieved
    if not task.cancelled():
        task.exception()
