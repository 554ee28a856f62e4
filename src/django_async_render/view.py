import asyncio
from typing import Any, Callable, ClassVar, Iterable, List, Mapping, Optional, Type, Union, overload

from django_async_render.cycle import RenderCycle
from django_async_render.registry import InstanceRegistry, get_default_registry
from django_async_render.seeds import Seed
from django_async_render.types import AsyncBody
from django_async_render.util.exception import with_view_error_message
from django_async_render.util.misc import freeze_props


class AsyncView:
    """
    A view instance whose output is produced by an async body.

    Subclasses implement `render_async()`. The host calls `render()` each time it
    needs the view's output. `render()` never blocks: it returns whatever should be
    displayed right now, and once that changes, the view is invoked again through
    `update()`, which stores the new `output` and calls `on_update`.

    **Example:**

    ```python
    class UserCard(AsyncView):
        delay_empty = 100

        async def render_async(self, cycle):
            cycle.show("<p>Loading...</p>", "initial")
            user = await fetch_user(self.props["id"])
            return f"<p>{user.name}</p>"

    card = UserCard({"id": 1}, on_update=lambda view: print(view.output))
    card.mount()  # Prints "<p>Loading...</p>", and later "<p>Jane</p>"
    ```
    """

    delay_empty: ClassVar[Optional[float]] = None
    """
    Milliseconds after which progress may replace an empty view.
    Defaults to the `ASYNC_RENDER["DELAY_EMPTY"]` setting.
    """

    delay_rendered: ClassVar[Optional[float]] = None
    """
    Milliseconds after which progress may replace the previously rendered output.
    Defaults to the `ASYNC_RENDER["DELAY_RENDERED"]` setting.
    """

    show_progress: ClassVar[bool] = True
    """Whether to display progress at all. If `False`, the body doesn't have to stage any."""

    def __init__(
        self,
        props: Optional[Mapping[str, Any]] = None,
        *,
        registry: Optional[InstanceRegistry] = None,
        on_update: Optional[Callable[["AsyncView"], Any]] = None,
    ):
        self.props = dict(props or {})
        self.registry = registry if registry is not None else get_default_registry()
        self.on_update = on_update
        self.output: Any = None
        self.error: Optional[Exception] = None
        self.mounted = False
        self.render_count = 0
        self._reported_error_cycle: Optional[str] = None

    def __repr__(self) -> str:
        return f"<{self.name} props={self.props!r}>"

    @classmethod
    def get_identity(cls) -> Any:
        """Identity under which the view's cycles are reused and seeds matched."""
        return cls

    @property
    def name(self) -> str:
        return type(self).__qualname__

    @property
    def cycle(self) -> Optional[RenderCycle]:
        return self.registry.get(self)

    async def render_async(self, cycle: RenderCycle) -> Any:
        raise NotImplementedError(f"{self.name} must implement `render_async()`")

    def render(self) -> Any:
        """
        Return the output to display now. Raises the error of the async body, if it failed.
        """
        with self.registry.invocation(
            self,
            self.get_identity(),
            self.props,
            trigger=self.update,
            target=self,
            show_progress=self.show_progress,
            delay_empty=self.delay_empty,
            delay_rendered=self.delay_rendered,
        ) as (cycle, fresh):
            if fresh:
                cycle.run(self._call_body, cycle)

        self.render_count += 1
        if self.mounted:
            self.registry.confirm_mounted(self)

        error = cycle.current_error()
        if error is not None:
            # Prefix the message only the first time we raise it, it's the same error object
            if self._reported_error_cycle == cycle.id:
                raise error
            self._reported_error_cycle = cycle.id
            with with_view_error_message([self.name]):
                raise error

        return cycle.current_output()

    def update(self) -> Any:
        """
        Invoke the view again, storing the result in `output`, or the raised error in `error`.

        This is the view's error boundary, so errors are not raised from here.
        """
        try:
            self.output = self.render()
            self.error = None
        except Exception as err:
            self.error = err

        if self.on_update is not None:
            self.on_update(self)
        return self.output

    def mount(self) -> Any:
        """Render the view for the first time, and confirm that it's been mounted."""
        output = self.update()
        self.mounted = True
        self.registry.confirm_mounted(self)
        return output

    def unmount(self) -> None:
        """Remove the view for good. Cancels its render cycle if still running."""
        self.mounted = False
        self.registry.release(self)

    def set_props(self, props: Mapping[str, Any]) -> Any:
        """Invoke the view with new props, as when its parent re-renders."""
        self.props = dict(props)
        return self.update()

    def refresh(self) -> Any:
        """Start a new render cycle even though the props didn't change, e.g. to retry after an error."""
        self.registry.invalidate(self, rerun=False)
        return self.update()

    async def prerender(self) -> Any:
        """
        Run the async body to completion without displaying any progress, and return
        its final output. If the body returns `None`, the last staged progress is used instead.

        The cycle used for this is not registered with the registry, so it doesn't
        affect the view's on-screen state. Use it to compute seeds, e.g. on the server.
        """
        cycle = RenderCycle(self.get_identity(), self.props, target=self, show_progress=False)
        cycle.run(self._call_body, cycle)
        return await cycle.settled()

    def _call_body(self, cycle: RenderCycle) -> Any:
        return self.render_async(cycle)


class FunctionView(AsyncView):
    """View whose async body is a plain function of the props. See `async_view()`."""

    body: ClassVar[AsyncBody]

    def _call_body(self, cycle: RenderCycle) -> Any:
        return type(self).body(cycle.props)


@overload
def async_view(func: AsyncBody) -> Type[FunctionView]: ...


@overload
def async_view(
    func: None = None,
    *,
    delay_empty: Optional[float] = None,
    delay_rendered: Optional[float] = None,
    show_progress: bool = True,
) -> Callable[[AsyncBody], Type[FunctionView]]: ...


def async_view(
    func: Optional[AsyncBody] = None,
    *,
    delay_empty: Optional[float] = None,
    delay_rendered: Optional[float] = None,
    show_progress: bool = True,
) -> Union[Type[FunctionView], Callable[[AsyncBody], Type[FunctionView]]]:
    """
    Turn an async function of props into a view class.

    Inside the function, use hooks like `use_progress()` to access the render cycle.

    ```python
    @async_view(delay_empty=100)
    async def UserCard(props):
        show, check, delay = use_progress()
        show("<p>Loading...</p>", "initial")
        user = await fetch_user(props["id"])
        return f"<p>{user.name}</p>"

    card = UserCard({"id": 1})
    ```
    """

    def decorator(func: AsyncBody) -> Type[FunctionView]:
        attrs = {
            "__module__": func.__module__,
            "__qualname__": getattr(func, "__qualname__", func.__name__),
            "__doc__": func.__doc__,
            "body": staticmethod(func),
            "delay_empty": delay_empty,
            "delay_rendered": delay_rendered,
            "show_progress": show_progress,
        }
        return type(func.__name__, (FunctionView,), attrs)

    if func is not None:
        return decorator(func)
    return decorator


async def collect_seeds(views: Iterable[AsyncView]) -> List[Seed]:
    """
    Prerender the given views concurrently and return their results as seeds.

    Plant the seeds with `plant()` in the interactive session, so that the first render
    of the same views uses these results instead of running the bodies again.
    """
    views = list(views)
    results = await asyncio.gather(*(view.prerender() for view in views))
    return [
        Seed(identity=view.get_identity(), props=freeze_props(view.props), result=result)
        for view, result in zip(views, results)
    ]
