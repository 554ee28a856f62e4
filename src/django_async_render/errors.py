class AsyncRenderError(Exception):
    """Base class for errors raised by django_async_render."""


class MissingProgressDeclaration(AsyncRenderError, RuntimeError):
    """
    Raised when an async body suspends before it staged any progress output.

    The body must always stage something displayable (even if empty) before
    its first `await`, so the view has something to show in the meantime.
    """

    def __init__(self, view_name: str):
        self.view_name = view_name
        super().__init__(
            f"View '{view_name}' suspended without declaring interim output. "
            "Call `cycle.show()` (or `show` from `use_progress()`) before the first `await`."
        )


class RenderInterrupted(AsyncRenderError):
    """Raised by `RenderCycle.check()` once the cycle has been cancelled."""


class SeedValidationError(AsyncRenderError, ValueError):
    """Raised by `SeedStore.plant()` when given a malformed collection of seeds."""
