import functools
import inspect
from contextlib import contextmanager
from typing import Any, Callable, Dict, Generator, Optional, TypeVar, Union, overload

from django.test import override_settings

from django_async_render.registry import InstanceRegistry, set_default_registry
from django_async_render.seeds import SeedStore

T = TypeVar("T", bound=Union[Callable, type])


@contextmanager
def isolated_render_state(
    django_settings: Optional[Dict[str, Any]] = None,
) -> Generator[InstanceRegistry, None, None]:
    """
    Swap the default registry (and its seed store) for fresh ones for the duration
    of the block, optionally overriding Django settings too.

    Yields the fresh registry.
    """
    registry = InstanceRegistry(seeds=SeedStore())
    previous = set_default_registry(registry)
    try:
        if django_settings:
            with override_settings(**django_settings):
                yield registry
        else:
            yield registry
    finally:
        set_default_registry(previous)


@overload
def async_render_test(obj: T) -> T: ...


@overload
def async_render_test(
    obj: None = None,
    *,
    django_settings: Optional[Dict[str, Any]] = None,
) -> Callable[[T], T]: ...


def async_render_test(
    obj: Optional[T] = None,
    *,
    django_settings: Optional[Dict[str, Any]] = None,
) -> Union[T, Callable[[T], T]]:
    """
    Decorator for tests that render views.

    Each decorated test runs with its own default `InstanceRegistry` and `SeedStore`,
    so that cycles and seeds don't leak between tests.

    Can be applied to test functions (sync or async), or to test classes,
    in which case all methods starting with `test` are decorated.

    **Example:**

    ```python
    @async_render_test(
        django_settings={
            "ASYNC_RENDER": {"DELAY_EMPTY": 0},
        },
    )
    class TestUserCard:
        async def test_shows_progress(self):
            ...
    ```
    """

    def decorator(target: T) -> T:
        if isinstance(target, type):
            for name, attr in list(vars(target).items()):
                if name.startswith("test") and callable(attr):
                    setattr(target, name, decorator(attr))
            return target

        func = target

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                with isolated_render_state(django_settings):
                    return await func(*args, **kwargs)

            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            with isolated_render_state(django_settings):
                return func(*args, **kwargs)

        return wrapper  # type: ignore[return-value]

    if obj is not None:
        return decorator(obj)
    return decorator
