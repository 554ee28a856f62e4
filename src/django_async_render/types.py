"""Helper types for IDEs."""

from typing import Any, Awaitable, Callable, Literal, Mapping, Union

Props = Mapping[str, Any]

# The async body of a view: takes the inputs and eventually produces the output.
# It may also return the output directly, in which case it resolves synchronously.
AsyncBody = Callable[..., Union[Awaitable[Any], Any]]

EventName = Literal["progress", "complete"]
