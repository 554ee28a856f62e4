from contextlib import contextmanager
from typing import Generator, List


@contextmanager
def with_view_error_message(view_path: List[str]) -> Generator[None, None, None]:
    """
    Re-raise any exception raised within the block with the view path
    prepended to its message.

    Views can render other views, so the same error may pass through
    several of these blocks. Each block prepends its own part of the path.
    """
    try:
        yield
    except Exception as err:
        set_view_error_message(err, view_path)
        raise err from None


def set_view_error_message(err: Exception, view_path: List[str]) -> None:
    # Remember which views the error has passed through, so the message
    # can be rebuilt when the error bubbles up through a parent view.
    views: List[str] = getattr(err, "_async_views", [])
    has_prefix = bool(views)
    views = [*view_path, *views]
    err._async_views = views  # type: ignore[attr-defined]

    # Format view path as
    # "MyPage > UserList > UserCard"
    path = " > ".join(views)

    # Access the exception's message, see https://stackoverflow.com/a/75549200/9788634
    if len(err.args) and err.args[0] is not None:
        orig_msg = str(err.args[0])
        if has_prefix:
            orig_msg = orig_msg.split("\n", 1)[-1]
    else:
        orig_msg = str(err)

    err.args = (f"An error occured while rendering views {path}:\n{orig_msg}", *err.args[1:])
