import logging
import sys
from typing import Any, Dict, Optional

DEFAULT_TRACE_LEVEL_NUM = 5  # NOTE: MUST be lower than DEBUG which is 10

logger = logging.getLogger("django_async_render")
actual_trace_level_num = -1


def setup_logging() -> None:
    # Check if "TRACE" level was already defined. And if so, use its log level.
    # See https://docs.python.org/3/howto/logging.html#custom-levels
    global actual_trace_level_num
    log_levels = _get_log_levels()

    if "TRACE" in log_levels:
        actual_trace_level_num = log_levels["TRACE"]
    else:
        actual_trace_level_num = DEFAULT_TRACE_LEVEL_NUM
        logging.addLevelName(actual_trace_level_num, "TRACE")


def _get_log_levels() -> Dict[str, int]:
    # Use official API if possible
    if sys.version_info >= (3, 11):
        return logging.getLevelNamesMapping()
    else:
        return logging._nameToLevel.copy()


def trace(message: str, *args: Any, **kwargs: Any) -> None:
    """
    TRACE level logger.

    To display TRACE logs, set the logging level below 5.

    Example:
    ```py
    LOGGING = {
        "version": 1,
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "stream": sys.stdout,
            },
        },
        "loggers": {
            "django_async_render": {
                "level": 5,
                "handlers": ["console"],
            },
        },
    }
    ```
    """
    if actual_trace_level_num == -1:
        setup_logging()
    if logger.isEnabledFor(actual_trace_level_num):
        logger.log(actual_trace_level_num, message, *args, **kwargs)


def trace_cycle_msg(
    action: str,
    view_name: str,
    cycle_id: str,
    state: Optional[str] = None,
    extra: Optional[str] = "",
) -> None:
    """
    TRACE level logger with opinionated format for tracing the life of render cycles.

    Format:

    ```
    ASYNC_RENDER - ACTION - VIEW_NAME - CYCLE_ID - STATE - EXTRA
    ```

    Example:
    ```
    ASYNC_RENDER - CYCLE_SUSPENDED - UserCard - c1a2b3 - suspended - staged 1 progress candidate(s)
    ```
    """
    msg_parts = ["ASYNC_RENDER", action, view_name, cycle_id]
    if state is not None:
        msg_parts.append(state)
    if extra:
        msg_parts.append(extra)

    full_msg = " - ".join(msg_parts)

    trace(full_msg)
