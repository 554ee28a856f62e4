import math
from numbers import Real
from typing import Any, Dict

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

SETTINGS_NAME = "ASYNC_RENDER"

DEFAULT_DELAY_EMPTY = 50
DEFAULT_DELAY_RENDERED = math.inf


class AsyncRenderSettings:
    """
    Read-only access to the `ASYNC_RENDER` Django setting.

    ```python
    # settings.py
    ASYNC_RENDER = {
        # Show progress of a view that has nothing on screen after 50 ms
        "DELAY_EMPTY": 50,
        # Never replace already rendered content with progress
        "DELAY_RENDERED": math.inf,
        # Raise if an async body suspends without staging progress first
        "REQUIRE_PROGRESS": True,
    }
    ```

    Values are read on every access, so `override_settings()` takes effect immediately.
    """

    @property
    def _settings(self) -> Dict[str, Any]:
        # Allow to use the cycles outside of a configured Django project
        if not settings.configured:
            return {}
        data = getattr(settings, SETTINGS_NAME, None) or {}
        if not isinstance(data, dict):
            raise ImproperlyConfigured(f"Setting '{SETTINGS_NAME}' must be a dict, got {type(data).__name__}")
        return data

    @property
    def DELAY_EMPTY(self) -> float:
        return self._get_delay("DELAY_EMPTY", DEFAULT_DELAY_EMPTY)

    @property
    def DELAY_RENDERED(self) -> float:
        return self._get_delay("DELAY_RENDERED", DEFAULT_DELAY_RENDERED)

    @property
    def REQUIRE_PROGRESS(self) -> bool:
        value = self._settings.get("REQUIRE_PROGRESS", True)
        if not isinstance(value, bool):
            raise ImproperlyConfigured(
                f"Setting '{SETTINGS_NAME}.REQUIRE_PROGRESS' must be a bool, got {value!r}"
            )
        return value

    def _get_delay(self, key: str, default: float) -> float:
        value = self._settings.get(key, default)
        # NOTE: `None` is accepted as "use the default", same as when the key is missing
        if value is None:
            return default
        if isinstance(value, bool) or not isinstance(value, Real) or math.isnan(value) or value < 0:
            raise ImproperlyConfigured(
                f"Setting '{SETTINGS_NAME}.{key}' must be a non-negative number of milliseconds, got {value!r}"
            )
        return float(value)


app_settings = AsyncRenderSettings()
