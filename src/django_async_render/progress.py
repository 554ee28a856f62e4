import math
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from django_async_render.app_settings import app_settings

# Candidate with this label is shown immediately if the view has nothing on screen yet
LABEL_INITIAL = "initial"
# Candidate with this label is shown immediately, even over previously rendered content
LABEL_ALWAYS = "always"


@dataclass(frozen=True)
class ProgressCandidate:
    """Interim output staged by an async body before its final result is ready."""

    value: Any
    label: Optional[str] = None
    timestamp: float = field(default_factory=time.monotonic)


class ProgressScheduler:
    """
    Time policy that decides when a staged progress candidate may be displayed.

    The scheduler holds no reference to the cycle. Given the time elapsed since the cycle
    started and whether the view already shows a previous output, it answers
    whether a candidate is displayable now, and from when on it will be.

    - If the view has no prior output (first render, or the previous cycle failed),
      candidates become displayable after `delay_empty` ms (default 50).
    - If the view already shows a prior output (a rerender), candidates become
      displayable after `delay_rendered` ms (default infinity, meaning never).

    Since time only moves forward, a candidate once eligible stays eligible.

    **Example:**

    ```python
    scheduler = ProgressScheduler(delay_empty=200)
    scheduler.is_eligible(elapsed=150, has_prior_output=False)  # False
    scheduler.is_eligible(elapsed=250, has_prior_output=False)  # True
    scheduler.is_eligible(elapsed=0, has_prior_output=False, label="initial")  # True
    ```
    """

    def __init__(
        self,
        delay_empty: Optional[float] = None,
        delay_rendered: Optional[float] = None,
    ):
        self.delay_empty = app_settings.DELAY_EMPTY if delay_empty is None else _validate_delay(delay_empty)
        self.delay_rendered = (
            app_settings.DELAY_RENDERED if delay_rendered is None else _validate_delay(delay_rendered)
        )

    def __repr__(self) -> str:
        return f"ProgressScheduler(delay_empty={self.delay_empty!r}, delay_rendered={self.delay_rendered!r})"

    def set_delays(self, delay_empty: Optional[float] = None, delay_rendered: Optional[float] = None) -> None:
        if delay_empty is not None:
            self.delay_empty = _validate_delay(delay_empty)
        if delay_rendered is not None:
            self.delay_rendered = _validate_delay(delay_rendered)

    def delay_for(self, has_prior_output: bool) -> float:
        return self.delay_rendered if has_prior_output else self.delay_empty

    def is_eligible(self, elapsed: float, has_prior_output: bool, label: Optional[str] = None) -> bool:
        if label == LABEL_ALWAYS:
            return True
        if label == LABEL_INITIAL and not has_prior_output:
            return True
        return elapsed >= self.delay_for(has_prior_output)

    def eligible_in(self, elapsed: float, has_prior_output: bool) -> float:
        """
        Milliseconds until unlabeled candidates become displayable.

        Returns `0` if they already are, and `math.inf` if they never will be.
        """
        delay = self.delay_for(has_prior_output)
        if math.isinf(delay):
            return math.inf
        return max(0.0, delay - elapsed)

    def select(
        self,
        candidates: Sequence[ProgressCandidate],
        elapsed: float,
        has_prior_output: bool,
    ) -> Optional[ProgressCandidate]:
        """Return the latest candidate that may be displayed, or `None`."""
        for candidate in reversed(candidates):
            if self.is_eligible(elapsed, has_prior_output, candidate.label):
                return candidate
        return None


def _validate_delay(value: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value) or value < 0:
        raise ValueError(f"Progress delay must be a non-negative number of milliseconds, got {value!r}")
    return float(value)
