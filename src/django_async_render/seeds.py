from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, List, Optional, Union

from django_async_render.errors import SeedValidationError
from django_async_render.util.logger import trace
from django_async_render.util.misc import freeze_props, get_name

SEED_KEYS = ("identity", "props", "result")

_MISSING = object()


@dataclass(frozen=True)
class Seed:
    """
    A precomputed result, planted so the first render of a matching view
    can use it instead of running the async body (hydration).

    - `identity` - The view class or async function that produced the result
    - `props` - The props the result was rendered with
    - `result` - The rendered output
    """

    identity: Any
    props: Mapping
    result: Any


SeedLike = Union[Seed, Mapping[str, Any]]


class SeedStore:
    """
    Pool of planted seeds.

    Seeds are matched by identity first. Among the seeds of the same identity, the one
    whose props share the most equal values with the requested props wins.
    Ties go to the seed that was planted first. A seed is consumed by the first match.

    ```python
    store = SeedStore()
    store.plant([{"identity": UserCard, "props": {"id": 1}, "result": "<div>Jane</div>"}])

    store.take(UserCard, {"id": 1, "compact": True})  # Seed(..., result="<div>Jane</div>")
    store.take(UserCard, {"id": 1})  # None
    ```
    """

    def __init__(self) -> None:
        self._seeds: List[Seed] = []

    def __len__(self) -> int:
        return len(self._seeds)

    def __bool__(self) -> bool:
        return bool(self._seeds)

    def plant(self, entries: Iterable[SeedLike], append: bool = False) -> None:
        """
        Replace the planted seeds with `entries`, or add them to the existing ones if `append=True`.

        Each entry is either a [`Seed`](#django_async_render.Seed) or a dict with
        the keys `identity`, `props` and `result`.

        Raises `SeedValidationError` if `entries` is not a well-formed collection of seeds.
        In that case the store is left unchanged.
        """
        if isinstance(entries, (str, bytes, Mapping)) or not isinstance(entries, Iterable):
            raise SeedValidationError(
                f"Seeds must be a list of entries with keys {', '.join(SEED_KEYS)}, got {type(entries).__name__}"
            )

        seeds = [_to_seed(entry, index) for index, entry in enumerate(entries)]
        if append:
            self._seeds.extend(seeds)
        else:
            self._seeds = seeds

        trace(f"ASYNC_RENDER - SEEDS_PLANTED - {len(seeds)} seed(s), {len(self._seeds)} in total")

    def take(self, identity: Any, props: Optional[Mapping] = None) -> Optional[Seed]:
        """
        Find the planted seed closest to the given identity and props, remove it from
        the store and return it. Returns `None` if no seed matches.
        """
        props = props or {}
        best_index = -1
        best_score = -1
        for index, seed in enumerate(self._seeds):
            if seed.identity is not identity:
                continue
            # Props don't round-trip as the same objects, so we only count
            # the keys whose values are equal.
            score = sum(1 for key, value in props.items() if seed.props.get(key, _MISSING) == value)
            if score > best_score:
                best_index = index
                best_score = score

        if best_index == -1:
            return None

        seed = self._seeds.pop(best_index)
        trace(f"ASYNC_RENDER - SEED_TAKEN - {get_name(identity)} - matched {best_score} prop(s)")
        return seed

    def clear(self) -> None:
        self._seeds.clear()


def _to_seed(entry: SeedLike, index: int) -> Seed:
    if isinstance(entry, Seed):
        if not isinstance(entry.props, Mapping):
            raise SeedValidationError(
                f"Props of seed at index {index} must be a dict, got {type(entry.props).__name__}"
            )
        return entry

    if not isinstance(entry, Mapping):
        raise SeedValidationError(f"Seed at index {index} must be a Seed or a dict, got {type(entry).__name__}")

    missing = [key for key in SEED_KEYS if key not in entry]
    if missing:
        raise SeedValidationError(f"Seed at index {index} is missing key(s): {', '.join(missing)}")

    props = entry["props"]
    if props is None:
        props = {}
    if not isinstance(props, Mapping):
        raise SeedValidationError(f"Props of seed at index {index} must be a dict, got {type(props).__name__}")

    return Seed(identity=entry["identity"], props=freeze_props(props), result=entry["result"])
