from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Generic, TypeAlias, TypeVar, Union

from api.models import LayerInfo
from engine.merge import merge_bbox_features
from engine.strategy import Strategy
from geo.features import FeatureCollection


@dataclass(frozen=True)
class LayerRuntimeState:
    """
    Per-layer, per-map-session record rendered by the map view.

    `visible`/`opacity` are the user's own choices; filter-driven overrides live in
    `OverrideMap`s next to this state and never mutate it.
    """

    id: int
    visible: bool = False
    opacity: float = 1.0
    geojson_data: FeatureCollection | None = None
    loading: bool = False
    strategy: Strategy | None = None
    limited_message: str | None = None
    # Per-layer error badge; stale data stays renderable.
    error: str | None = None
    layer_info: LayerInfo | None = None

    @property
    def feature_count(self) -> int:
        if not self.geojson_data:
            return 0
        return len(self.geojson_data.get("features") or [])


@dataclass(frozen=True)
class VisibilitySet:
    layer_id: int
    visible: bool


@dataclass(frozen=True)
class OpacitySet:
    layer_id: int
    opacity: float


@dataclass(frozen=True)
class LayerInfoLoaded:
    layer_id: int
    info: LayerInfo


@dataclass(frozen=True)
class StrategyChanged:
    layer_id: int
    strategy: Strategy


@dataclass(frozen=True)
class FetchStarted:
    layer_id: int
    strategy: Strategy


@dataclass(frozen=True)
class FetchResolved:
    layer_id: int
    strategy: Strategy
    geojson: FeatureCollection
    limited_message: str | None = None


@dataclass(frozen=True)
class FetchFailed:
    layer_id: int
    strategy: Strategy
    error: str


@dataclass(frozen=True)
class FetchCancelled:
    layer_id: int


LayerEvent: TypeAlias = Union[
    VisibilitySet,
    OpacitySet,
    LayerInfoLoaded,
    StrategyChanged,
    FetchStarted,
    FetchResolved,
    FetchFailed,
    FetchCancelled,
]


def clamp_opacity(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def reduce_layer_state(state: LayerRuntimeState, event: LayerEvent) -> LayerRuntimeState:
    """
    Apply one event to one layer's state. Pure: returns a new state.

    Fetch events carrying a strategy other than the current one are leftovers from a
    superseded strategy and leave the state untouched.
    """
    if isinstance(event, VisibilitySet):
        return replace(state, visible=bool(event.visible))

    if isinstance(event, OpacitySet):
        return replace(state, opacity=clamp_opacity(event.opacity))

    if isinstance(event, LayerInfoLoaded):
        return replace(state, layer_info=event.info)

    if isinstance(event, StrategyChanged):
        if event.strategy == state.strategy:
            return state
        # Data fetched under the previous strategy is not comparable (a bbox working set
        # must not be merged into a full download or an intersection result).
        return replace(
            state,
            strategy=event.strategy,
            geojson_data=None,
            limited_message=None,
            error=None,
            loading=False,
        )

    if isinstance(event, FetchStarted):
        if event.strategy != state.strategy:
            return state
        return replace(state, loading=True, error=None)

    if isinstance(event, FetchResolved):
        if event.strategy != state.strategy:
            return state
        data = event.geojson
        if event.strategy == "bbox":
            # Dedup applies to the first window too, not only to later merges.
            data = merge_bbox_features(state.geojson_data, event.geojson)
        return replace(
            state,
            geojson_data=data,
            limited_message=event.limited_message,
            loading=False,
            error=None,
        )

    if isinstance(event, FetchFailed):
        if event.strategy != state.strategy:
            return state
        return replace(state, loading=False, error=event.error)

    if isinstance(event, FetchCancelled):
        return replace(state, loading=False)

    raise TypeError(f"Unknown layer event: {type(event).__name__}")


T = TypeVar("T")

_ABSENT: Any = object()


class OverrideMap(Generic[T]):
    """
    Layer id -> override value, merged by the renderer over the user's own setting.

    Holds are the filter-driven overrides: the first hold on a layer snapshots whatever
    was there (a value or nothing) and the last release puts exactly that back. Several
    holders (a property filter and an intersection, say) can hold the same layer.
    While a layer is held, `set`/`clear` edit the snapshot rather than the live value.
    """

    def __init__(self) -> None:
        self._values: dict[int, T] = {}
        self._snapshots: dict[int, Any] = {}
        self._holders: dict[int, set[str]] = {}

    def get(self, layer_id: int, default: T | None = None) -> T | None:
        return self._values.get(layer_id, default)

    def __contains__(self, layer_id: object) -> bool:
        return layer_id in self._values

    def as_dict(self) -> dict[int, T]:
        return dict(self._values)

    def is_held(self, layer_id: int) -> bool:
        return bool(self._holders.get(layer_id))

    def held(self) -> set[int]:
        return {lid for lid, holders in self._holders.items() if holders}

    def holders(self, layer_id: int) -> set[str]:
        return set(self._holders.get(layer_id) or ())

    def set(self, layer_id: int, value: T) -> None:
        if self.is_held(layer_id):
            self._snapshots[layer_id] = value
            return
        self._values[layer_id] = value

    def clear(self, layer_id: int) -> None:
        if self.is_held(layer_id):
            self._snapshots[layer_id] = _ABSENT
            return
        self._values.pop(layer_id, None)

    def hold(self, layer_id: int, value: T, *, holder: str) -> None:
        holders = self._holders.setdefault(layer_id, set())
        if not holders:
            self._snapshots[layer_id] = self._values.get(layer_id, _ABSENT)
        holders.add(holder)
        self._values[layer_id] = value

    def release(self, layer_id: int, *, holder: str) -> bool:
        """
        Drop one holder; returns True when the layer went back to its snapshot.
        """
        holders = self._holders.get(layer_id)
        if not holders or holder not in holders:
            return False
        holders.discard(holder)
        if holders:
            return False
        del self._holders[layer_id]
        prior = self._snapshots.pop(layer_id, _ABSENT)
        if prior is _ABSENT:
            self._values.pop(layer_id, None)
        else:
            self._values[layer_id] = prior
        return True

    def release_all(self, *, holder: str) -> set[int]:
        return {lid for lid in list(self._holders) if self.release(lid, holder=holder)}
