from __future__ import annotations

import asyncio
from typing import Callable, Iterable, Protocol

from loguru import logger
from pydantic import ValidationError

from api.config import bbox_max_features, bbox_simplify
from api.errors import ApiError
from api.models import LayerInfo, MapDetail
from engine.provider import FetchRecorder, LayerDataProvider, LayerFetchApi
from engine.state import (
    LayerEvent,
    LayerInfoLoaded,
    LayerRuntimeState,
    OpacitySet,
    OverrideMap,
    VisibilitySet,
    clamp_opacity,
    reduce_layer_state,
)
from engine.strategy import BBOX_FEATURE_THRESHOLD, Strategy
from geo.aoi import BBox
from geo.features import FeatureCollection
from telemetry.singleton import get_store

DataLoadedCallback = Callable[
    [int, FeatureCollection | None, str | None, bool, Strategy | None], None
]


class MapSessionApi(LayerFetchApi, Protocol):
    async def get_layer(self, layer_id: int) -> LayerInfo: ...

    async def get_map(self, map_id: int) -> MapDetail: ...


class MapSession:
    """
    Owns the runtime state of every layer on one map view.

    All state writes go through `dispatch()`, one event for one layer at a time, so
    layers never interfere with each other and a layer's events apply in order.
    Visibility/opacity overrides sit beside the states and are merged at read time.
    """

    def __init__(
        self,
        api: MapSessionApi,
        *,
        on_data_loaded: DataLoadedCallback | None = None,
        max_features: int | None = None,
        simplify: bool | None = None,
        threshold: int = BBOX_FEATURE_THRESHOLD,
        recorder: FetchRecorder | None = None,
    ) -> None:
        self.api = api
        self._on_data_loaded = on_data_loaded
        self._max_features = max_features if max_features is not None else bbox_max_features()
        self._simplify = simplify if simplify is not None else bbox_simplify()
        self._threshold = threshold
        # Falls back to the process-wide telemetry store (None unless ZENIT_TELEMETRY is set).
        self._recorder = recorder if recorder is not None else get_store()

        self._states: dict[int, LayerRuntimeState] = {}
        self._providers: dict[int, LayerDataProvider] = {}
        self.visibility_overrides: OverrideMap[bool] = OverrideMap()
        self.opacity_overrides: OverrideMap[float] = OverrideMap()

        self._viewport: BBox | None = None
        self._overlay: FeatureCollection | None = None
        self._filter_bbox: BBox | None = None

    # -- bootstrap -----------------------------------------------------------------

    async def open_map(self, map_id: int) -> MapDetail:
        detail = await self.api.get_map(map_id)
        for entry in sorted(detail.mapLayers, key=lambda e: e.displayOrder):
            self._register(
                entry.layerId,
                info=entry.layer,
                visible=entry.isVisible,
                opacity=entry.opacity,
            )
        self._sync_all()
        return detail

    async def add_layers(self, layer_ids: Iterable[int], *, visible: bool = False) -> None:
        ids = [int(i) for i in layer_ids if int(i) not in self._states]
        infos = await asyncio.gather(*(self._load_info(lid) for lid in ids))
        for lid, info in zip(ids, infos):
            self._register(lid, info=info, visible=visible)
        self._sync_all()

    async def _load_info(self, layer_id: int) -> LayerInfo | None:
        try:
            return await self.api.get_layer(layer_id)
        except (ApiError, ValidationError) as e:
            # Without a feature count the layer is treated as small (full GeoJSON).
            logger.warning(f"[layer {layer_id}] metadata unavailable: {e}")
            return None

    def _register(
        self,
        layer_id: int,
        *,
        info: LayerInfo | None,
        visible: bool = False,
        opacity: float = 1.0,
    ) -> None:
        self._states[layer_id] = LayerRuntimeState(
            id=layer_id,
            visible=bool(visible),
            opacity=clamp_opacity(opacity),
            layer_info=info,
        )
        self._providers[layer_id] = LayerDataProvider(
            layer_id,
            self.api,
            lambda event: self.dispatch(event),
            max_features=self._max_features,
            simplify=self._simplify,
            threshold=self._threshold,
            recorder=self._recorder,
        )

    # -- state ---------------------------------------------------------------------

    @property
    def layer_ids(self) -> list[int]:
        return list(self._states)

    @property
    def viewport(self) -> BBox | None:
        return self._viewport

    @property
    def overlay(self) -> FeatureCollection | None:
        return self._overlay

    @property
    def filter_bbox(self) -> BBox | None:
        return self._filter_bbox

    def state(self, layer_id: int) -> LayerRuntimeState:
        return self._states[layer_id]

    def states(self) -> dict[int, LayerRuntimeState]:
        return dict(self._states)

    def layer_info(self, layer_id: int) -> LayerInfo | None:
        st = self._states.get(layer_id)
        return st.layer_info if st is not None else None

    def effective_visible(self, layer_id: int) -> bool:
        st = self._states[layer_id]
        v = self.visibility_overrides.get(layer_id)
        return st.visible if v is None else bool(v)

    def effective_opacity(self, layer_id: int) -> float:
        st = self._states[layer_id]
        v = self.opacity_overrides.get(layer_id)
        return st.opacity if v is None else float(v)

    def dispatch(self, event: LayerEvent) -> LayerRuntimeState:
        prev = self._states[event.layer_id]
        nxt = reduce_layer_state(prev, event)
        if nxt is prev:
            return prev
        self._states[event.layer_id] = nxt
        if self._on_data_loaded is not None:
            self._on_data_loaded(
                nxt.id, nxt.geojson_data, nxt.limited_message, nxt.loading, nxt.strategy
            )
        return nxt

    # -- user controls -------------------------------------------------------------

    def set_visible(self, layer_id: int, visible: bool) -> None:
        self.dispatch(VisibilitySet(layer_id, visible))
        # The user's latest choice replaces any plain override (held ones keep a snapshot).
        self.visibility_overrides.clear(layer_id)
        self._sync(layer_id)

    def toggle_layer(self, layer_id: int) -> None:
        self.set_visible(layer_id, not self._states[layer_id].visible)

    def toggle_all(self) -> None:
        target = not all(st.visible for st in self._states.values())
        for lid in list(self._states):
            self.set_visible(lid, target)

    def set_opacity(self, layer_id: int, opacity: float) -> None:
        self.dispatch(OpacitySet(layer_id, opacity))
        self.opacity_overrides.clear(layer_id)

    def set_visibility_override(self, layer_id: int, visible: bool | None) -> None:
        if visible is None:
            self.visibility_overrides.clear(layer_id)
        else:
            self.visibility_overrides.set(layer_id, bool(visible))
        self._sync(layer_id)

    def set_opacity_override(self, layer_id: int, opacity: float | None) -> None:
        if opacity is None:
            self.opacity_overrides.clear(layer_id)
        else:
            self.opacity_overrides.set(layer_id, clamp_opacity(opacity))

    def set_layer_info(self, layer_id: int, info: LayerInfo) -> None:
        self.dispatch(LayerInfoLoaded(layer_id, info))
        self._sync(layer_id)

    # -- map/filter inputs ---------------------------------------------------------

    def viewport_changed(self, bbox: BBox) -> None:
        """
        Leaflet `moveend`.
        """
        self._viewport = bbox.normalized()
        self._sync_all(retry=True)

    def set_filter_context(
        self, *, overlay: FeatureCollection | None, filter_bbox: BBox | None
    ) -> None:
        self._overlay = overlay
        self._filter_bbox = filter_bbox
        self._sync_all(retry=True)

    def hold_hidden(self, layer_id: int, *, holder: str) -> None:
        if layer_id not in self._states:
            return
        self.visibility_overrides.hold(layer_id, False, holder=holder)
        self._sync(layer_id)

    def release_hidden(self, layer_id: int, *, holder: str) -> None:
        if self.visibility_overrides.release(layer_id, holder=holder):
            self._sync(layer_id)

    def release_all_hidden(self, *, holder: str) -> None:
        for lid in self.visibility_overrides.release_all(holder=holder):
            self._sync(lid)

    def hidden_by(self, holder: str) -> set[int]:
        return {
            lid
            for lid in self.visibility_overrides.held()
            if holder in self.visibility_overrides.holders(lid)
        }

    # -- lifecycle -----------------------------------------------------------------

    def _sync(self, layer_id: int, *, retry: bool = False) -> None:
        provider = self._providers.get(layer_id)
        if provider is None:
            return
        provider.sync(
            self._states[layer_id],
            visible=self.effective_visible(layer_id),
            viewport=self._viewport,
            filter_bbox=self._filter_bbox,
            overlay=self._overlay,
            retry=retry,
        )

    def _sync_all(self, *, retry: bool = False) -> None:
        for lid in list(self._states):
            self._sync(lid, retry=retry)

    async def settle(self) -> None:
        """
        Wait until no layer has a fetch in flight.
        """
        while True:
            pending = [p.pending for p in self._providers.values() if p.pending is not None]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self) -> None:
        for provider in self._providers.values():
            provider.cancel()
        await self.settle()
        self._states.clear()
        self._providers.clear()
