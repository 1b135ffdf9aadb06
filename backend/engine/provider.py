from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Protocol

from loguru import logger
from pydantic import ValidationError

from api.errors import ApiError
from api.models import FeatureCollectionResponse, LayerInfo
from engine.state import (
    FetchCancelled,
    FetchFailed,
    FetchResolved,
    FetchStarted,
    LayerEvent,
    LayerRuntimeState,
    StrategyChanged,
)
from engine.strategy import (
    BBOX_FEATURE_THRESHOLD,
    Strategy,
    effective_bbox,
    intersect_message,
    layer_intersection,
    limited_features_message,
    select_strategy,
)
from geo.aoi import BBox
from geo.features import FeatureCollection, Geometry, geometry_digest

RequestKey = tuple[Any, ...]

_ENDPOINTS: dict[str, str] = {
    "geojson": "/layers/{id}/geojson",
    "bbox": "/layers/{id}/geojson/bbox",
    "intersect": "/layers/{id}/geojson/intersects",
}


class LayerFetchApi(Protocol):
    async def get_layer_geojson(self, layer_id: int) -> FeatureCollectionResponse: ...

    async def get_features_in_bbox(
        self, layer_id: int, bbox: BBox, *, max_features: int = ..., simplify: bool = ...
    ) -> FeatureCollectionResponse: ...

    async def intersect_features(
        self, layer_id: int, geometry: Geometry, *, max_features: int = ..., simplify: bool = ...
    ) -> FeatureCollectionResponse: ...


class FetchRecorder(Protocol):
    def record(self, **event: Any) -> None: ...


class LayerDataProvider:
    """
    Fetch lifecycle of one layer.

    `sync()` is called with the current inputs on every change; it re-selects the
    strategy and starts at most one fetch. Only the latest request may write to the
    layer state: earlier tasks are cancelled and their responses are dropped by
    sequence number if they still arrive.
    """

    def __init__(
        self,
        layer_id: int,
        api: LayerFetchApi,
        dispatch: Callable[[LayerEvent], LayerRuntimeState],
        *,
        max_features: int = 5000,
        simplify: bool = True,
        threshold: int = BBOX_FEATURE_THRESHOLD,
        recorder: FetchRecorder | None = None,
    ) -> None:
        self.layer_id = int(layer_id)
        self._api = api
        self._dispatch = dispatch
        self._max_features = int(max_features)
        self._simplify = bool(simplify)
        self._threshold = int(threshold)
        self._recorder = recorder

        self._seq = 0
        self._task: asyncio.Task | None = None
        self._strategy: Strategy | None = None
        self._inflight_key: RequestKey | None = None
        self._loaded_key: RequestKey | None = None
        self._failed_key: RequestKey | None = None

    @property
    def strategy(self) -> Strategy | None:
        return self._strategy

    @property
    def pending(self) -> asyncio.Task | None:
        t = self._task
        return t if t is not None and not t.done() else None

    def sync(
        self,
        state: LayerRuntimeState,
        *,
        visible: bool,
        viewport: BBox | None,
        filter_bbox: BBox | None,
        overlay: FeatureCollection | None,
        retry: bool = False,
    ) -> None:
        info = state.layer_info
        geometry = layer_intersection(info, overlay, visible=visible)
        strategy = select_strategy(_total_features(info), geometry, threshold=self._threshold)

        if strategy != self._strategy:
            self._supersede()
            self._strategy = strategy
            self._loaded_key = None
            self._failed_key = None
            self._dispatch(StrategyChanged(self.layer_id, strategy))

        if not visible:
            if self.pending is not None:
                self._supersede()
                self._dispatch(FetchCancelled(self.layer_id))
            return

        key, request = self._plan(strategy, info, viewport, filter_bbox, geometry)
        if key is None or request is None:
            return
        if key == self._inflight_key:
            return
        if key == self._loaded_key or (key == self._failed_key and not retry):
            # Nothing new to fetch, so a request still in flight for another key is outdated.
            if self.pending is not None:
                self._supersede()
                self._dispatch(FetchCancelled(self.layer_id))
            return
        self._start(strategy, key, request)

    def cancel(self) -> None:
        if self.pending is not None:
            self._supersede()

    def _plan(
        self,
        strategy: Strategy,
        info: LayerInfo | None,
        viewport: BBox | None,
        filter_bbox: BBox | None,
        geometry: Geometry | None,
    ) -> tuple[RequestKey | None, Callable[[], Awaitable[FeatureCollectionResponse]] | None]:
        lid = self.layer_id
        if strategy == "geojson":
            return ("geojson",), lambda: self._api.get_layer_geojson(lid)

        if strategy == "bbox":
            bbox = effective_bbox(info, viewport, filter_bbox)
            if bbox is None:
                return None, None
            return ("bbox", bbox.rounded_key()), lambda: self._api.get_features_in_bbox(
                lid, bbox, max_features=self._max_features, simplify=self._simplify
            )

        if geometry is None:
            return None, None
        return ("intersect", geometry_digest(geometry)), lambda: self._api.intersect_features(
            lid, geometry, max_features=self._max_features, simplify=False
        )

    def _supersede(self) -> None:
        self._seq += 1
        self._inflight_key = None
        t = self._task
        self._task = None
        if t is not None and not t.done():
            t.cancel()

    def _start(
        self,
        strategy: Strategy,
        key: RequestKey,
        request: Callable[[], Awaitable[FeatureCollectionResponse]],
    ) -> None:
        self._supersede()
        token = self._seq
        self._inflight_key = key
        self._dispatch(FetchStarted(self.layer_id, strategy))
        logger.debug(f"[layer {self.layer_id}] fetch #{token} {strategy} {key[1:]!r}")
        self._task = asyncio.get_running_loop().create_task(
            self._run(token, strategy, key, request),
            name=f"layer-{self.layer_id}-{strategy}-{token}",
        )

    async def _run(
        self,
        token: int,
        strategy: Strategy,
        key: RequestKey,
        request: Callable[[], Awaitable[FeatureCollectionResponse]],
    ) -> None:
        t0 = time.perf_counter()
        try:
            resp = await request()
            meta = resp.limit_metadata()
        except asyncio.CancelledError:
            self._record(strategy, key, t0, outcome="cancelled")
            raise
        except (ApiError, ValidationError) as e:
            if token != self._seq:
                return
            self._inflight_key = None
            self._failed_key = key
            logger.warning(f"[layer {self.layer_id}] {strategy} fetch failed: {e}")
            self._record(strategy, key, t0, outcome="error")
            self._dispatch(FetchFailed(self.layer_id, strategy, str(e)))
            return

        if token != self._seq:
            logger.debug(f"[layer {self.layer_id}] dropping stale response #{token}")
            self._record(strategy, key, t0, outcome="stale")
            return

        self._inflight_key = None
        self._loaded_key = key
        self._failed_key = None
        if meta is not None and meta.returned is None:
            meta = meta.model_copy(update={"returned": len(resp.features)})
        if strategy == "bbox":
            message = limited_features_message(meta)
        elif strategy == "intersect":
            message = intersect_message(meta)
        else:
            message = None
        self._record(
            strategy,
            key,
            t0,
            outcome="ok",
            returned=len(resp.features),
            limited=bool(meta.limited) if meta is not None else False,
        )
        self._dispatch(
            FetchResolved(
                self.layer_id,
                strategy,
                {"type": "FeatureCollection", "features": list(resp.features)},
                message,
            )
        )

    def _record(
        self,
        strategy: Strategy,
        key: RequestKey,
        t0: float,
        *,
        outcome: str,
        returned: int | None = None,
        limited: bool = False,
    ) -> None:
        if self._recorder is None:
            return
        bbox = key[1] if strategy == "bbox" else None
        self._recorder.record(
            layer_id=self.layer_id,
            strategy=strategy,
            endpoint=_ENDPOINTS[strategy].format(id=self.layer_id),
            bbox=bbox,
            returned=returned,
            limited=limited,
            outcome=outcome,
            duration_ms=(time.perf_counter() - t0) * 1000.0,
        )


def _total_features(info: LayerInfo | None) -> int | None:
    return info.totalFeatures if info is not None else None
