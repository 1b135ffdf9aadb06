from __future__ import annotations

import asyncio
from typing import Any, Iterable, Literal, Mapping, Protocol

from loguru import logger
from pydantic import ValidationError

from api.errors import ApiError
from api.models import FeatureCollectionResponse, FeaturesCatalog
from engine.filters import FilterSelection, InvalidFilterError, property_values
from engine.session import MapSession
from geo.aoi import BBox
from geo.features import (
    FeatureCollection,
    Geometry,
    collection_bounds,
    count_by_layer,
    features_of,
    intersection_geometry,
    tag_features,
    validate_geometry,
)

Phase = Literal["idle", "filtering"]

FILTER_HOLDER = "filter"
INTERSECT_HOLDER = "intersect"


class FilterApi(Protocol):
    async def get_features_by_ids(
        self, layer_id: int, feature_ids: Iterable[int] | None = None
    ) -> FeatureCollectionResponse: ...

    async def filter_features(
        self, layer_id: int, filters: Mapping[str, Any], *, feature_ids: Any = None
    ) -> FeatureCollectionResponse: ...

    async def filter_multiple_layers_features(
        self, layer_ids: Iterable[int], filters: Mapping[str, Any]
    ) -> FeatureCollectionResponse: ...

    async def intersect_features(
        self, layer_id: int, geometry: Geometry, *, max_features: int = ..., simplify: bool = ...
    ) -> FeatureCollectionResponse: ...

    async def get_features_catalog(self, layer_id: int) -> FeaturesCatalog: ...


class FilterReconciler:
    """
    Keeps the filtered overlay and the raw layers it replaces from ever showing together.

    idle: no overlay, raw layers follow the user's toggles.
    filtering: the overlay is published to the session and every layer contributing to
    it is hidden through a visibility hold; changing the criteria re-fetches and
    recomputes the held set, and `clear()` releases every hold so each layer returns to
    exactly the visibility it had before.

    The intersection sub-mode replaces the overlay with the features of a target layer
    intersecting the filtered set and holds that target hidden as well;
    `cancel_intersection()` restores the filtered overlay.

    A failed fetch keeps the previous overlay and sets `error`; only `clear()` drops it.
    """

    def __init__(
        self,
        session: MapSession,
        api: FilterApi | None = None,
        *,
        max_features: int = 5000,
    ) -> None:
        self.session = session
        self.api = api if api is not None else session.api
        self.max_features = int(max_features)

        self.phase: Phase = "idle"
        self.selection: FilterSelection | None = None
        self.overlay: FeatureCollection | None = None
        self.filter_bbox: BBox | None = None
        self.layer_counts: dict[int, int] = {}
        self.intersection_layer: int | None = None
        self.loading = False
        self.error: str | None = None

        # The filtered set kept aside while an intersection result is shown.
        self._filter_overlay: FeatureCollection | None = None
        self._filter_bbox: BBox | None = None
        self._seq = 0

    @property
    def suppressed(self) -> set[int]:
        return self.session.hidden_by(FILTER_HOLDER) | self.session.hidden_by(INTERSECT_HOLDER)

    @property
    def feature_count(self) -> int:
        return len(features_of(self.overlay))

    # -- criteria ------------------------------------------------------------------

    async def apply(self, selection: FilterSelection) -> None:
        if selection.is_empty:
            self.clear()
            return

        if self.intersection_layer is not None:
            self.cancel_intersection()

        self._seq += 1
        token = self._seq
        self.selection = selection
        self.loading = True
        self.error = None

        try:
            resp, collection = await self._fetch(selection)
        except (ApiError, ValidationError) as e:
            if token != self._seq:
                return
            self.loading = False
            self.error = str(e)
            logger.warning(f"[filter] {selection.mode} fetch failed, keeping overlay: {e}")
            return

        if token != self._seq:
            return
        self.loading = False

        if not features_of(collection) and selection.mode == "selection":
            logger.info(f"[filter] selection on layers {list(selection.layer_ids)} is empty")
            self.clear()
            return

        counts = resp.layer_counts() or count_by_layer(collection)
        self._show_filtered(
            collection,
            bbox=resp.metadata_bbox() or collection_bounds(collection),
            counts=counts,
            layer_ids=selection.layer_ids,
        )
        logger.info(
            f"[filter] {selection.mode} on layers {list(selection.layer_ids)}: "
            f"{len(features_of(collection))} features"
        )

    async def _fetch(
        self, selection: FilterSelection
    ) -> tuple[FeatureCollectionResponse, FeatureCollection]:
        if selection.mode == "selection":
            lid = selection.layer_ids[0]
            resp = await self.api.get_features_by_ids(lid, selection.feature_ids)
            return resp, self._tagged(resp, lid)

        params = selection.query_params()
        if selection.multi_layer:
            resp = await self.api.filter_multiple_layers_features(selection.layer_ids, params)
            # Features arrive tagged with their source layerId/layerName.
            return resp, {
                "type": "FeatureCollection",
                "features": list(resp.features),
            }

        responses = await asyncio.gather(
            *(self.api.filter_features(lid, params) for lid in selection.layer_ids)
        )
        features: list[dict[str, Any]] = []
        for lid, r in zip(selection.layer_ids, responses):
            features.extend(self._tagged(r, lid)["features"])
        merged = FeatureCollectionResponse(features=features)
        return merged, merged.as_geojson()

    def _tagged(self, resp: FeatureCollectionResponse, layer_id: int) -> FeatureCollection:
        info = self.session.layer_info(layer_id)
        name = info.name if info is not None else None
        return {
            "type": "FeatureCollection",
            "features": tag_features(resp.features, layer_id=layer_id, layer_name=name),
        }

    def _show_filtered(
        self,
        collection: FeatureCollection,
        *,
        bbox: BBox | None,
        counts: dict[int, int],
        layer_ids: Iterable[int],
    ) -> None:
        # Hide newcomers before the overlay shows, restore leavers only after it changed.
        wanted = {lid for lid in layer_ids if lid in self.session.layer_ids}
        held = self.session.hidden_by(FILTER_HOLDER)
        for lid in wanted - held:
            self.session.hold_hidden(lid, holder=FILTER_HOLDER)

        self.phase = "filtering"
        self.overlay = collection
        self.filter_bbox = bbox
        self.layer_counts = dict(counts)
        self._filter_overlay = collection
        self._filter_bbox = bbox
        self._publish()

        for lid in held - wanted:
            self.session.release_hidden(lid, holder=FILTER_HOLDER)

    # -- conveniences used by the filter panel -------------------------------------

    async def select_features(self, layer_id: int, feature_ids: Iterable[Any]) -> None:
        await self.apply(FilterSelection.selection(layer_id, feature_ids))

    async def toggle_feature(self, layer_id: int, feature_id: Any) -> None:
        current: list[Any] = []
        sel = self.selection
        if sel is not None and sel.mode == "selection" and sel.layer_ids == (int(layer_id),):
            current = list(sel.feature_ids)
        fid = FilterSelection.selection(layer_id, [feature_id]).feature_ids[0]
        if fid in current:
            current.remove(fid)
        else:
            current.append(fid)
        await self.apply(FilterSelection.selection(layer_id, current))

    async def select_all(self, catalog: FeaturesCatalog) -> None:
        await self.apply(
            FilterSelection.selection(catalog.layerId, [f.id for f in catalog.features])
        )

    async def apply_property_filters(
        self,
        layer_ids: Iterable[Any],
        values: Mapping[str, Any],
        *,
        multi_layer: bool | None = None,
    ) -> None:
        await self.apply(FilterSelection.by_properties(layer_ids, values, multi_layer=multi_layer))

    async def set_selected_layers(self, layer_ids: Iterable[Any]) -> None:
        sel = self.selection
        if sel is None or sel.mode != "properties":
            return
        await self.apply(sel.with_layers(layer_ids))

    async def property_values(self, layer_id: int) -> dict[str, list[str]]:
        return property_values(await self.api.get_features_catalog(layer_id))

    # -- intersection sub-mode -----------------------------------------------------

    async def start_intersection(self, target_layer_id: int) -> None:
        source = self._filter_overlay if self.phase == "filtering" else None
        geometry = intersection_geometry(source)
        if geometry is None:
            raise InvalidFilterError("There are no filtered features to intersect with")
        geometry = validate_geometry(geometry)

        target = int(target_layer_id)
        self._seq += 1
        token = self._seq
        self.loading = True
        self.error = None

        try:
            resp = await self.api.intersect_features(
                target, geometry, max_features=self.max_features, simplify=False
            )
        except (ApiError, ValidationError) as e:
            if token != self._seq:
                return
            self.loading = False
            self.error = str(e)
            logger.warning(f"[filter] intersection with layer {target} failed: {e}")
            return

        if token != self._seq:
            return
        self.loading = False

        previous = self.intersection_layer
        self.intersection_layer = target
        self.session.hold_hidden(target, holder=INTERSECT_HOLDER)

        collection = self._tagged(resp, target)
        self.overlay = collection
        self.filter_bbox = collection_bounds(collection) or self._filter_bbox
        self.layer_counts = count_by_layer(collection)
        logger.info(
            f"[filter] intersection with layer {target}: {len(features_of(collection))} features"
        )
        self._publish()
        if previous is not None and previous != target:
            self.session.release_hidden(previous, holder=INTERSECT_HOLDER)

    def cancel_intersection(self) -> None:
        if self.intersection_layer is None:
            return
        self._seq += 1
        target = self.intersection_layer
        self.intersection_layer = None
        self.loading = False
        self.overlay = self._filter_overlay
        self.filter_bbox = self._filter_bbox
        self.layer_counts = count_by_layer(self.overlay)
        self._publish()
        self.session.release_hidden(target, holder=INTERSECT_HOLDER)

    # -- clear ---------------------------------------------------------------------

    def clear(self) -> None:
        self._seq += 1
        was_filtering = self.phase == "filtering"
        self.phase = "idle"
        self.selection = None
        self.overlay = None
        self.filter_bbox = None
        self.layer_counts = {}
        self.intersection_layer = None
        self.loading = False
        self.error = None
        self._filter_overlay = None
        self._filter_bbox = None
        if was_filtering:
            logger.info("[filter] cleared")
        self._publish()
        self.session.release_all_hidden(holder=INTERSECT_HOLDER)
        self.session.release_all_hidden(holder=FILTER_HOLDER)

    def _publish(self) -> None:
        self.session.set_filter_context(overlay=self.overlay, filter_bbox=self.filter_bbox)
