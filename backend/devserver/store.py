from __future__ import annotations

import json
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable, Mapping

from pyproj import Geod
from shapely.geometry import box as shapely_box
from shapely.geometry import mapping, shape
from shapely.geometry.base import BaseGeometry
from shapely.strtree import STRtree

from devserver.registry import DevServerConfig, load_config, resolve_source_path
from devserver.simplify import simplify_geometry, tolerance_for_bbox
from engine.filters import PROPERTY_ALIASES, normalize_property_filters
from geo.aoi import BBox
from geo.features import (
    Feature,
    FeatureCollection,
    features_of,
    tag_features,
    validate_geometry,
)


class NotFoundError(LookupError):
    pass


@lru_cache(maxsize=1)
def _geod() -> Geod:
    return Geod(ellps="WGS84")


def _infer_layer_type(geoms: Iterable[BaseGeometry]) -> str:
    kinds = {g.geom_type.lower() for g in geoms}
    if len(kinds) == 1:
        kind = kinds.pop()
        if kind != "geometrycollection":
            return kind
    return "mixed"


def _norm_value(v: Any) -> str:
    # 5, 5.0 and "5" compare equal; other values compare as trimmed strings.
    s = str(v).strip()
    try:
        f = float(s)
    except ValueError:
        return s
    return str(int(f)) if f.is_integer() else s


def _property(props: Mapping[str, Any], name: str) -> Any:
    if name in props:
        return props[name]
    for alias, canonical in PROPERTY_ALIASES.items():
        if canonical == name and alias in props:
            return props[alias]
    return None


@dataclass
class StoredLayer:
    id: int
    name: str
    features: list[Feature]
    geoms: list[BaseGeometry]
    layer_type: str = "mixed"
    description: str | None = None
    is_public: bool = False
    style: dict[str, Any] = field(default_factory=dict)
    _tree: STRtree | None = field(default=None, repr=False)

    @property
    def tree(self) -> STRtree:
        if self._tree is None:
            self._tree = STRtree(self.geoms)
        return self._tree

    def info(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "layerType": self.layer_type,
            "totalFeatures": len(self.features),
            "isPublic": self.is_public,
            "style": dict(self.style),
        }

    def query(self, geom: BaseGeometry) -> list[int]:
        if not self.geoms:
            return []
        idxs = sorted(int(i) for i in self.tree.query(geom))
        return [i for i in idxs if self.geoms[i].intersects(geom)]


@dataclass
class LayerStore:
    """
    In-memory stand-in for the layers database behind the REST API.

    Features get integer ids (their own numeric `id`, else 1-based position), which is
    what the catalog and `featureIds` queries use.
    """

    layers: dict[int, StoredLayer] = field(default_factory=dict)
    maps: dict[int, dict[str, Any]] = field(default_factory=dict)

    def add_layer(
        self,
        layer_id: int,
        name: str,
        collection: FeatureCollection,
        *,
        layer_type: str | None = None,
        description: str | None = None,
        is_public: bool = False,
        style: Mapping[str, Any] | None = None,
    ) -> StoredLayer:
        features: list[Feature] = []
        geoms: list[BaseGeometry] = []
        for i, f in enumerate(features_of(collection), start=1):
            g = f.get("geometry")
            if not g:
                continue
            fid = f.get("id")
            try:
                fid = int(fid) if fid is not None else i
            except (TypeError, ValueError):
                fid = i
            features.append(
                {
                    "type": "Feature",
                    "id": fid,
                    "geometry": g,
                    "properties": dict(f.get("properties") or {}),
                }
            )
            geoms.append(shape(g))
        layer = StoredLayer(
            id=int(layer_id),
            name=name,
            features=features,
            geoms=geoms,
            layer_type=layer_type or _infer_layer_type(geoms),
            description=description,
            is_public=is_public,
            style=dict(style or {}),
        )
        self.layers[layer.id] = layer
        return layer

    def add_map(self, map_id: int, name: str, entries: Iterable[Mapping[str, Any]]) -> None:
        rows = []
        for e in entries:
            lid = int(e["layerId"])
            self.layer(lid)
            rows.append(
                {
                    "layerId": lid,
                    "displayOrder": int(e.get("displayOrder", 0)),
                    "isVisible": bool(e.get("isVisible", True)),
                    "opacity": float(e.get("opacity", 1.0)),
                }
            )
        self.maps[int(map_id)] = {"id": int(map_id), "name": name, "layers": rows}

    @classmethod
    def from_config(cls, config: DevServerConfig, config_path: Path) -> "LayerStore":
        store = cls()
        for src in config.layers:
            path = resolve_source_path(config_path, src.path)
            collection = json.loads(path.read_text(encoding="utf-8"))
            store.add_layer(
                src.id,
                src.name,
                collection,
                layer_type=src.layerType,
                description=src.description,
                is_public=src.isPublic,
                style=src.style,
            )
        for m in config.maps:
            store.add_map(m.id, m.name, [e.model_dump() for e in m.layers])
        return store

    @classmethod
    def from_yaml(cls, path: Path) -> "LayerStore":
        return cls.from_config(load_config(path), path)

    # -- queries -------------------------------------------------------------------

    def layer(self, layer_id: int) -> StoredLayer:
        layer = self.layers.get(int(layer_id))
        if layer is None:
            raise NotFoundError(f"Layer {layer_id} not found")
        return layer

    def geojson(self, layer_id: int) -> FeatureCollection:
        return {"type": "FeatureCollection", "features": list(self.layer(layer_id).features)}

    def features_in_bbox(
        self,
        layer_id: int,
        bbox: BBox,
        *,
        max_features: int = 5000,
        simplify: bool = True,
    ) -> FeatureCollection:
        layer = self.layer(layer_id)
        b = bbox.normalized()
        hits = layer.query(shapely_box(b.min_lon, b.min_lat, b.max_lon, b.max_lat))
        total = len(hits)
        kept = hits[: max(1, int(max_features))]
        tol = tolerance_for_bbox(b) if simplify else 0.0
        features = [self._feature(layer, i, tolerance_m=tol) for i in kept]
        metadata: dict[str, Any] = {
            "totalInBounds": total,
            "returned": len(features),
            "limited": total > len(features),
            "bbox": b.to_params(),
        }
        if metadata["limited"]:
            metadata["message"] = (
                f"Showing {len(features):,} of {total:,} features. Zoom in to see more detail."
            )
        return {"type": "FeatureCollection", "features": features, "metadata": metadata}

    def intersecting(
        self,
        layer_id: int,
        geometry: Mapping[str, Any],
        *,
        max_features: int = 5000,
        simplify: bool = False,
    ) -> FeatureCollection:
        layer = self.layer(layer_id)
        predicate = shape(validate_geometry(dict(geometry)))
        hits = layer.query(predicate)
        total = len(hits)
        kept = hits[: max(1, int(max_features))]
        tol = tolerance_for_bbox(BBox.from_bounds(predicate.bounds)) if simplify else 0.0
        features = [self._feature(layer, i, tolerance_m=tol) for i in kept]
        return {
            "type": "FeatureCollection",
            "features": features,
            "metadata": {
                "totalIntersecting": total,
                "returned": len(features),
                "limited": total > len(features),
            },
        }

    def catalog(self, layer_id: int) -> dict[str, Any]:
        layer = self.layer(layer_id)
        rows = []
        for i, (f, g) in enumerate(zip(layer.features, layer.geoms)):
            area_m2, _ = _geod().geometry_area_perimeter(g)
            rows.append(
                {
                    "id": f["id"],
                    "featureIndex": i,
                    "properties": dict(f["properties"]),
                    "bboxGeometry": mapping(shapely_box(*g.bounds)),
                    "centroid": mapping(g.centroid),
                    "areaKm2": f"{abs(area_m2) / 1_000_000:.4f}",
                    "geometryType": g.geom_type,
                }
            )
        return {
            "layerId": layer.id,
            "layerName": layer.name,
            "layerType": layer.layer_type,
            "totalFeatures": len(layer.features),
            "features": rows,
        }

    def features_by_ids(self, layer_id: int, feature_ids: Iterable[int] | None) -> FeatureCollection:
        layer = self.layer(layer_id)
        wanted = {int(i) for i in feature_ids or []}
        features = [f for f in layer.features if not wanted or f["id"] in wanted]
        return {"type": "FeatureCollection", "features": features}

    def filter_features(
        self,
        layer_id: int,
        filters: Mapping[str, Any],
        *,
        feature_ids: Iterable[int] | None = None,
    ) -> FeatureCollection:
        layer = self.layer(layer_id)
        criteria = {
            k: {_norm_value(v) for v in values}
            for k, values in normalize_property_filters(filters).items()
        }
        wanted = {int(i) for i in feature_ids or []}
        out = []
        for f in layer.features:
            if wanted and f["id"] not in wanted:
                continue
            props = f["properties"]
            ok = True
            for name, values in criteria.items():
                v = _property(props, name)
                if v is None or _norm_value(v) not in values:
                    ok = False
                    break
            if ok:
                out.append(f)
        return {
            "type": "FeatureCollection",
            "features": out,
            "metadata": {"layerId": layer.id, "totalFeatures": len(out)},
        }

    def filter_multiple(
        self, layer_ids: Iterable[int], filters: Mapping[str, Any]
    ) -> FeatureCollection:
        features: list[Feature] = []
        per_layer = []
        for lid in layer_ids:
            layer = self.layer(lid)
            matched = features_of(self.filter_features(layer.id, filters))
            features.extend(tag_features(matched, layer_id=layer.id, layer_name=layer.name))
            per_layer.append(
                {"layerId": layer.id, "layerName": layer.name, "featuresCount": len(matched)}
            )
        return {
            "type": "FeatureCollection",
            "features": features,
            "metadata": {"totalFeatures": len(features), "layers": per_layer},
        }

    def map_detail(self, map_id: int) -> dict[str, Any]:
        m = self.maps.get(int(map_id))
        if m is None:
            raise NotFoundError(f"Map {map_id} not found")
        return {
            "id": m["id"],
            "name": m["name"],
            "mapLayers": [
                {
                    "layerId": e["layerId"],
                    "layer": self.layer(e["layerId"]).info(),
                    "displayOrder": e["displayOrder"],
                    "isVisible": e["isVisible"],
                    # Serialized as a decimal string like the production backend.
                    "opacity": f"{e['opacity']:.2f}",
                }
                for e in sorted(m["layers"], key=lambda e: e["displayOrder"])
            ],
        }

    def _feature(self, layer: StoredLayer, idx: int, *, tolerance_m: float) -> Feature:
        f = layer.features[idx]
        if tolerance_m <= 0:
            return f
        g = simplify_geometry(layer.geoms[idx], tolerance_m)
        return {**f, "geometry": mapping(g)}
