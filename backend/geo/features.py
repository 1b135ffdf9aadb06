from __future__ import annotations

import hashlib
import json
from typing import Any, Iterable, TypeAlias

from shapely.errors import GeometryTypeError
from shapely.geometry import shape

from geo.aoi import BBox

# Plain GeoJSON dicts flow through the engine untouched; the renderer consumes them as-is.
Feature: TypeAlias = dict[str, Any]
FeatureCollection: TypeAlias = dict[str, Any]
Geometry: TypeAlias = dict[str, Any]

FeatureKey: TypeAlias = tuple[str, str]

GEOMETRY_TYPES: frozenset[str] = frozenset(
    {
        "Point",
        "LineString",
        "Polygon",
        "MultiPoint",
        "MultiLineString",
        "MultiPolygon",
        "GeometryCollection",
    }
)


class InvalidGeometryError(ValueError):
    pass


def empty_collection() -> FeatureCollection:
    return {"type": "FeatureCollection", "features": []}


def features_of(collection: FeatureCollection | None) -> list[Feature]:
    if not collection:
        return []
    feats = collection.get("features")
    return list(feats) if isinstance(feats, list) else []


def geometry_digest(geometry: Geometry | None) -> str:
    """
    Full structural hash of a GeoJSON geometry.

    Canonical JSON (sorted keys, no whitespace) over the whole geometry, so two features
    only collide when their geometries are identical.
    """
    canonical = json.dumps(geometry, sort_keys=True, separators=(",", ":"))
    return hashlib.sha1(canonical.encode("utf-8")).hexdigest()


def feature_key(feature: Feature) -> FeatureKey:
    """
    Stable identity of a feature across repeated queries.

    `id` wins when present (0 is a valid id); otherwise fall back to the geometry digest.
    The tag keeps an id of "abc..." from ever matching a digest.
    """
    fid = feature.get("id")
    if fid is not None:
        return ("id", str(fid))
    return ("geom", geometry_digest(feature.get("geometry")))


def validate_geometry(geometry: Any) -> Geometry:
    """
    Reject malformed geometries before they are sent as an intersection predicate.
    """
    if not isinstance(geometry, dict):
        raise InvalidGeometryError("Geometry must be a GeoJSON object")
    gtype = geometry.get("type")
    if gtype not in GEOMETRY_TYPES:
        raise InvalidGeometryError(f"Unsupported geometry type: {gtype!r}")
    try:
        geom = shape(geometry)
    except (GeometryTypeError, ValueError, TypeError, KeyError, IndexError) as e:
        raise InvalidGeometryError(f"Malformed {gtype} geometry: {e}") from e
    if geom.is_empty:
        raise InvalidGeometryError(f"Empty {gtype} geometry")
    return geometry


def intersection_geometry(collection: FeatureCollection | None) -> Geometry | None:
    """
    Geometry used as intersection predicate for the current overlay.

    A single feature sends its own geometry; several features are wrapped in a
    GeometryCollection. Features without geometry are skipped.
    """
    geoms = [f.get("geometry") for f in features_of(collection) if f.get("geometry")]
    if not geoms:
        return None
    if len(geoms) == 1:
        return geoms[0]
    return {"type": "GeometryCollection", "geometries": geoms}


def tag_features(
    features: Iterable[Feature], *, layer_id: int, layer_name: str | None
) -> list[Feature]:
    """
    Copy features adding the `layerId`/`layerName` breadcrumb to their properties.
    """
    out: list[Feature] = []
    for f in features:
        props = dict(f.get("properties") or {})
        props.setdefault("layerId", layer_id)
        if layer_name is not None:
            props.setdefault("layerName", layer_name)
        out.append({**f, "properties": props})
    return out


def count_by_layer(collection: FeatureCollection | None) -> dict[int, int]:
    counts: dict[int, int] = {}
    for f in features_of(collection):
        lid = (f.get("properties") or {}).get("layerId")
        if lid is None:
            continue
        try:
            key = int(lid)
        except (TypeError, ValueError):
            continue
        counts[key] = counts.get(key, 0) + 1
    return counts


def collection_bounds(collection: FeatureCollection | None) -> BBox | None:
    """
    Lon/lat envelope of every feature with a usable geometry, or None.
    """
    bounds: list[tuple[float, float, float, float]] = []
    for f in features_of(collection):
        g = f.get("geometry")
        if not g:
            continue
        try:
            geom = shape(g)
        except (GeometryTypeError, ValueError, TypeError, KeyError, IndexError):
            continue
        if not geom.is_empty:
            bounds.append(geom.bounds)
    if not bounds:
        return None
    return BBox(
        min_lon=min(b[0] for b in bounds),
        min_lat=min(b[1] for b in bounds),
        max_lon=max(b[2] for b in bounds),
        max_lat=max(b[3] for b in bounds),
    )
