from __future__ import annotations

from functools import lru_cache

from pyproj import Transformer
from shapely.geometry.base import BaseGeometry
from shapely.ops import transform

from geo.aoi import BBox

# Geometries are simplified in Web Mercator meters so one tolerance fits every latitude
# the map is likely to show.


@lru_cache(maxsize=1)
def transformer_4326_to_3857() -> Transformer:
    return Transformer.from_crs("EPSG:4326", "EPSG:3857", always_xy=True)


@lru_cache(maxsize=1)
def transformer_3857_to_4326() -> Transformer:
    return Transformer.from_crs("EPSG:3857", "EPSG:4326", always_xy=True)


def tolerance_for_bbox(bbox: BBox, *, pixels: int = 1024) -> float:
    """
    Roughly one screen pixel, in meters, for a viewport showing `bbox`.
    """
    b = bbox.normalized()
    t = transformer_4326_to_3857()
    x0, y0 = t.transform(b.min_lon, b.min_lat)
    x1, y1 = t.transform(b.max_lon, b.max_lat)
    span = max(abs(x1 - x0), abs(y1 - y0))
    return span / max(1, pixels)


def simplify_geometry(geom: BaseGeometry, tolerance_m: float) -> BaseGeometry:
    if tolerance_m <= 0 or geom.is_empty:
        return geom
    if geom.geom_type in {"Point", "MultiPoint"}:
        return geom
    projected = transform(transformer_4326_to_3857().transform, geom)
    simp = projected.simplify(tolerance_m, preserve_topology=True)
    if simp.is_empty:
        return geom
    return transform(transformer_3857_to_4326().transform, simp)
