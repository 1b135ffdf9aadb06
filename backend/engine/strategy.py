from __future__ import annotations

from typing import Literal

from api.models import LayerInfo, LimitMetadata
from geo.aoi import BBox
from geo.features import FeatureCollection, Geometry, intersection_geometry

Strategy = Literal["geojson", "bbox", "intersect"]

# Above this many features a layer is never downloaded whole.
BBOX_FEATURE_THRESHOLD = 5000


def select_strategy(
    total_features: int | None,
    intersection: Geometry | None = None,
    *,
    threshold: int = BBOX_FEATURE_THRESHOLD,
) -> Strategy:
    """
    Pick the fetch mode for one layer.

    Precedence: an active intersection geometry, then the feature count. An unknown
    count is treated as a small layer.
    """
    if intersection is not None:
        return "intersect"
    if (total_features or 0) > threshold:
        return "bbox"
    return "geojson"


def layer_intersection(
    info: LayerInfo | None,
    overlay: FeatureCollection | None,
    *,
    visible: bool,
) -> Geometry | None:
    """
    Intersection predicate a layer should follow, if any.

    Multipolygon layers are the filter sources (sectors, districts) and keep their own
    strategy; hidden layers never query.
    """
    if not visible or overlay is None:
        return None
    if info is not None and info.is_multipolygon:
        return None
    return intersection_geometry(overlay)


def effective_bbox(
    info: LayerInfo | None,
    viewport: BBox | None,
    filter_bbox: BBox | None,
) -> BBox | None:
    if filter_bbox is not None and not (info is not None and info.is_multipolygon):
        return filter_bbox
    return viewport


def limited_features_message(metadata: LimitMetadata | None) -> str | None:
    if metadata is None or not metadata.limited:
        return None
    if metadata.message:
        return metadata.message
    returned = metadata.returned or 0
    total = metadata.totalInBounds if metadata.totalInBounds is not None else returned
    return (
        f"Showing {returned:,} of {total:,} features. "
        "Zoom in to see more detail."
    )


def intersect_message(metadata: LimitMetadata | None) -> str | None:
    if metadata is None:
        return None
    returned = metadata.returned or 0
    total = metadata.totalIntersecting
    if total is None:
        total = returned
    msg = f"{total:,} features intersect the active filter"
    if metadata.limited:
        msg += f" (showing {returned:,})"
    return msg
