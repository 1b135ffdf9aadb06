from __future__ import annotations

from geo.features import FeatureCollection, FeatureKey, Feature, feature_key, features_of


def merge_bbox_features(
    existing: FeatureCollection | None, incoming: FeatureCollection | None
) -> FeatureCollection:
    """
    Merge a bbox query result into the features already loaded for a layer.

    Nothing already loaded is dropped when the viewport moves away; on a key collision
    the incoming feature wins (it may carry a different simplification level).
    Merging the same result twice is a no-op.
    """
    merged: dict[FeatureKey, Feature] = {}
    for f in features_of(existing):
        merged[feature_key(f)] = f
    for f in features_of(incoming):
        merged[feature_key(f)] = f
    return {"type": "FeatureCollection", "features": list(merged.values())}
