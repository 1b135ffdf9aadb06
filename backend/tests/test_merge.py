from __future__ import annotations

from engine.merge import merge_bbox_features
from fakes import collection, point_features


def _ids(coll):
    return sorted(f["id"] for f in coll["features"])


def test_merge_is_idempotent():
    batch = collection(point_features(range(1, 11)))
    once = merge_bbox_features(None, batch)
    twice = merge_bbox_features(once, batch)
    assert _ids(once) == _ids(twice) == list(range(1, 11))


def test_disjoint_batches_accumulate():
    out = None
    for start in (1, 101, 201):
        out = merge_bbox_features(out, collection(point_features(range(start, start + 100))))
    assert len(out["features"]) == 300


def test_adjacent_viewports_with_overlap():
    first = collection(point_features(range(1, 401)))
    second = collection(point_features(range(351, 651)))
    merged = merge_bbox_features(first, second)
    assert len(merged["features"]) == 650


def test_incoming_feature_wins_on_collision():
    old = collection([{"id": 7, "geometry": {"type": "Point", "coordinates": [0, 0]}, "properties": {"v": 1}}])
    new = collection([{"id": 7, "geometry": {"type": "Point", "coordinates": [0, 0]}, "properties": {"v": 2}}])
    merged = merge_bbox_features(old, new)
    assert [f["properties"]["v"] for f in merged["features"]] == [2]


def test_features_without_id_dedupe_by_whole_geometry():
    a = {"geometry": {"type": "LineString", "coordinates": [[0, 0], [1, 1], [2, 2]]}, "properties": {}}
    same = {"geometry": {"type": "LineString", "coordinates": [[0, 0], [1, 1], [2, 2]]}, "properties": {}}
    # Shares the first two vertices but is a different line.
    other = {"geometry": {"type": "LineString", "coordinates": [[0, 0], [1, 1], [3, 3]]}, "properties": {}}

    merged = merge_bbox_features(collection([a]), collection([same, other]))
    assert len(merged["features"]) == 2


def test_empty_result_is_a_noop():
    base = collection(point_features([1, 2]))
    assert _ids(merge_bbox_features(base, collection([]))) == [1, 2]
    assert merge_bbox_features(None, None)["features"] == []
