from __future__ import annotations

import json

from fastapi.testclient import TestClient

from devserver.app import create_app
from fakes import DISTRICTS, SQUARE, build_store

BBOX = {"minLon": -90.6, "minLat": 14.5, "maxLon": -90.4, "maxLat": 14.7}


def _client() -> TestClient:
    return TestClient(create_app(build_store()))


def test_layer_metadata_in_envelope():
    resp = _client().get("/api/v1/layers/1")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["path"] == "/api/v1/layers/1"
    assert body["method"] == "GET"
    assert body["data"]["totalFeatures"] == 10
    assert body["data"]["layerType"] == "point"
    assert _client().get("/api/v1/layers/2").json()["data"]["layerType"] == "polygon"


def test_unknown_layer_is_a_404_envelope():
    resp = _client().get("/api/v1/layers/99")
    assert resp.status_code == 404
    body = resp.json()
    assert body["success"] is False
    assert body["statusCode"] == 404
    assert "99" in body["message"]


def test_bbox_query_caps_and_reports_limit():
    data = _client().get(
        "/api/v1/layers/1/geojson/bbox", params={**BBOX, "maxFeatures": 4}
    ).json()["data"]
    assert len(data["features"]) == 4
    meta = data["metadata"]
    assert meta["totalInBounds"] == 10
    assert meta["returned"] == 4
    assert meta["limited"] is True
    assert meta["message"].startswith("Showing 4 of 10 features")


def test_bbox_query_outside_layer_is_empty():
    data = _client().get(
        "/api/v1/layers/1/geojson/bbox",
        params={"minLon": 10, "minLat": 10, "maxLon": 11, "maxLat": 11},
    ).json()["data"]
    assert data["features"] == []
    assert data["metadata"]["limited"] is False


def test_bbox_simplification_reduces_vertices():
    client = _client()
    simple = client.get("/api/v1/layers/3/geojson/bbox", params={**BBOX, "simplify": "true"})
    full = client.get("/api/v1/layers/3/geojson/bbox", params={**BBOX, "simplify": "false"})
    n_simple = len(simple.json()["data"]["features"][0]["geometry"]["coordinates"])
    n_full = len(full.json()["data"]["features"][0]["geometry"]["coordinates"])
    assert n_full == 200
    assert n_simple < n_full


def test_intersects_accepts_polygon_and_geometry_collection():
    client = _client()
    data = client.post("/api/v1/layers/1/geojson/intersects", json={"geometry": SQUARE}).json()["data"]
    assert data["metadata"]["totalIntersecting"] == 10
    assert data["metadata"]["limited"] is False

    far = {"type": "Point", "coordinates": [0, 0]}
    gc = {"type": "GeometryCollection", "geometries": [far, DISTRICTS["features"][1]["geometry"]]}
    data = client.post("/api/v1/layers/2/geojson/intersects", json={"geometry": gc}).json()["data"]
    assert [f["id"] for f in data["features"]] == [2]


def test_intersects_rejects_malformed_geometry():
    resp = _client().post(
        "/api/v1/layers/1/geojson/intersects",
        json={"geometry": {"type": "Polygon", "coordinates": []}},
    )
    assert resp.status_code == 400
    assert resp.json()["success"] is False


def test_catalog_lists_bbox_centroid_and_area():
    data = _client().get("/api/v1/layers/2/features/catalog").json()["data"]
    assert data["layerName"] == "Distritos"
    assert data["totalFeatures"] == 2
    row = data["features"][0]
    assert row["bboxGeometry"]["type"] == "Polygon"
    assert row["centroid"]["type"] == "Point"
    assert row["geometryType"] == "Polygon"
    # 0.2 x 0.2 degrees around 14.6N is roughly 470 km2.
    assert 400 < float(row["areaKm2"]) < 550
    assert "geometry" not in row


def test_features_by_ids():
    client = _client()
    data = client.get("/api/v1/layers/1/features", params=[("featureIds", 1), ("featureIds", 3)]).json()["data"]
    assert sorted(f["id"] for f in data["features"]) == [1, 3]
    assert client.get("/api/v1/layers/1/features", params={"featureIds": "x"}).status_code == 400


def test_property_filter_resolves_aliases_or_within_and_across():
    client = _client()
    both = client.get("/api/v1/layers/2/features/filter", params={"CODDISTRITO": "5,10"}).json()["data"]
    assert sorted(f["id"] for f in both["features"]) == [1, 2]

    one = client.get(
        "/api/v1/layers/2/features/filter", params={"CODDISTRITO": "5,10", "CODREGION": "II"}
    ).json()["data"]
    assert [f["id"] for f in one["features"]] == [2]


def test_filter_multiple_tags_features_and_counts_per_layer():
    data = _client().get(
        "/api/v1/layers/features/filter-multiple",
        params={"layerIds": "1,2", "NO_DISTRIT": "5"},
    ).json()["data"]
    assert [f["properties"]["layerId"] for f in data["features"]] == [2]
    assert data["features"][0]["properties"]["layerName"] == "Distritos"
    assert data["metadata"]["layers"] == [
        {"layerId": 1, "layerName": "Puntos", "featuresCount": 0},
        {"layerId": 2, "layerName": "Distritos", "featuresCount": 1},
    ]


def test_map_detail_orders_layers_and_serializes_opacity():
    data = _client().get("/api/v1/maps/1").json()["data"]
    assert [e["layerId"] for e in data["mapLayers"]] == [2, 1]
    assert data["mapLayers"][0]["opacity"] == "0.50"
    assert data["mapLayers"][0]["layer"]["style"] == {"color": "#3388ff"}
    assert data["mapLayers"][1]["isVisible"] is False


def test_create_app_loads_yaml_registry(tmp_path, monkeypatch):
    (tmp_path / "distritos.geojson").write_text(json.dumps(DISTRICTS), encoding="utf-8")
    cfg = tmp_path / "devserver.yaml"
    cfg.write_text(
        "\n".join(
            [
                "layers:",
                "  - id: 4",
                "    name: Distritos",
                "    path: distritos.geojson",
                "    layerType: multipolygon",
                "    isPublic: true",
                "    style: {color: '#ff0000'}",
                "maps:",
                "  - id: 9",
                "    name: Demo",
                "    layers:",
                "      - {layerId: 4, displayOrder: 1, opacity: 0.75}",
            ]
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("ZENIT_DEVSERVER_CONFIG", str(cfg))

    client = TestClient(create_app())
    layer = client.get("/api/v1/layers/4").json()["data"]
    assert layer["layerType"] == "multipolygon"
    assert layer["isPublic"] is True
    assert layer["totalFeatures"] == 2
    detail = client.get("/api/v1/maps/9").json()["data"]
    assert detail["mapLayers"][0]["opacity"] == "0.75"
