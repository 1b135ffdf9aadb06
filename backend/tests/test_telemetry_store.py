from __future__ import annotations

import asyncio

from engine.session import MapSession
from fakes import FakeLayersApi, collection, info, point_features
from telemetry.singleton import get_store, reset_store


def _enable(monkeypatch, path) -> None:
    monkeypatch.setenv("ZENIT_TELEMETRY_PATH", str(path))
    monkeypatch.setenv("ZENIT_TELEMETRY", "1")


def test_telemetry_disabled_by_default(monkeypatch):
    monkeypatch.delenv("ZENIT_TELEMETRY", raising=False)
    assert get_store() is None


def test_telemetry_store_writes_rows(tmp_path, monkeypatch):
    db_path = tmp_path / "fetches.duckdb"
    _enable(monkeypatch, db_path)

    store = get_store()
    assert store is not None

    store.record(
        layer_id=3,
        strategy="bbox",
        outcome="ok",
        endpoint="/layers/3/geojson/bbox",
        bbox=(-90.6, 14.5, -90.4, 14.7),
        returned=120,
        limited=True,
        duration_ms=42.0,
    )
    store.record(layer_id=3, strategy="geojson", outcome="error", endpoint="/layers/3/geojson")
    store.flush(timeout_s=2.0)

    # Use the existing connection; DuckDB disallows opening the same file with different configs.
    n = int(store.conn.execute("select count(*) from fetches").fetchone()[0])
    assert n == 2

    row = store.conn.execute(
        "select endpoint, bbox_min_lon, returned, limited from fetches where strategy = 'bbox'"
    ).fetchone()
    assert row == ("/layers/3/geojson/bbox", -90.6, 120, True)

    by_strategy = {r["strategy"]: r for r in store.summary(layer_id=3)}
    assert by_strategy["bbox"]["n"] == 1
    assert by_strategy["bbox"]["features"] == 120
    assert by_strategy["bbox"]["limitedRate"] == 1.0
    assert by_strategy["geojson"]["outcome"] == "error"
    assert store.summary(layer_id=99) == []

    reset_store()


def test_telemetry_reset_deletes_db(tmp_path, monkeypatch):
    db_path = tmp_path / "fetches.duckdb"
    _enable(monkeypatch, db_path)

    store = get_store()
    assert store is not None
    store.record(layer_id=1, strategy="geojson", outcome="ok", returned=5)
    assert store.path.resolve() == db_path.resolve()

    reset_store()
    assert not db_path.exists()


def test_session_logs_fetches_when_enabled(tmp_path, monkeypatch):
    _enable(monkeypatch, tmp_path / "fetches.duckdb")
    api = FakeLayersApi({1: info(1, total=5)})
    api.responses[("geojson", 1)] = collection(point_features([1, 2]))

    async def run():
        s = MapSession(api, max_features=10, simplify=False)
        await s.add_layers([1], visible=True)
        await s.settle()

    asyncio.run(run())
    store = get_store()
    store.flush(timeout_s=2.0)
    rows = store.query("select layer_id, strategy, endpoint, returned, outcome from fetches")
    assert rows == [(1, "geojson", "/layers/1/geojson", 2, "ok")]

    reset_store()
