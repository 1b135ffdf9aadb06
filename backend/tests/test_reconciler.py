from __future__ import annotations

import asyncio

import pytest

from api.errors import ApiError
from engine.filters import FilterSelection, InvalidFilterError
from engine.reconciler import FilterReconciler
from engine.session import MapSession
from fakes import SQUARE, FakeLayersApi, collection, info, point_features
from geo.features import count_by_layer


def _sector(fid: int, layer_id: int | None = None, **props) -> dict:
    p = dict(props)
    if layer_id is not None:
        p["layerId"] = layer_id
    return {"type": "Feature", "id": fid, "geometry": SQUARE, "properties": p}


def _setup(*infos):
    api = FakeLayersApi({i.id: i for i in infos})
    session = MapSession(api, max_features=5000, simplify=True)
    return api, session, FilterReconciler(session)


async def _open(session, ids, visible):
    await session.add_layers(ids)
    for lid in visible:
        session.set_visible(lid, True)
    await session.settle()


def test_selection_filter_hides_layer_and_clearing_restores_it():
    api, session, rec = _setup(info(18, layer_type="multipolygon"), info(5))
    api.responses[("ids", 18, (136, 137))] = collection([_sector(136), _sector(137)])
    api.responses[("intersect", 5)] = collection(point_features([1, 2]), totalIntersecting=2, returned=2)

    async def run():
        await _open(session, [18, 5], visible=[18, 5])
        await rec.select_features(18, [136, 137])
        await session.settle()
        during = {
            "overlay": len(rec.overlay["features"]),
            "visible18": session.effective_visible(18),
            "user18": session.state(18).visible,
            "strategy5": session.state(5).strategy,
            "message5": session.state(5).limited_message,
            "phase": rec.phase,
        }
        await rec.select_features(18, [])
        await session.settle()
        return during

    during = asyncio.run(run())
    assert during == {
        "overlay": 2,
        "visible18": False,
        "user18": True,
        "strategy5": "intersect",
        "message5": "2 features intersect the active filter",
        "phase": "filtering",
    }
    assert rec.phase == "idle"
    assert rec.overlay is None
    assert session.effective_visible(18) is True
    assert session.state(5).strategy == "geojson"


def test_selection_overlay_features_carry_breadcrumbs():
    api, session, rec = _setup(info(18, layer_type="multipolygon", name="Sectores"))
    api.responses[("ids", 18, (1,))] = collection([_sector(1)])

    async def run():
        await _open(session, [18], visible=[18])
        await rec.select_features(18, [1])

    asyncio.run(run())
    props = rec.overlay["features"][0]["properties"]
    assert props["layerId"] == 18
    assert props["layerName"] == "Sectores"
    assert rec.layer_counts == {18: 1}
    assert rec.filter_bbox is not None
    assert session.filter_bbox == rec.filter_bbox


def test_empty_selection_result_returns_to_idle():
    api, session, rec = _setup(info(18, layer_type="multipolygon"))
    api.responses[("ids", 18, (999,))] = collection([])

    async def run():
        await _open(session, [18], visible=[18])
        await rec.select_features(18, [999])

    asyncio.run(run())
    assert rec.phase == "idle"
    assert rec.overlay is None
    assert session.effective_visible(18) is True


def test_multi_layer_property_filter_and_layer_removal():
    api, session, rec = _setup(*(info(i, layer_type="multipolygon") for i in (1, 2, 3)))
    api.responses[("filter_multiple", (1, 2, 3))] = collection(
        [_sector(10, 1), _sector(20, 2), _sector(30, 3), _sector(31, 3)],
        layers=[
            {"layerId": 1, "featuresCount": 1},
            {"layerId": 2, "featuresCount": 1},
            {"layerId": 3, "featuresCount": 2},
        ],
    )
    api.responses[("filter_multiple", (1, 3))] = collection(
        [_sector(10, 1), _sector(30, 3), _sector(31, 3)],
    )

    async def run():
        await _open(session, [1, 2, 3], visible=[1, 2, 3])
        await rec.apply_property_filters([1, 2, 3], {"NO_DISTRIT": "5,10"})
        first = (dict(rec.layer_counts), set(rec.suppressed))
        await rec.set_selected_layers([1, 3])
        return first

    (counts, suppressed) = asyncio.run(run())
    assert api.filters[0] == {"CODDISTRITO": "5,10"}
    assert counts == {1: 1, 2: 1, 3: 2}
    assert suppressed == {1, 2, 3}

    assert rec.layer_counts == {1: 1, 3: 2}
    assert rec.suppressed == {1, 3}
    assert session.effective_visible(2) is True
    assert session.effective_visible(1) is False
    assert {f["properties"]["layerId"] for f in rec.overlay["features"]} == {1, 3}


def test_single_layer_property_filter_uses_per_layer_endpoint():
    api, session, rec = _setup(info(4, layer_type="multipolygon"))
    api.responses[("filter", 4)] = collection([_sector(1), _sector(2)])

    async def run():
        await _open(session, [4], visible=[4])
        await rec.apply_property_filters([4], {"CODREGION": ["2"]})

    asyncio.run(run())
    assert rec.selection.multi_layer is False
    assert api.filters == [{"CODREGION": "2"}]
    assert [f["properties"]["layerId"] for f in rec.overlay["features"]] == [4, 4]
    assert rec.suppressed == {4}


def test_properties_mode_with_no_matches_keeps_filtering():
    api, session, rec = _setup(info(4, layer_type="multipolygon"))

    async def run():
        await _open(session, [4], visible=[4])
        await rec.apply_property_filters([4], {"CODREGION": "99"})

    asyncio.run(run())
    assert rec.phase == "filtering"
    assert rec.overlay["features"] == []
    assert rec.suppressed == {4}


def test_intersection_replaces_overlay_and_cancel_restores_it():
    api, session, rec = _setup(info(18, layer_type="multipolygon"), info(7))
    api.responses[("ids", 18, (136,))] = collection([_sector(136)])
    api.responses[("intersect", 7)] = collection(point_features([1, 2, 3]))

    async def run():
        await _open(session, [18, 7], visible=[18, 7])
        await rec.select_features(18, [136])
        await session.settle()
        await rec.start_intersection(7)
        await session.settle()
        during = (
            rec.intersection_layer,
            count_by_layer(rec.overlay),
            session.effective_visible(7),
            rec.suppressed,
        )
        rec.cancel_intersection()
        await session.settle()
        return during

    layer, counts, visible7, suppressed = asyncio.run(run())
    assert api.geometries and all(g == SQUARE for g in api.geometries)
    assert layer == 7
    assert counts == {7: 3}
    assert visible7 is False
    assert suppressed == {18, 7}

    assert rec.intersection_layer is None
    assert session.effective_visible(7) is True
    assert [f["id"] for f in rec.overlay["features"]] == [136]
    assert rec.suppressed == {18}


def test_intersection_requires_filtered_features():
    api, session, rec = _setup(info(7))

    async def run():
        await _open(session, [7], visible=[7])
        with pytest.raises(InvalidFilterError):
            await rec.start_intersection(7)

    asyncio.run(run())
    assert ("intersect", 7) not in api.calls


def test_round_trip_restores_visibility_and_opacity_exactly():
    api, session, rec = _setup(*(info(i, layer_type="multipolygon") for i in (1, 2, 3)))
    api.responses[("filter_multiple", (1, 2, 3))] = collection(
        [_sector(10, 1), _sector(20, 2), _sector(30, 3)]
    )

    async def run():
        await _open(session, [1, 2, 3], visible=[1])
        session.set_visibility_override(3, True)
        session.set_opacity(2, 0.3)
        session.set_opacity_override(1, 0.8)
        before = (
            session.visibility_overrides.as_dict(),
            session.opacity_overrides.as_dict(),
            {i: (session.effective_visible(i), session.effective_opacity(i)) for i in (1, 2, 3)},
        )
        await rec.apply(FilterSelection.by_properties([1, 2, 3], {"CODDISTRITO": "5"}))
        await session.settle()
        exclusive = all(not session.effective_visible(i) for i in count_by_layer(rec.overlay))
        rec.clear()
        await session.settle()
        after = (
            session.visibility_overrides.as_dict(),
            session.opacity_overrides.as_dict(),
            {i: (session.effective_visible(i), session.effective_opacity(i)) for i in (1, 2, 3)},
        )
        return before, after, exclusive

    before, after, exclusive = asyncio.run(run())
    assert exclusive is True
    assert after == before


def test_user_toggle_during_filter_survives_clear():
    api, session, rec = _setup(info(18, layer_type="multipolygon"))
    api.responses[("ids", 18, (1,))] = collection([_sector(1)])

    async def run():
        await _open(session, [18], visible=[18])
        await rec.select_features(18, [1])
        session.toggle_layer(18)
        still_hidden = session.effective_visible(18)
        rec.clear()
        return still_hidden

    still_hidden = asyncio.run(run())
    assert still_hidden is False
    assert session.state(18).visible is False
    assert session.effective_visible(18) is False


def test_failure_keeps_previous_overlay():
    api, session, rec = _setup(info(18, layer_type="multipolygon"))
    api.responses[("ids", 18, (1,))] = collection([_sector(1)])
    api.responses[("ids", 18, (1, 2))] = ApiError("Internal error", status=500)

    async def run():
        await _open(session, [18], visible=[18])
        await rec.select_features(18, [1])
        await rec.toggle_feature(18, 2)

    asyncio.run(run())
    assert rec.phase == "filtering"
    assert [f["id"] for f in rec.overlay["features"]] == [1]
    assert rec.error == "HTTP 500: Internal error"
    assert rec.loading is False
    assert rec.suppressed == {18}


def test_invalid_feature_id_is_rejected_before_any_request():
    api, session, rec = _setup(info(18, layer_type="multipolygon"))

    async def run():
        await _open(session, [18], visible=[18])
        with pytest.raises(InvalidFilterError):
            await rec.select_features(18, ["abc"])

    asyncio.run(run())
    assert not [c for c in api.calls if c[0] == "ids"]


def test_select_all_and_property_values_from_catalog():
    api, session, rec = _setup(info(18, layer_type="multipolygon"))
    api.catalogs[18] = {
        "layerId": 18,
        "layerName": "Sectores",
        "features": [
            {"id": 1, "properties": {"No_REGION": "II"}},
            {"id": 2, "properties": {"CODREGION": "I"}},
        ],
    }
    api.responses[("ids", 18, (1, 2))] = collection([_sector(1), _sector(2)])

    async def run():
        await _open(session, [18], visible=[18])
        values = await rec.property_values(18)
        catalog = await api.get_features_catalog(18)
        await rec.select_all(catalog)
        return values

    values = asyncio.run(run())
    assert values == {"CODREGION": ["I", "II"]}
    assert rec.feature_count == 2
    assert rec.selection.feature_ids == (1, 2)
