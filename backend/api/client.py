from __future__ import annotations

from typing import Any, Iterable, Mapping

import httpx
from loguru import logger

from api.config import api_base_url, api_timeout_s, api_token
from api.errors import ApiError
from api.models import (
    FeatureCollectionResponse,
    FeaturesCatalog,
    LayerInfo,
    MapDetail,
)
from geo.aoi import BBox
from geo.features import Geometry

FilterValue = str | int | float | Iterable[str | int | float]


def _unwrap(payload: Any) -> Any:
    # Backend wraps every payload as {success, timestamp, path, method, data}.
    if isinstance(payload, dict) and "success" in payload and "data" in payload:
        return payload["data"]
    return payload


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.reason_phrase or "request failed"
    if isinstance(body, dict):
        msg = body.get("message") or body.get("detail") or body.get("error")
        if isinstance(msg, list):
            return "; ".join(str(m) for m in msg)
        if msg:
            return str(msg)
    return resp.reason_phrase or "request failed"


def _csv(value: FilterValue) -> str:
    if isinstance(value, (str, int, float)):
        return str(value)
    return ",".join(str(v) for v in value)


class LayersApi:
    """
    Thin async client for the layers REST API.

    One instance per map view; every method returns parsed models and raises `ApiError`
    for transport failures, HTTP errors and unparseable bodies.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        timeout_s: float | None = None,
        token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        bearer = token if token is not None else api_token()
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        self._client = httpx.AsyncClient(
            base_url=base_url or api_base_url(),
            timeout=timeout_s if timeout_s is not None else api_timeout_s(),
            headers=headers,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "LayersApi":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Any = None,
        json: Any = None,
    ) -> Any:
        try:
            resp = await self._client.request(method, path, params=params, json=json)
        except httpx.HTTPError as e:
            logger.warning(f"[api] {method} {path} failed: {e!r}")
            raise ApiError(str(e) or type(e).__name__, path=path) from e

        if resp.status_code >= 400:
            raise ApiError(_error_message(resp), status=resp.status_code, path=path)
        try:
            payload = resp.json()
        except ValueError as e:
            raise ApiError("Response is not valid JSON", status=resp.status_code, path=path) from e
        return _unwrap(payload)

    async def get_layer(self, layer_id: int) -> LayerInfo:
        return LayerInfo.model_validate(await self._request("GET", f"/layers/{layer_id}"))

    async def get_layer_geojson(self, layer_id: int) -> FeatureCollectionResponse:
        data = await self._request("GET", f"/layers/{layer_id}/geojson")
        return FeatureCollectionResponse.model_validate(data)

    async def get_features_in_bbox(
        self,
        layer_id: int,
        bbox: BBox,
        *,
        max_features: int = 5000,
        simplify: bool = True,
    ) -> FeatureCollectionResponse:
        params: dict[str, Any] = {
            **bbox.to_params(),
            "maxFeatures": int(max_features),
            "simplify": bool(simplify),
        }
        data = await self._request("GET", f"/layers/{layer_id}/geojson/bbox", params=params)
        return FeatureCollectionResponse.model_validate(data)

    async def intersect_features(
        self,
        layer_id: int,
        geometry: Geometry,
        *,
        max_features: int = 5000,
        simplify: bool = False,
    ) -> FeatureCollectionResponse:
        data = await self._request(
            "POST",
            f"/layers/{layer_id}/geojson/intersects",
            params={"maxFeatures": int(max_features), "simplify": bool(simplify)},
            json={"geometry": geometry},
        )
        return FeatureCollectionResponse.model_validate(data)

    async def get_features_catalog(self, layer_id: int) -> FeaturesCatalog:
        data = await self._request("GET", f"/layers/{layer_id}/features/catalog")
        return FeaturesCatalog.model_validate(data)

    async def get_features_by_ids(
        self, layer_id: int, feature_ids: Iterable[int] | None = None
    ) -> FeatureCollectionResponse:
        # Repeated `featureIds=1&featureIds=2`; no ids means every feature.
        params = [("featureIds", int(fid)) for fid in feature_ids or []]
        data = await self._request("GET", f"/layers/{layer_id}/features", params=params or None)
        return FeatureCollectionResponse.model_validate(data)

    async def filter_features(
        self,
        layer_id: int,
        filters: Mapping[str, FilterValue],
        *,
        feature_ids: Iterable[int] | None = None,
    ) -> FeatureCollectionResponse:
        params: list[tuple[str, Any]] = [(k, _csv(v)) for k, v in filters.items()]
        params.extend(("featureIds", int(fid)) for fid in feature_ids or [])
        data = await self._request("GET", f"/layers/{layer_id}/features/filter", params=params)
        return FeatureCollectionResponse.model_validate(data)

    async def filter_multiple_layers_features(
        self, layer_ids: Iterable[int], filters: Mapping[str, FilterValue]
    ) -> FeatureCollectionResponse:
        params: list[tuple[str, Any]] = [("layerIds", ",".join(str(int(i)) for i in layer_ids))]
        params.extend((k, _csv(v)) for k, v in filters.items())
        data = await self._request("GET", "/layers/features/filter-multiple", params=params)
        return FeatureCollectionResponse.model_validate(data)

    async def get_map(self, map_id: int) -> MapDetail:
        return MapDetail.model_validate(await self._request("GET", f"/maps/{map_id}"))
