from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from devserver.registry import default_config_path
from devserver.store import LayerStore, NotFoundError
from engine.filters import InvalidFilterError, parse_ids
from geo.aoi import BBox
from geo.features import InvalidGeometryError

API_PREFIX = "/api/v1"

router = APIRouter(prefix=API_PREFIX)

# Query keys that are never property filters.
_RESERVED_QUERY_KEYS = {"layerIds", "featureIds"}


class IntersectsBody(BaseModel):
    geometry: dict[str, Any]


def _ok(request: Request, data: Any) -> dict[str, Any]:
    return {
        "success": True,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "path": request.url.path,
        "method": request.method,
        "data": data,
    }


def _error(request: Request, status: int, message: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content={
            "success": False,
            "statusCode": status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "path": request.url.path,
            "method": request.method,
            "message": message,
        },
    )


def _store(request: Request) -> LayerStore:
    return request.app.state.store


def _filters(request: Request) -> dict[str, str]:
    return {
        k: ",".join(request.query_params.getlist(k))
        for k in request.query_params.keys()
        if k not in _RESERVED_QUERY_KEYS
    }


def _id_params(request: Request, name: str) -> list[int]:
    # Accept both `featureIds=1&featureIds=2` and `featureIds=1,2`.
    raw = [p for v in request.query_params.getlist(name) for p in v.split(",") if p.strip()]
    return list(parse_ids(raw, what=name))


# Registered before `/layers/{layer_id}` routes.
@router.get("/layers/features/filter-multiple")
def filter_multiple(request: Request):
    layer_ids = _id_params(request, "layerIds")
    if not layer_ids:
        raise InvalidFilterError("layerIds is required")
    return _ok(request, _store(request).filter_multiple(layer_ids, _filters(request)))


@router.get("/layers/{layer_id}")
def get_layer(request: Request, layer_id: int):
    return _ok(request, _store(request).layer(layer_id).info())


@router.get("/layers/{layer_id}/geojson")
def get_layer_geojson(request: Request, layer_id: int):
    return _ok(request, _store(request).geojson(layer_id))


@router.get("/layers/{layer_id}/geojson/bbox")
def get_features_in_bbox(
    request: Request,
    layer_id: int,
    minLon: float,
    minLat: float,
    maxLon: float,
    maxLat: float,
    maxFeatures: int = Query(default=5000, ge=1, le=50_000),
    simplify: bool = True,
):
    bbox = BBox(min_lon=minLon, min_lat=minLat, max_lon=maxLon, max_lat=maxLat)
    data = _store(request).features_in_bbox(
        layer_id, bbox, max_features=maxFeatures, simplify=simplify
    )
    return _ok(request, data)


@router.post("/layers/{layer_id}/geojson/intersects")
def intersect_features(
    request: Request,
    layer_id: int,
    body: IntersectsBody,
    maxFeatures: int = Query(default=5000, ge=1, le=50_000),
    simplify: bool = False,
):
    data = _store(request).intersecting(
        layer_id, body.geometry, max_features=maxFeatures, simplify=simplify
    )
    return _ok(request, data)


@router.get("/layers/{layer_id}/features/catalog")
def get_features_catalog(request: Request, layer_id: int):
    return _ok(request, _store(request).catalog(layer_id))


@router.get("/layers/{layer_id}/features/filter")
def filter_features(request: Request, layer_id: int):
    data = _store(request).filter_features(
        layer_id, _filters(request), feature_ids=_id_params(request, "featureIds")
    )
    return _ok(request, data)


@router.get("/layers/{layer_id}/features")
def get_features_by_ids(request: Request, layer_id: int):
    data = _store(request).features_by_ids(layer_id, _id_params(request, "featureIds"))
    return _ok(request, data)


@router.get("/maps/{map_id}")
def get_map(request: Request, map_id: int):
    return _ok(request, _store(request).map_detail(map_id))


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError):
        return _error(request, 404, str(exc))

    @app.exception_handler(InvalidFilterError)
    async def _bad_filter(request: Request, exc: InvalidFilterError):
        return _error(request, 400, str(exc))

    @app.exception_handler(InvalidGeometryError)
    async def _bad_geometry(request: Request, exc: InvalidGeometryError):
        return _error(request, 400, str(exc))

    @app.exception_handler(RequestValidationError)
    async def _bad_request(request: Request, exc: RequestValidationError):
        messages = [f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()]
        return _error(request, 400, messages)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        return _error(request, exc.status_code, exc.detail)


def create_app(store: LayerStore | None = None) -> FastAPI:
    """
    Dev server speaking the layers REST contract over an in-memory store.

    Without an explicit store the YAML registry from `ZENIT_DEVSERVER_CONFIG`
    (or `data/devserver.yaml`) is loaded; with neither, the server starts empty.
    """
    if store is None:
        path = default_config_path()
        if path is not None:
            logger.info(f"[devserver] loading layers from {path}")
            store = LayerStore.from_yaml(path)
        else:
            store = LayerStore()

    app = FastAPI(title="zenit layers dev server")
    app.state.store = store
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _install_error_handlers(app)
    app.include_router(router)
    return app
