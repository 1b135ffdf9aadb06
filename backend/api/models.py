from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from geo.aoi import BBox
from geo.features import FeatureCollection

LayerType = Literal[
    "point",
    "linestring",
    "polygon",
    "multipoint",
    "multilinestring",
    "multipolygon",
    "mixed",
]


class LayerStyle(BaseModel):
    """
    Leaflet-style hints. Unknown keys (icon urls, radius, ...) are kept.
    """

    model_config = ConfigDict(extra="allow")

    color: str | None = None
    weight: float | None = None
    opacity: float | None = None
    fillColor: str | None = None
    fillOpacity: float | None = None


class LayerInfo(BaseModel):
    """
    Layer metadata (GET /layers/:id). The engine only reads it.
    """

    model_config = ConfigDict(extra="allow")

    id: int
    name: str = ""
    description: str | None = None
    layerType: LayerType = "mixed"
    # None when the backend did not report a count; strategy selection treats it as small.
    totalFeatures: int | None = None
    isPublic: bool = False
    style: LayerStyle = Field(default_factory=LayerStyle)

    @field_validator("style", mode="before")
    @classmethod
    def _null_style(cls, v: Any) -> Any:
        return {} if v is None else v

    @property
    def is_multipolygon(self) -> bool:
        return self.layerType == "multipolygon"


class LimitMetadata(BaseModel):
    """
    `metadata` block of bbox (`totalInBounds`) and intersects (`totalIntersecting`) responses.
    """

    model_config = ConfigDict(extra="allow")

    totalInBounds: int | None = None
    totalIntersecting: int | None = None
    returned: int | None = None
    limited: bool = False
    message: str | None = None


class FeatureCollectionResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["FeatureCollection"] = "FeatureCollection"
    features: list[dict[str, Any]] = Field(default_factory=list)
    metadata: dict[str, Any] | None = None

    def as_geojson(self) -> FeatureCollection:
        out: FeatureCollection = {"type": "FeatureCollection", "features": list(self.features)}
        if self.metadata is not None:
            out["metadata"] = dict(self.metadata)
        return out

    def limit_metadata(self) -> LimitMetadata | None:
        if not self.metadata:
            return None
        return LimitMetadata.model_validate(self.metadata)

    def metadata_bbox(self) -> BBox | None:
        raw = (self.metadata or {}).get("bbox")
        if not isinstance(raw, dict):
            return None
        try:
            return BBox.from_api(raw)
        except (KeyError, TypeError, ValueError):
            return None

    def layer_counts(self) -> dict[int, int]:
        """
        Per-source counts from a multi-layer filter response (`metadata.layers[]`).
        """
        out: dict[int, int] = {}
        for row in (self.metadata or {}).get("layers") or []:
            if not isinstance(row, dict):
                continue
            try:
                out[int(row["layerId"])] = int(row.get("featuresCount") or 0)
            except (KeyError, TypeError, ValueError):
                continue
        return out


class CatalogFeature(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int
    featureIndex: int | None = None
    properties: dict[str, Any] = Field(default_factory=dict)
    bboxGeometry: dict[str, Any] | None = None
    centroid: dict[str, Any] | None = None
    areaKm2: str | None = None
    geometryType: str | None = None


class FeaturesCatalog(BaseModel):
    """
    GET /layers/:id/features/catalog: feature listing without full geometry.
    """

    model_config = ConfigDict(extra="allow")

    layerId: int
    layerName: str = ""
    layerType: str | None = None
    totalFeatures: int = 0
    features: list[CatalogFeature] = Field(default_factory=list)


class MapLayerEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    layerId: int
    layer: LayerInfo
    displayOrder: int = 0
    isVisible: bool = True
    # The backend serializes opacity as a decimal string ("1.00").
    opacity: float = 1.0

    @field_validator("opacity", mode="before")
    @classmethod
    def _parse_opacity(cls, v: Any) -> Any:
        if v is None or v == "":
            return 1.0
        return v


class MapDetail(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int
    name: str = ""
    mapLayers: list[MapLayerEntry] = Field(default_factory=list)
