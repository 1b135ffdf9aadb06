from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping


@dataclass(frozen=True)
class BBox:
    """
    WGS84 bounding box in lon/lat degrees.

    Convention used throughout this repo:
    - minLon, minLat, maxLon, maxLat
    - the REST API spells the keys in camelCase (`to_params` / `from_api`)
    """

    min_lon: float
    min_lat: float
    max_lon: float
    max_lat: float

    def normalized(self) -> "BBox":
        min_lon = min(self.min_lon, self.max_lon)
        max_lon = max(self.min_lon, self.max_lon)
        min_lat = min(self.min_lat, self.max_lat)
        max_lat = max(self.min_lat, self.max_lat)
        return BBox(min_lon=min_lon, min_lat=min_lat, max_lon=max_lon, max_lat=max_lat)

    def rounded_key(self, decimals: int = 6) -> tuple[float, float, float, float]:
        """
        A stable, hashable key for comparing viewport boxes.

        Leaflet reports bounds with float noise; two `moveend` events for the same view
        should not trigger two bbox fetches.
        """
        b = self.normalized()
        return (
            round(b.min_lon, decimals),
            round(b.min_lat, decimals),
            round(b.max_lon, decimals),
            round(b.max_lat, decimals),
        )

    def as_tuple(self) -> tuple[float, float, float, float]:
        b = self.normalized()
        return (b.min_lon, b.min_lat, b.max_lon, b.max_lat)

    def intersects(self, other: "BBox") -> bool:
        a = self.normalized()
        b = other.normalized()
        return not (
            a.max_lon < b.min_lon
            or b.max_lon < a.min_lon
            or a.max_lat < b.min_lat
            or b.max_lat < a.min_lat
        )

    def to_params(self) -> dict[str, float]:
        b = self.normalized()
        return {
            "minLon": b.min_lon,
            "minLat": b.min_lat,
            "maxLon": b.max_lon,
            "maxLat": b.max_lat,
        }

    @classmethod
    def from_api(cls, raw: Mapping[str, Any]) -> "BBox":
        """
        Parse `{minLon, minLat, maxLon, maxLat}` as returned in response metadata.
        """
        return cls(
            min_lon=float(raw["minLon"]),
            min_lat=float(raw["minLat"]),
            max_lon=float(raw["maxLon"]),
            max_lat=float(raw["maxLat"]),
        ).normalized()

    @classmethod
    def from_bounds(cls, bounds: tuple[float, float, float, float]) -> "BBox":
        # shapely `.bounds` order: (minx, miny, maxx, maxy)
        min_lon, min_lat, max_lon, max_lat = bounds
        return cls(
            min_lon=float(min_lon),
            min_lat=float(min_lat),
            max_lon=float(max_lon),
            max_lat=float(max_lat),
        )
