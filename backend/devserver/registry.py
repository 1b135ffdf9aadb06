from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from api.models import LayerType


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def default_config_path() -> Path | None:
    raw = (os.getenv("ZENIT_DEVSERVER_CONFIG") or "").strip()
    if raw:
        return Path(raw)
    p = _repo_root() / "data" / "devserver.yaml"
    return p if p.exists() else None


class LayerSource(BaseModel):
    """
    A layer served by the dev server: one GeoJSON FeatureCollection file.
    """

    id: int
    name: str
    # GeoJSON file, relative to the registry file.
    path: str
    description: str | None = None
    layerType: LayerType | None = None
    isPublic: bool = False
    style: dict[str, Any] = Field(default_factory=dict)


class MapLayerSource(BaseModel):
    layerId: int
    displayOrder: int = 0
    isVisible: bool = True
    opacity: float = Field(default=1.0, ge=0.0, le=1.0)


class MapSource(BaseModel):
    id: int
    name: str
    layers: list[MapLayerSource] = Field(default_factory=list)


class DevServerConfig(BaseModel):
    layers: list[LayerSource] = Field(default_factory=list)
    maps: list[MapSource] = Field(default_factory=list)


def _load_yaml(path: Path) -> dict:
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid dev server config root: {path}")
    return data


def load_config(path: Path) -> DevServerConfig:
    cfg = DevServerConfig.model_validate(_load_yaml(path))
    ids = [layer.id for layer in cfg.layers]
    if len(ids) != len(set(ids)):
        raise ValueError(f"Duplicate layer ids in {path}")
    known = set(ids)
    for m in cfg.maps:
        missing = [e.layerId for e in m.layers if e.layerId not in known]
        if missing:
            raise ValueError(f"Map {m.id} references unknown layers {missing}: {path}")
    return cfg


def resolve_source_path(config_path: Path, source: str) -> Path:
    p = Path(source)
    if p.is_absolute():
        return p
    return config_path.resolve().parent / p
