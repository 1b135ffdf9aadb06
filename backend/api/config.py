from __future__ import annotations

import os


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if raw:
        try:
            return float(raw)
        except ValueError:
            pass
    return default


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if raw:
        try:
            return int(raw)
        except ValueError:
            pass
    return default


def _env_flag(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw not in {"0", "false", "no", "off"}


def api_base_url() -> str:
    return (os.getenv("ZENIT_API_URL") or "http://localhost:3200/api/v1").rstrip("/")


def api_timeout_s() -> float:
    # Full GeoJSON downloads of heavy layers can take minutes.
    return _env_float("ZENIT_API_TIMEOUT_S", 1200.0)


def api_token() -> str | None:
    token = (os.getenv("ZENIT_API_TOKEN") or "").strip()
    return token or None


def bbox_max_features() -> int:
    return max(1, _env_int("ZENIT_BBOX_MAX_FEATURES", 5000))


def bbox_simplify() -> bool:
    return _env_flag("ZENIT_BBOX_SIMPLIFY", True)
