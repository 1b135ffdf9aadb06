"""
Settings of the fetch log: one row per layer request made by a `LayerDataProvider`
(strategy, endpoint, bbox window, returned/limited counts, outcome and latency).
"""

from __future__ import annotations

import os
from pathlib import Path


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def telemetry_path() -> Path:
    """
    duckdb file holding the `fetches` table (`ZENIT_TELEMETRY_PATH`).
    """
    return Path(
        os.getenv("ZENIT_TELEMETRY_PATH")
        or (_repo_root() / "data" / "telemetry" / "fetches.duckdb")
    )


def telemetry_enabled() -> bool:
    # Off unless ZENIT_TELEMETRY is set.
    v = (os.getenv("ZENIT_TELEMETRY") or "0").strip().lower()
    return v not in {"", "0", "false", "no", "off"}
