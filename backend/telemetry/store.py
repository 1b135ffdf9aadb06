from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

import duckdb
from loguru import logger

from telemetry.config import telemetry_enabled, telemetry_path
from telemetry.sql import (
    CREATE_FETCHES_TABLE_SQL,
    INSERT_FETCHES_SQL,
    SUMMARY_SQL_TEMPLATE,
)

__all__ = ["TelemetryStore", "telemetry_enabled", "telemetry_path"]


def _safe_float(v: Any) -> float | None:
    try:
        if v is None:
            return None
        return float(v)
    except (TypeError, ValueError):
        return None


def _bbox_columns(bbox: Sequence[float] | None) -> tuple[float | None, ...]:
    if bbox is None or len(bbox) != 4:
        return (None, None, None, None)
    return tuple(_safe_float(v) for v in bbox)


@dataclass
class TelemetryStore:
    """
    Fetch log of the layer providers, written by a single background thread.

    `record()` never blocks the event loop: rows are queued and flushed in batches.
    """

    path: Path
    conn: duckdb.DuckDBPyConnection
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    _q: "queue.Queue[tuple[Any, ...]]" = field(
        default_factory=lambda: queue.Queue(maxsize=10_000), repr=False
    )
    _stop: threading.Event = field(default_factory=threading.Event, repr=False)
    _worker: threading.Thread | None = field(default=None, repr=False)

    def ensure_schema(self) -> None:
        with self._lock:
            self.conn.execute(CREATE_FETCHES_TABLE_SQL)

    def start(self) -> None:
        if self._worker is not None:
            return
        self._stop.clear()
        self._worker = threading.Thread(target=self._run, name="telemetry-writer", daemon=True)
        self._worker.start()

    def stop(self, *, timeout_s: float = 2.0) -> None:
        self._stop.set()
        w = self._worker
        if w is not None and w.is_alive():
            w.join(timeout=timeout_s)
        self._worker = None

    def record(
        self,
        *,
        layer_id: int,
        strategy: str,
        outcome: str,
        endpoint: str | None = None,
        bbox: Sequence[float] | None = None,
        returned: int | None = None,
        limited: bool = False,
        duration_ms: float | None = None,
    ) -> None:
        self.start()
        row = (
            int(time.time() * 1000),
            int(layer_id),
            str(strategy),
            endpoint,
            *_bbox_columns(bbox),
            int(returned) if returned is not None else None,
            bool(limited),
            str(outcome),
            _safe_float(duration_ms),
        )
        try:
            self._q.put_nowait(row)
        except queue.Full:
            logger.debug("[telemetry] queue full, dropping fetch record")

    def flush(self, *, timeout_s: float = 2.0) -> None:
        """
        Wait until queued rows are written (used by tests).
        """
        if self._worker is None:
            return
        deadline = time.time() + timeout_s
        while time.time() < deadline:
            if self._q.unfinished_tasks == 0:
                return
            time.sleep(0.01)

    def query(self, sql: str, params: list[Any] | None = None) -> list[tuple]:
        with self._lock:
            if params:
                return self.conn.execute(sql, params).fetchall()
            return self.conn.execute(sql).fetchall()

    def summary(
        self,
        *,
        layer_id: int | None = None,
        since_ms: int | None = None,
    ) -> list[dict[str, Any]]:
        where = []
        params: list[Any] = []
        if layer_id is not None:
            where.append("layer_id = ?")
            params.append(int(layer_id))
        if since_ms is not None:
            where.append("ts_ms >= ?")
            params.append(int(since_ms))
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""

        rows = self.query(SUMMARY_SQL_TEMPLATE.format(where_sql=where_sql), params)
        out: list[dict[str, Any]] = []
        for strategy, outcome, n, avg_ms, p50, p95, features, limited_rate in rows:
            out.append(
                {
                    "strategy": strategy,
                    "outcome": outcome,
                    "n": int(n),
                    "avgMs": _safe_float(avg_ms),
                    "p50Ms": _safe_float(p50),
                    "p95Ms": _safe_float(p95),
                    "features": int(features or 0),
                    "limitedRate": _safe_float(limited_rate),
                }
            )
        return out

    def reset(self) -> None:
        self.stop(timeout_s=2.0)
        with self._lock:
            self.conn.close()
            self.path.unlink(missing_ok=True)

    def _run(self) -> None:
        self.ensure_schema()
        batch: list[tuple[Any, ...]] = []
        last_flush = time.time()

        def flush_batch() -> None:
            nonlocal batch
            if not batch:
                return
            try:
                with self._lock:
                    self.conn.executemany(INSERT_FETCHES_SQL, batch)
            except duckdb.Error as e:
                logger.warning(f"[telemetry] dropping {len(batch)} rows: {e}")
            finally:
                for _ in batch:
                    self._q.task_done()
                batch = []

        while not self._stop.is_set():
            try:
                batch.append(self._q.get(timeout=0.1))
            except queue.Empty:
                pass

            now = time.time()
            if len(batch) >= 250 or (batch and (now - last_flush) >= 0.2):
                flush_batch()
                last_flush = now

        while True:
            try:
                batch.append(self._q.get_nowait())
            except queue.Empty:
                break
        flush_batch()
