from __future__ import annotations

CREATE_FETCHES_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS fetches (
  ts_ms BIGINT,
  layer_id BIGINT,
  strategy TEXT,
  endpoint TEXT,
  bbox_min_lon DOUBLE,
  bbox_min_lat DOUBLE,
  bbox_max_lon DOUBLE,
  bbox_max_lat DOUBLE,
  returned BIGINT,
  limited BOOLEAN,
  outcome TEXT,
  duration_ms DOUBLE
);
"""

SUMMARY_SQL_TEMPLATE = """
SELECT
  strategy,
  outcome,
  COUNT(*) AS n,
  AVG(duration_ms) AS avg_ms,
  quantile_cont(duration_ms, 0.50) AS p50_ms,
  quantile_cont(duration_ms, 0.95) AS p95_ms,
  SUM(COALESCE(returned, 0)) AS features,
  AVG(CASE WHEN limited THEN 1 ELSE 0 END) AS limited_rate
FROM fetches
{where_sql}
GROUP BY strategy, outcome
ORDER BY strategy, outcome
"""

INSERT_FETCHES_SQL = """
INSERT INTO fetches
  (ts_ms, layer_id, strategy, endpoint, bbox_min_lon, bbox_min_lat, bbox_max_lon, bbox_max_lat,
   returned, limited, outcome, duration_ms)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""
