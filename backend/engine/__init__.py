"""
Client-side layer loading engine.

A `MapSession` holds one `LayerRuntimeState` per layer and a `LayerDataProvider` that
picks the fetch strategy (full GeoJSON, bbox window or intersection) and keeps
responses in request order. The `FilterReconciler` drives the filtered overlay and
hides the raw layers it replaces.
"""
