from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Literal, Mapping

from api.models import FeaturesCatalog

FilterMode = Literal["selection", "properties"]

# Column spellings differ between uploaded shapefiles; the API resolves them to one name.
PROPERTY_ALIASES: dict[str, str] = {
    "NO_DISTRIT": "CODDISTRITO",
    "No_REGIÓN": "CODREGION",
    "No_REGION": "CODREGION",
}


class InvalidFilterError(ValueError):
    pass


def _split_values(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        parts = raw.split(",")
    elif isinstance(raw, (int, float)):
        parts = [str(raw)]
    else:
        parts = [str(v) for v in raw if v is not None]
    return [p.strip() for p in parts if p.strip()]


def normalize_property_filters(filters: Mapping[str, Any]) -> dict[str, tuple[str, ...]]:
    """
    `{property: "5,10" | [5, 10]}` -> `{canonical property: ("5", "10")}`.

    Aliased properties are folded into their canonical name, values are de-duplicated
    (first occurrence wins) and properties without values are dropped.
    """
    out: dict[str, list[str]] = {}
    for raw_key, raw_values in filters.items():
        key = str(raw_key).strip()
        if not key:
            raise InvalidFilterError("Property name must not be empty")
        key = PROPERTY_ALIASES.get(key, key)
        bucket = out.setdefault(key, [])
        for v in _split_values(raw_values):
            if v not in bucket:
                bucket.append(v)
    return {k: tuple(v) for k, v in out.items() if v}


def parse_ids(ids: Iterable[Any], *, what: str = "feature id") -> tuple[int, ...]:
    out: list[int] = []
    for raw in ids:
        if isinstance(raw, bool):
            raise InvalidFilterError(f"Invalid {what}: {raw!r}")
        try:
            fid = int(str(raw).strip())
        except (TypeError, ValueError) as e:
            raise InvalidFilterError(f"Invalid {what}: {raw!r}") from e
        if fid not in out:
            out.append(fid)
    return tuple(out)


@dataclass(frozen=True)
class FilterSelection:
    """
    What the user picked in the filter panel.

    selection mode: explicit feature ids of a single layer.
    properties mode: `property -> values` over one or more layers (values OR-ed,
    properties AND-ed); `multi_layer` fans the query out in one request.
    """

    mode: FilterMode
    layer_ids: tuple[int, ...] = ()
    feature_ids: tuple[int, ...] = ()
    properties: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    multi_layer: bool = False

    @classmethod
    def selection(cls, layer_id: int, feature_ids: Iterable[Any]) -> "FilterSelection":
        return cls(
            mode="selection",
            layer_ids=(int(layer_id),),
            feature_ids=parse_ids(feature_ids),
        )

    @classmethod
    def by_properties(
        cls,
        layer_ids: Iterable[Any],
        values: Mapping[str, Any],
        *,
        multi_layer: bool | None = None,
    ) -> "FilterSelection":
        ids = parse_ids(layer_ids, what="layer id")
        return cls(
            mode="properties",
            layer_ids=ids,
            properties=normalize_property_filters(values),
            multi_layer=len(ids) > 1 if multi_layer is None else bool(multi_layer),
        )

    @property
    def is_empty(self) -> bool:
        if not self.layer_ids:
            return True
        if self.mode == "selection":
            return not self.feature_ids
        return not self.properties

    def query_params(self) -> dict[str, str]:
        return {k: ",".join(v) for k, v in self.properties.items()}

    def with_feature_ids(self, feature_ids: Iterable[Any]) -> "FilterSelection":
        return FilterSelection.selection(self.layer_ids[0], feature_ids)

    def with_layers(self, layer_ids: Iterable[Any]) -> "FilterSelection":
        return FilterSelection.by_properties(
            layer_ids, dict(self.properties), multi_layer=self.multi_layer or None
        )


def property_values(catalog: FeaturesCatalog) -> dict[str, list[str]]:
    """
    Distinct non-null values per property key in a layer catalog, sorted.

    Feeds the properties-mode picker; keys come out under their canonical alias.
    """
    seen: dict[str, set[str]] = {}
    for feat in catalog.features:
        for raw_key, value in (feat.properties or {}).items():
            if value is None or value == "":
                continue
            key = PROPERTY_ALIASES.get(raw_key, raw_key)
            seen.setdefault(key, set()).add(str(value))
    return {k: sorted(v, key=_natural_key) for k, v in sorted(seen.items())}


def _natural_key(value: str) -> tuple[int, float, str]:
    # "2" before "10"; non-numeric values after numbers, alphabetically.
    try:
        return (0, float(value), value)
    except ValueError:
        return (1, 0.0, value)
