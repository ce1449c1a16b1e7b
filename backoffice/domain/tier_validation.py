from __future__ import annotations

from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Any

from pydantic import BaseModel

ZONE_SUBTYPE = "zone_rates"


def _band_dict(band: Any) -> dict[str, Any]:
    if isinstance(band, BaseModel):
        return band.model_dump()
    return dict(band)


def _to_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _sorted_bounds(
    bands: Iterable[Any],
    lower_key: str,
    upper_key: str,
) -> list[tuple[Decimal, Decimal | None]]:
    bounds: list[tuple[Decimal, Decimal | None]] = []
    for band in bands:
        row = _band_dict(band)
        lower = _to_decimal(row.get(lower_key))
        if lower is None:
            raise ValueError(f"{lower_key} is required")
        bounds.append((lower, _to_decimal(row.get(upper_key))))
    return sorted(bounds, key=lambda item: item[0])


def _bounds_are_ordered(bounds: list[tuple[Decimal, Decimal | None]]) -> bool:
    for lower, upper in bounds:
        if upper is not None and upper < lower:
            return False
    for (_, current_upper), (next_lower, _) in zip(bounds, bounds[1:]):
        if current_upper is None:
            return False
        if current_upper >= next_lower:
            return False
    return True


def validate_tiers(tiers: Iterable[Any]) -> bool:
    bounds = _sorted_bounds(tiers, "min_volume", "max_volume")
    return _bounds_are_ordered(bounds)


def find_tier_gaps(tiers: Iterable[Any]) -> list[tuple[Decimal, Decimal]]:
    bounds = _sorted_bounds(tiers, "min_volume", "max_volume")
    gaps: list[tuple[Decimal, Decimal]] = []
    for (_, current_upper), (next_lower, _) in zip(bounds, bounds[1:]):
        if current_upper is not None and next_lower > current_upper:
            gaps.append((current_upper, next_lower))
    return gaps


def validate_zones(zones: Iterable[Any]) -> bool:
    bounds = _sorted_bounds(zones, "min_zone", "max_zone")
    if not _bounds_are_ordered(bounds):
        return False
    for (_, current_upper), (next_lower, _) in zip(bounds, bounds[1:]):
        if current_upper is not None and next_lower != current_upper + 1:
            return False
    return True


def find_tier(tiers: Iterable[Any], volume: Decimal) -> dict[str, Any] | None:
    selected: dict[str, Any] | None = None
    for tier in sorted((_band_dict(item) for item in tiers), key=lambda row: _to_decimal(row["min_volume"])):
        if _to_decimal(tier["min_volume"]) <= volume:
            selected = tier
    if selected is None:
        return None
    upper = _to_decimal(selected.get("max_volume"))
    if upper is not None and volume > upper:
        return None
    return selected


def find_zone(zones: Iterable[Any], zone: int) -> dict[str, Any] | None:
    for row in (_band_dict(item) for item in zones):
        upper = row.get("max_zone")
        if int(row["min_zone"]) <= zone and (upper is None or zone <= int(upper)):
            return row
    return None


def collect_rate_errors(rates: Mapping[str, Any]) -> list[str]:
    errors: list[str] = []
    for service_type, table in sorted(rates.items()):
        if service_type == "vas" or not isinstance(table, Mapping):
            continue
        for subtype, value in sorted(table.items()):
            if not isinstance(value, list):
                continue
            path = f"{service_type}.{subtype}"
            if not value:
                errors.append(f"{path} must define at least one band")
            elif subtype == ZONE_SUBTYPE:
                if not validate_zones(value):
                    errors.append(f"{path} zones must be contiguous and non-overlapping")
            elif not validate_tiers(value):
                errors.append(f"{path} tiers overlap or follow an open-ended tier")
    return errors


def collect_tier_gaps(rates: Mapping[str, Any]) -> dict[str, list[tuple[Decimal, Decimal]]]:
    gaps: dict[str, list[tuple[Decimal, Decimal]]] = {}
    for service_type, table in sorted(rates.items()):
        if service_type == "vas" or not isinstance(table, Mapping):
            continue
        for subtype, value in sorted(table.items()):
            if subtype == ZONE_SUBTYPE or not isinstance(value, list) or not value:
                continue
            found = find_tier_gaps(value)
            if found:
                gaps[f"{service_type}.{subtype}"] = found
    return gaps
