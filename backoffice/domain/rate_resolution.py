from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from backoffice.domain.models import BillingCycle, RateCard, RateCardType, as_utc
from backoffice.domain.tier_validation import ZONE_SUBTYPE, find_tier, find_zone

FAR_FUTURE = datetime(9999, 12, 31, tzinfo=UTC)
RATE_QUANTUM = Decimal("0.0001")
HUNDRED = Decimal("100")

VAS_SERVICE = "vas"
VAS_ACTIVITY_PREFIX = "vas."
MARKUP_SUBTYPE = "markup_percent"
VOLUME_DISCOUNTS_KEY = "volume_discounts"
DISCOUNTED_SERVICE = "fulfillment"
DEFAULT_BILLING_CYCLE = BillingCycle.MONTHLY

SERVICE_SUBTYPES: dict[str, tuple[str, ...]] = {
    "receiving": (
        "standard_pallet",
        "oversize_pallet",
        "container_devanning_20ft",
        "container_devanning_40ft",
        "per_item",
        "per_hour",
    ),
    "storage": (
        "pallet_monthly",
        "pallet_daily",
        "cubic_foot_monthly",
        "long_term_penalty_monthly",
    ),
    "fulfillment": (
        "base_order",
        "additional_item",
        "b2b_pallet",
        "pick_per_line",
    ),
    "shipping": (
        MARKUP_SUBTYPE,
        "label_fee",
        ZONE_SUBTYPE,
    ),
}


@dataclass(frozen=True)
class ActivityPricing:
    service_type: str
    subtype: str
    category: str
    unit: str | None = None


ACTIVITY_TYPES: dict[str, ActivityPricing] = {
    "receiving_pallet": ActivityPricing("receiving", "standard_pallet", "receiving", "pallet"),
    "receiving_oversize_pallet": ActivityPricing("receiving", "oversize_pallet", "receiving", "pallet"),
    "container_devanning_20ft": ActivityPricing("receiving", "container_devanning_20ft", "receiving", "container"),
    "container_devanning_40ft": ActivityPricing("receiving", "container_devanning_40ft", "receiving", "container"),
    "receiving_item": ActivityPricing("receiving", "per_item", "receiving", "item"),
    "receiving_labor_hour": ActivityPricing("receiving", "per_hour", "receiving", "hour"),
    "storage_pallet_monthly": ActivityPricing("storage", "pallet_monthly", "storage", "pallet"),
    "storage_pallet_daily": ActivityPricing("storage", "pallet_daily", "storage", "pallet_day"),
    "storage_cubic_foot_monthly": ActivityPricing("storage", "cubic_foot_monthly", "storage", "cubic_foot"),
    "storage_long_term_penalty": ActivityPricing("storage", "long_term_penalty_monthly", "storage", "pallet"),
    "order_fulfillment": ActivityPricing("fulfillment", "base_order", "fulfillment", "order"),
    "additional_item": ActivityPricing("fulfillment", "additional_item", "fulfillment", "item"),
    "b2b_pallet": ActivityPricing("fulfillment", "b2b_pallet", "fulfillment", "pallet"),
    "pick_line": ActivityPricing("fulfillment", "pick_per_line", "fulfillment", "line"),
    "shipping_label": ActivityPricing("shipping", "label_fee", "shipping", "label"),
    "shipping_parcel": ActivityPricing("shipping", MARKUP_SUBTYPE, "shipping", "shipment"),
    "shipping_zone": ActivityPricing("shipping", ZONE_SUBTYPE, "shipping", "shipment"),
}


def activity_pricing(activity_type: str) -> ActivityPricing | None:
    if activity_type.startswith(VAS_ACTIVITY_PREFIX):
        key = activity_type[len(VAS_ACTIVITY_PREFIX) :].strip()
        if not key:
            return None
        return ActivityPricing(VAS_SERVICE, key, VAS_SERVICE)
    return ACTIVITY_TYPES.get(activity_type)


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass(frozen=True)
class RateSource:
    rate_card_id: str
    rate_card_type: RateCardType
    effective_date: datetime
    expires_date: datetime | None = None
    rates: Mapping[str, Any] = field(default_factory=dict)
    parent_rate_card_id: str | None = None
    minimum_monthly_charge: Decimal | None = None
    created_at: datetime | None = None
    is_active: bool = True
    retired: bool = False
    archived: bool = False
    billing_cycles: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "effective_date", as_utc(self.effective_date))
        if self.expires_date is not None:
            object.__setattr__(self, "expires_date", as_utc(self.expires_date))
        if self.created_at is not None:
            object.__setattr__(self, "created_at", as_utc(self.created_at))

    @classmethod
    def from_rate_card(cls, card: RateCard) -> RateSource:
        return cls(
            rate_card_id=card.id,
            rate_card_type=card.rate_card_type,
            effective_date=card.effective_date,
            expires_date=card.expires_date,
            rates=card.rates or {},
            parent_rate_card_id=card.parent_rate_card_id,
            minimum_monthly_charge=card.minimum_monthly_charge,
            created_at=card.created_at,
            is_active=card.is_active,
            retired=card.deactivated_at is not None,
            archived=card.archived_at is not None,
            billing_cycles=card.billing_cycles or {},
        )

    @property
    def is_adjustment(self) -> bool:
        return self.rate_card_type == RateCardType.ADJUSTMENT

    @property
    def is_eligible(self) -> bool:
        # Retired cards keep pricing their own history; a card that is merely
        # inactive, such as a restored one, waits for reactivation.
        if self.archived:
            return False
        return self.is_active or self.retired

    def covers(self, at: datetime) -> bool:
        moment = as_utc(at)
        if moment < self.effective_date:
            return False
        return self.expires_date is None or moment < self.expires_date


def _recency_key(source: RateSource) -> tuple[datetime, int, datetime, str]:
    return (
        source.effective_date,
        1 if source.is_adjustment else 0,
        source.created_at or source.effective_date,
        source.rate_card_id,
    )


def select_rate_sources(cards: Iterable[RateSource], at: datetime) -> list[RateSource]:
    covering = [item for item in cards if item.is_eligible and item.covers(at)]
    standards = [item for item in covering if not item.is_adjustment]
    if not standards:
        return []
    standard = max(standards, key=_recency_key)
    adjustments = [
        item
        for item in covering
        if item.is_adjustment and item.parent_rate_card_id == standard.rate_card_id
    ]
    return sorted([standard, *adjustments], key=_recency_key, reverse=True)


def _normalize_value(value: Any) -> Any:
    if isinstance(value, list):
        return [dict(item) for item in value]
    return to_decimal(value)


def find_defining_source(
    sources: Sequence[RateSource],
    service_type: str,
    subtype: str,
) -> tuple[Any, RateSource | None]:
    for source in sources:
        table = source.rates.get(service_type)
        if isinstance(table, Mapping) and table.get(subtype) is not None:
            return _normalize_value(table[subtype]), source
    return None, None


def resolve_effective_rates(sources: Sequence[RateSource], service_type: str) -> dict[str, Any]:
    rates: dict[str, Any] = {}
    for subtype in SERVICE_SUBTYPES.get(service_type, ()):
        value, source = find_defining_source(sources, service_type, subtype)
        if source is not None:
            rates[subtype] = value
    return rates


def _chronological_sources(sources: Sequence[RateSource]) -> list[RateSource]:
    standards = [item for item in sources if not item.is_adjustment]
    adjustments = sorted(
        (item for item in sources if item.is_adjustment),
        key=lambda item: (item.effective_date, item.created_at or item.effective_date, item.rate_card_id),
    )
    return [*standards, *adjustments]


def _merge_vas(sources: Sequence[RateSource]) -> dict[str, tuple[Decimal, str]]:
    merged: dict[str, tuple[Decimal, str]] = {}
    for source in _chronological_sources(sources):
        table = source.rates.get(VAS_SERVICE)
        if not isinstance(table, Mapping):
            continue
        for key, value in table.items():
            if value is not None:
                merged[key] = (to_decimal(value), source.rate_card_id)
    return merged


def resolve_vas_rates(sources: Sequence[RateSource]) -> dict[str, Decimal]:
    merged = _merge_vas(sources)
    return {key: merged[key][0] for key in sorted(merged)}


def resolve_minimum_charge(sources: Sequence[RateSource]) -> Decimal | None:
    for source in sources:
        if source.minimum_monthly_charge is not None:
            return to_decimal(source.minimum_monthly_charge)
    return None


def resolve_volume_discounts(sources: Sequence[RateSource]) -> list[dict[str, Any]]:
    for source in sources:
        discounts = source.rates.get(VOLUME_DISCOUNTS_KEY)
        if isinstance(discounts, list) and discounts:
            return sorted((dict(item) for item in discounts), key=lambda item: int(item["min_orders_monthly"]))
    return []


def volume_discount_percent(discounts: Sequence[Mapping[str, Any]], order_volume: Decimal) -> Decimal | None:
    selected: Decimal | None = None
    for item in sorted(discounts, key=lambda row: int(row["min_orders_monthly"])):
        if order_volume >= int(item["min_orders_monthly"]):
            selected = to_decimal(item["discount_percent"])
    return selected


def resolve_billing_cycle(sources: Sequence[RateSource], service_type: str | None) -> BillingCycle:
    if service_type is None:
        return DEFAULT_BILLING_CYCLE
    for source in sources:
        cycle = source.billing_cycles.get(service_type)
        if cycle:
            return BillingCycle(cycle)
    return DEFAULT_BILLING_CYCLE


@dataclass(frozen=True)
class ResolvedRate:
    pricing: ActivityPricing | None
    unit_rate: Decimal | None = None
    rate_card_id: str | None = None
    miss_reason: str | None = None

    @property
    def is_priced(self) -> bool:
        return self.unit_rate is not None


def resolve_activity_rate(
    sources: Sequence[RateSource],
    activity_type: str,
    *,
    quantity: Decimal | None = None,
    volume: Decimal | None = None,
    zone: int | None = None,
    amount: Decimal | None = None,
    order_volume: Decimal | None = None,
) -> ResolvedRate:
    pricing = activity_pricing(activity_type)
    if pricing is None:
        return ResolvedRate(pricing=None, miss_reason="unknown_activity_type")

    if pricing.service_type == VAS_SERVICE:
        merged = _merge_vas(sources)
        if pricing.subtype not in merged:
            return ResolvedRate(pricing=pricing, miss_reason="rate_not_defined")
        rate, rate_card_id = merged[pricing.subtype]
        return ResolvedRate(pricing=pricing, unit_rate=rate.quantize(RATE_QUANTUM, ROUND_HALF_UP), rate_card_id=rate_card_id)

    value, source = find_defining_source(sources, pricing.service_type, pricing.subtype)
    if source is None:
        return ResolvedRate(pricing=pricing, miss_reason="rate_not_defined")

    if pricing.subtype == ZONE_SUBTYPE:
        if zone is None:
            return ResolvedRate(pricing=pricing, rate_card_id=source.rate_card_id, miss_reason="zone_missing")
        band = find_zone(value, zone)
        if band is None:
            return ResolvedRate(pricing=pricing, rate_card_id=source.rate_card_id, miss_reason="zone_not_covered")
        rate = to_decimal(band["rate"])
    elif pricing.subtype == MARKUP_SUBTYPE:
        if amount is None or not quantity:
            return ResolvedRate(pricing=pricing, rate_card_id=source.rate_card_id, miss_reason="amount_missing")
        rate = (to_decimal(amount) / quantity) * (1 + value / HUNDRED)
    elif isinstance(value, list):
        tier = find_tier(value, volume if volume is not None else Decimal("0"))
        if tier is None:
            return ResolvedRate(pricing=pricing, rate_card_id=source.rate_card_id, miss_reason="volume_outside_tiers")
        rate = to_decimal(tier["rate"])
    else:
        rate = value

    if pricing.service_type == DISCOUNTED_SERVICE and order_volume is not None:
        discount = volume_discount_percent(resolve_volume_discounts(sources), order_volume)
        if discount:
            rate = rate * (1 - discount / HUNDRED)

    return ResolvedRate(
        pricing=pricing,
        unit_rate=rate.quantize(RATE_QUANTUM, ROUND_HALF_UP),
        rate_card_id=source.rate_card_id,
    )
