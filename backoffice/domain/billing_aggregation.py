from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from backoffice.domain.models import BillableActivity, BillingCycle, InvoiceLineDraft, as_utc
from backoffice.domain.rate_resolution import (
    RATE_QUANTUM,
    RateSource,
    activity_pricing,
    resolve_activity_rate,
    resolve_billing_cycle,
    resolve_minimum_charge,
    select_rate_sources,
    to_decimal,
)

CENT = Decimal("0.01")
QUANTITY_QUANTUM = Decimal("0.001")
UNCLASSIFIED_CATEGORY = "unclassified"
MINIMUM_CATEGORY = "minimum"
MINIMUM_DESCRIPTION = "Monthly minimum charge adjustment"
ORDER_ACTIVITY_TYPE = "order_fulfillment"


def to_cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class ActivityFact:
    activity_id: str
    occurred_at: datetime
    activity_type: str
    quantity: Decimal
    description: str | None = None
    unit: str | None = None
    rate_override: Decimal | None = None
    amount: Decimal | None = None
    zone: int | None = None

    @classmethod
    def from_activity(cls, row: BillableActivity) -> ActivityFact:
        return cls(
            activity_id=row.id,
            occurred_at=as_utc(row.occurred_at),
            activity_type=row.activity_type,
            quantity=to_decimal(row.quantity),
            description=row.description,
            unit=row.unit,
            rate_override=None if row.rate_override is None else to_decimal(row.rate_override),
            amount=None if row.amount is None else to_decimal(row.amount),
            zone=row.zone,
        )


@dataclass(frozen=True)
class PricedActivity:
    activity: ActivityFact
    description: str
    category: str
    service_type: str | None
    subtype: str | None
    unit: str | None
    unit_rate: Decimal
    is_priced: bool
    rate_card_id: str | None = None
    miss_reason: str | None = None


@dataclass
class _LineGroup:
    description: str
    category: str
    unit_rate: Decimal
    is_priced: bool
    service_type: str | None = None
    subtype: str | None = None
    unit: str | None = None
    quantity: Decimal = Decimal("0")
    activity_count: int = 0
    rate_card_ids: set[str] = field(default_factory=set)


def period_volumes(activities: Iterable[ActivityFact]) -> dict[str, Decimal]:
    volumes: dict[str, Decimal] = {}
    for activity in activities:
        volumes[activity.activity_type] = volumes.get(activity.activity_type, Decimal("0")) + activity.quantity
    return volumes


def price_activity(
    activity: ActivityFact,
    cards: Sequence[RateSource],
    volumes: dict[str, Decimal] | None = None,
) -> PricedActivity:
    label = activity.description or activity.activity_type
    sources = select_rate_sources(cards, activity.occurred_at)
    resolved = resolve_activity_rate(
        sources,
        activity.activity_type,
        quantity=activity.quantity,
        volume=(volumes or {}).get(activity.activity_type, activity.quantity),
        zone=activity.zone,
        amount=activity.amount,
        order_volume=(volumes or {}).get(ORDER_ACTIVITY_TYPE),
    )
    pricing = resolved.pricing
    category = pricing.category if pricing is not None else UNCLASSIFIED_CATEGORY
    unit = activity.unit or (pricing.unit if pricing is not None else None)

    if activity.rate_override is not None:
        return PricedActivity(
            activity=activity,
            description=label,
            category=category,
            service_type=pricing.service_type if pricing is not None else None,
            subtype=pricing.subtype if pricing is not None else None,
            unit=unit,
            unit_rate=activity.rate_override.quantize(RATE_QUANTUM, rounding=ROUND_HALF_UP),
            is_priced=True,
        )

    return PricedActivity(
        activity=activity,
        description=label,
        category=category,
        service_type=pricing.service_type if pricing is not None else None,
        subtype=pricing.subtype if pricing is not None else None,
        unit=unit,
        unit_rate=resolved.unit_rate if resolved.is_priced else Decimal("0.0000"),
        is_priced=resolved.is_priced,
        rate_card_id=resolved.rate_card_id if resolved.is_priced else None,
        miss_reason=resolved.miss_reason,
    )


def price_activities(
    activities: Iterable[ActivityFact],
    cards: Sequence[RateSource],
) -> list[PricedActivity]:
    ordered = sorted(activities, key=lambda item: (item.occurred_at, item.activity_id))
    volumes = period_volumes(ordered)
    return [price_activity(item, cards, volumes) for item in ordered]


def group_priced_activities(priced: Iterable[PricedActivity]) -> list[InvoiceLineDraft]:
    groups: dict[tuple[str, str, Decimal, bool], _LineGroup] = {}
    for item in priced:
        key = (item.category, item.description, item.unit_rate, item.is_priced)
        group = groups.get(key)
        if group is None:
            group = _LineGroup(
                description=item.description,
                category=item.category,
                unit_rate=item.unit_rate,
                is_priced=item.is_priced,
                service_type=item.service_type,
                subtype=item.subtype,
                unit=item.unit,
            )
            groups[key] = group
        group.quantity += item.activity.quantity
        group.activity_count += 1
        if item.rate_card_id is not None:
            group.rate_card_ids.add(item.rate_card_id)

    lines: list[InvoiceLineDraft] = []
    for key in sorted(groups, key=lambda value: (value[0], value[1], value[2], not value[3])):
        group = groups[key]
        # Corrections that cancel a group out entirely leave no line behind.
        if group.quantity == 0:
            continue
        lines.append(
            InvoiceLineDraft(
                description=group.description,
                category=group.category,
                service_type=group.service_type,
                subtype=group.subtype,
                quantity=group.quantity.quantize(QUANTITY_QUANTUM, rounding=ROUND_HALF_UP),
                unit=group.unit,
                unit_rate=group.unit_rate,
                line_total=to_cents(group.quantity * group.unit_rate),
                is_priced=group.is_priced,
                activity_count=group.activity_count,
                source_rate_card_ids=sorted(group.rate_card_ids),
            )
        )
    return lines


def aggregate_invoice_lines(
    activities: Iterable[ActivityFact],
    cards: Sequence[RateSource],
) -> list[InvoiceLineDraft]:
    return group_priced_activities(price_activities(activities, cards))


def lines_subtotal(lines: Iterable[InvoiceLineDraft]) -> Decimal:
    return to_cents(sum((line.line_total for line in lines), Decimal("0")))


def period_minimum_charge(cards: Sequence[RateSource], period_end: datetime) -> tuple[Decimal | None, str | None]:
    last_instant = as_utc(period_end) - timedelta(microseconds=1)
    sources = select_rate_sources(cards, last_instant)
    minimum = resolve_minimum_charge(sources)
    if minimum is None:
        return None, None
    source_id = next(item.rate_card_id for item in sources if item.minimum_monthly_charge is not None)
    return to_cents(minimum), source_id


def minimum_charge_line(
    lines: Sequence[InvoiceLineDraft],
    minimum: Decimal | None,
    rate_card_id: str | None = None,
) -> InvoiceLineDraft | None:
    if minimum is None:
        return None
    shortfall = to_cents(minimum - lines_subtotal(lines))
    if shortfall <= 0:
        return None
    return InvoiceLineDraft(
        description=MINIMUM_DESCRIPTION,
        category=MINIMUM_CATEGORY,
        quantity=Decimal("1.000"),
        unit_rate=shortfall.quantize(RATE_QUANTUM),
        line_total=shortfall,
        is_priced=True,
        activity_count=0,
        source_rate_card_ids=[rate_card_id] if rate_card_id else [],
    )


def unpriced_line_count(lines: Iterable[InvoiceLineDraft]) -> int:
    return sum(1 for line in lines if not line.is_priced)


def line_detail(line: InvoiceLineDraft) -> dict[str, Any]:
    return {"source_rate_card_ids": list(line.source_rate_card_ids)}


def activity_billing_cycle(activity: ActivityFact, cards: Sequence[RateSource]) -> BillingCycle:
    pricing = activity_pricing(activity.activity_type)
    sources = select_rate_sources(cards, activity.occurred_at)
    return resolve_billing_cycle(sources, pricing.service_type if pricing is not None else None)


def activities_for_cycle(
    activities: Iterable[ActivityFact],
    cards: Sequence[RateSource],
    billing_cycle: BillingCycle,
) -> list[ActivityFact]:
    return [item for item in activities if activity_billing_cycle(item, cards) == billing_cycle]
