from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from backoffice.domain.models import BillingCycle, RateCardType
from backoffice.domain.rate_resolution import (
    RateSource,
    activity_pricing,
    resolve_activity_rate,
    resolve_billing_cycle,
    resolve_effective_rates,
    resolve_minimum_charge,
    resolve_vas_rates,
    resolve_volume_discounts,
    select_rate_sources,
    volume_discount_percent,
)


def _dt(year: int, month: int, day: int) -> datetime:
    return datetime(year, month, day, tzinfo=UTC)


def _standard(
    card_id: str,
    effective: datetime,
    expires: datetime | None = None,
    rates: dict | None = None,
    **kwargs: object,
) -> RateSource:
    return RateSource(
        rate_card_id=card_id,
        rate_card_type=RateCardType.STANDARD,
        effective_date=effective,
        expires_date=expires,
        rates=rates or {},
        **kwargs,
    )


def _adjustment(
    card_id: str,
    parent_id: str,
    effective: datetime,
    expires: datetime | None = None,
    rates: dict | None = None,
    **kwargs: object,
) -> RateSource:
    return RateSource(
        rate_card_id=card_id,
        rate_card_type=RateCardType.ADJUSTMENT,
        parent_rate_card_id=parent_id,
        effective_date=effective,
        expires_date=expires,
        rates=rates or {},
        **kwargs,
    )


def _pallet_monthly(cards: list[RateSource], at: datetime) -> Decimal | None:
    return resolve_effective_rates(select_rate_sources(cards, at), "storage").get("pallet_monthly")


def test_adjustment_takes_precedence_inside_its_window() -> None:
    cards = [
        _standard("std-1", _dt(2024, 1, 1), rates={"storage": {"pallet_monthly": "20"}}),
        _adjustment(
            "adj-1",
            "std-1",
            _dt(2024, 3, 1),
            _dt(2024, 4, 1),
            rates={"storage": {"pallet_monthly": "15"}},
        ),
    ]

    assert _pallet_monthly(cards, _dt(2024, 3, 15)) == Decimal("15")
    assert _pallet_monthly(cards, _dt(2024, 2, 15)) == Decimal("20")
    assert _pallet_monthly(cards, _dt(2024, 4, 1)) == Decimal("20")


def test_subtypes_not_defined_by_adjustment_fall_through_to_standard() -> None:
    cards = [
        _standard(
            "std-1",
            _dt(2024, 1, 1),
            rates={"storage": {"pallet_monthly": "20", "pallet_daily": "0.90"}},
        ),
        _adjustment("adj-1", "std-1", _dt(2024, 2, 1), rates={"storage": {"pallet_monthly": "15"}}),
    ]

    rates = resolve_effective_rates(select_rate_sources(cards, _dt(2024, 2, 10)), "storage")

    assert rates == {"pallet_monthly": Decimal("15"), "pallet_daily": Decimal("0.90")}


def test_undefined_subtypes_are_absent_not_zero() -> None:
    cards = [_standard("std-1", _dt(2024, 1, 1), rates={"storage": {"pallet_monthly": "20"}})]
    rates = resolve_effective_rates(select_rate_sources(cards, _dt(2024, 1, 2)), "storage")
    assert "cubic_foot_monthly" not in rates
    assert resolve_effective_rates(select_rate_sources(cards, _dt(2024, 1, 2)), "receiving") == {}


def test_newer_adjustment_beats_older_one() -> None:
    cards = [
        _standard("std-1", _dt(2024, 1, 1), rates={"fulfillment": {"base_order": "3.00"}}),
        _adjustment("adj-old", "std-1", _dt(2024, 2, 1), rates={"fulfillment": {"base_order": "2.75"}}),
        _adjustment("adj-new", "std-1", _dt(2024, 3, 1), rates={"fulfillment": {"base_order": "2.50"}}),
    ]
    sources = select_rate_sources(cards, _dt(2024, 3, 10))

    assert [item.rate_card_id for item in sources] == ["adj-new", "adj-old", "std-1"]
    assert resolve_effective_rates(sources, "fulfillment") == {"base_order": Decimal("2.50")}


def test_vas_merges_key_by_key_in_chronological_order() -> None:
    cards = [
        _standard("std-1", _dt(2024, 1, 1), rates={"vas": {"kitting": "2.00"}}),
        _adjustment("adj-a", "std-1", _dt(2024, 2, 1), rates={"vas": {"labeling": "0.50"}}),
        _adjustment("adj-b", "std-1", _dt(2024, 3, 1), rates={"vas": {"kitting": "2.50"}}),
    ]

    merged = resolve_vas_rates(select_rate_sources(cards, _dt(2024, 3, 5)))

    assert merged == {"kitting": Decimal("2.50"), "labeling": Decimal("0.50")}


def test_adjustments_of_other_standards_are_ignored() -> None:
    cards = [
        _standard("std-1", _dt(2024, 1, 1), _dt(2024, 6, 1), rates={"storage": {"pallet_monthly": "20"}}),
        _standard("std-2", _dt(2024, 6, 1), rates={"storage": {"pallet_monthly": "22"}}),
        _adjustment("adj-1", "std-1", _dt(2024, 5, 1), rates={"storage": {"pallet_monthly": "15"}}),
    ]

    assert _pallet_monthly(cards, _dt(2024, 6, 10)) == Decimal("22")


def test_archived_and_inactive_open_cards_are_not_eligible() -> None:
    cards = [
        _standard("std-1", _dt(2024, 1, 1), rates={"storage": {"pallet_monthly": "20"}}, archived=True),
        _standard("std-2", _dt(2024, 1, 1), rates={"storage": {"pallet_monthly": "21"}}, is_active=False),
    ]
    assert select_rate_sources(cards, _dt(2024, 2, 1)) == []


def test_superseded_card_still_prices_its_own_history() -> None:
    cards = [
        _standard(
            "v1",
            _dt(2024, 1, 1),
            _dt(2024, 7, 1),
            rates={"storage": {"pallet_monthly": "20"}},
            is_active=False,
            retired=True,
        ),
        _standard("v2", _dt(2024, 7, 1), rates={"storage": {"pallet_monthly": "24"}}),
    ]

    assert _pallet_monthly(cards, _dt(2024, 3, 1)) == Decimal("20")
    assert _pallet_monthly(cards, _dt(2024, 7, 1)) == Decimal("24")


def test_naive_dates_are_read_as_utc() -> None:
    card = _standard("std-1", datetime(2024, 1, 1), rates={})
    assert card.effective_date.tzinfo is UTC
    assert card.covers(datetime(2024, 1, 1))


def test_minimum_charge_prefers_newest_source() -> None:
    cards = [
        _standard("std-1", _dt(2024, 1, 1), minimum_monthly_charge=Decimal("500.00")),
        _adjustment("adj-1", "std-1", _dt(2024, 2, 1), minimum_monthly_charge=Decimal("350.00")),
    ]
    assert resolve_minimum_charge(select_rate_sources(cards, _dt(2024, 1, 15))) == Decimal("500.00")
    assert resolve_minimum_charge(select_rate_sources(cards, _dt(2024, 2, 15))) == Decimal("350.00")


def test_activity_pricing_maps_vas_prefix() -> None:
    pricing = activity_pricing("vas.kitting")
    assert pricing is not None
    assert (pricing.service_type, pricing.subtype, pricing.category) == ("vas", "kitting", "vas")
    assert activity_pricing("vas.") is None
    assert activity_pricing("teleportation") is None


def test_tiered_rate_uses_period_volume() -> None:
    sources = [
        _standard(
            "std-1",
            _dt(2024, 1, 1),
            rates={
                "receiving": {
                    "standard_pallet": [
                        {"min_volume": 0, "max_volume": 100, "rate": "20"},
                        {"min_volume": 101, "max_volume": None, "rate": "18"},
                    ]
                }
            },
        )
    ]

    low = resolve_activity_rate(sources, "receiving_pallet", quantity=Decimal("5"), volume=Decimal("40"))
    high = resolve_activity_rate(sources, "receiving_pallet", quantity=Decimal("5"), volume=Decimal("140"))

    assert low.unit_rate == Decimal("20.0000")
    assert high.unit_rate == Decimal("18.0000")
    assert high.rate_card_id == "std-1"


def test_zone_rate_requires_a_covered_zone() -> None:
    sources = [
        _standard(
            "std-1",
            _dt(2024, 1, 1),
            rates={"shipping": {"zone_rates": [{"min_zone": 1, "max_zone": 4, "rate": "7.25"}]}},
        )
    ]

    assert resolve_activity_rate(sources, "shipping_zone", zone=3).unit_rate == Decimal("7.2500")
    assert resolve_activity_rate(sources, "shipping_zone").miss_reason == "zone_missing"
    assert resolve_activity_rate(sources, "shipping_zone", zone=8).miss_reason == "zone_not_covered"


def test_markup_prices_carrier_cost_per_shipment() -> None:
    sources = [_standard("std-1", _dt(2024, 1, 1), rates={"shipping": {"markup_percent": "15"}})]

    resolved = resolve_activity_rate(
        sources,
        "shipping_parcel",
        quantity=Decimal("2"),
        amount=Decimal("20.00"),
    )
    missing = resolve_activity_rate(sources, "shipping_parcel", quantity=Decimal("2"))

    assert resolved.unit_rate == Decimal("11.5000")
    assert missing.is_priced is False
    assert missing.miss_reason == "amount_missing"


def test_misses_are_results_not_errors() -> None:
    sources = [_standard("std-1", _dt(2024, 1, 1), rates={"storage": {"pallet_monthly": "20"}})]

    undefined = resolve_activity_rate(sources, "pick_line", quantity=Decimal("1"))
    unknown = resolve_activity_rate(sources, "teleportation", quantity=Decimal("1"))
    no_vas = resolve_activity_rate(sources, "vas.kitting", quantity=Decimal("1"))

    assert undefined.is_priced is False
    assert undefined.miss_reason == "rate_not_defined"
    assert unknown.pricing is None
    assert unknown.miss_reason == "unknown_activity_type"
    assert no_vas.miss_reason == "rate_not_defined"


def test_inactive_bounded_card_that_was_never_retired_is_not_eligible() -> None:
    restored = _standard(
        "std-1",
        _dt(2024, 1, 1),
        _dt(2024, 7, 1),
        rates={"storage": {"pallet_monthly": "20"}},
        is_active=False,
    )
    assert select_rate_sources([restored], _dt(2024, 3, 1)) == []


def test_billing_cycle_follows_newest_source_and_defaults_to_monthly() -> None:
    standard = _standard(
        "std-1",
        _dt(2024, 1, 1),
        billing_cycles={"fulfillment": "WEEKLY", "shipping": "IMMEDIATE"},
    )
    adjustment = _adjustment("adj-1", "std-1", _dt(2024, 3, 1), billing_cycles={"fulfillment": "MONTHLY"})

    early = select_rate_sources([standard, adjustment], _dt(2024, 2, 1))
    late = select_rate_sources([standard, adjustment], _dt(2024, 3, 5))

    assert resolve_billing_cycle(early, "fulfillment") == BillingCycle.WEEKLY
    assert resolve_billing_cycle(late, "fulfillment") == BillingCycle.MONTHLY
    assert resolve_billing_cycle(late, "shipping") == BillingCycle.IMMEDIATE
    assert resolve_billing_cycle(late, "storage") == BillingCycle.MONTHLY
    assert resolve_billing_cycle([], None) == BillingCycle.MONTHLY


DISCOUNTS = [
    {"min_orders_monthly": 1000, "discount_percent": "5"},
    {"min_orders_monthly": 5000, "discount_percent": "10"},
]


def test_volume_discount_picks_highest_threshold_reached() -> None:
    assert volume_discount_percent(DISCOUNTS, Decimal("999")) is None
    assert volume_discount_percent(DISCOUNTS, Decimal("1000")) == Decimal("5")
    assert volume_discount_percent(DISCOUNTS, Decimal("7500")) == Decimal("10")


def test_volume_discount_applies_to_fulfillment_only() -> None:
    card = _standard(
        "std-1",
        _dt(2024, 1, 1),
        rates={
            "fulfillment": {"base_order": "3.00"},
            "storage": {"pallet_monthly": "20"},
            "volume_discounts": DISCOUNTS,
        },
    )
    sources = select_rate_sources([card], _dt(2024, 2, 1))

    order = resolve_activity_rate(sources, "order_fulfillment", order_volume=Decimal("1200"))
    small = resolve_activity_rate(sources, "order_fulfillment", order_volume=Decimal("10"))
    storage = resolve_activity_rate(sources, "storage_pallet_monthly", order_volume=Decimal("1200"))

    assert order.unit_rate == Decimal("2.8500")
    assert small.unit_rate == Decimal("3.0000")
    assert storage.unit_rate == Decimal("20.0000")


def test_newest_source_defining_discounts_replaces_them() -> None:
    standard = _standard("std-1", _dt(2024, 1, 1), rates={"volume_discounts": DISCOUNTS})
    adjustment = _adjustment(
        "adj-1",
        "std-1",
        _dt(2024, 2, 1),
        rates={"volume_discounts": [{"min_orders_monthly": 200, "discount_percent": "2"}]},
    )

    sources = select_rate_sources([standard, adjustment], _dt(2024, 2, 10))

    assert resolve_volume_discounts(sources) == [{"min_orders_monthly": 200, "discount_percent": "2"}]
