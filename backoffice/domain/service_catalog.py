from __future__ import annotations

from backoffice.domain.models import (
    ALLOWED_BILLING_CYCLES,
    BillingCategoryRead,
    BillingCycle,
    BillingServiceRead,
)
from backoffice.domain.rate_resolution import ACTIVITY_TYPES, VAS_SERVICE, ActivityPricing, activity_pricing

CATEGORY_NAMES: dict[str, str] = {
    "receiving": "Receiving",
    "storage": "Storage",
    "fulfillment": "Fulfillment",
    "shipping": "Shipping",
    VAS_SERVICE: "Value-added services",
}

SERVICE_NAMES: dict[str, str] = {
    "receiving_pallet": "Standard pallet receiving",
    "receiving_oversize_pallet": "Oversize pallet receiving",
    "container_devanning_20ft": "20ft container devanning",
    "container_devanning_40ft": "40ft container devanning",
    "receiving_item": "Per-item receiving",
    "receiving_labor_hour": "Receiving labor",
    "storage_pallet_monthly": "Pallet storage (monthly)",
    "storage_pallet_daily": "Pallet storage (daily)",
    "storage_cubic_foot_monthly": "Cubic foot storage (monthly)",
    "storage_long_term_penalty": "Long-term storage penalty",
    "order_fulfillment": "Order fulfillment",
    "additional_item": "Additional item pick",
    "b2b_pallet": "B2B pallet fulfillment",
    "pick_line": "Pick per line",
    "shipping_label": "Shipping label",
    "shipping_parcel": "Parcel shipping (carrier cost + markup)",
    "shipping_zone": "Zone-rated shipping",
}


def _allowed_cycles(service_type: str) -> list[BillingCycle]:
    return sorted(ALLOWED_BILLING_CYCLES.get(service_type, {BillingCycle.MONTHLY}))


def _service_read(code: str, pricing: ActivityPricing) -> BillingServiceRead:
    default_name = code.replace(".", " ").replace("_", " ").capitalize()
    return BillingServiceRead(
        code=code,
        name=SERVICE_NAMES.get(code, default_name),
        category=pricing.category,
        service_type=pricing.service_type,
        subtype=pricing.subtype,
        unit=pricing.unit,
        allowed_billing_cycles=_allowed_cycles(pricing.service_type),
    )


def list_billing_services() -> list[BillingCategoryRead]:
    categories: list[BillingCategoryRead] = []
    for sort_order, (category, name) in enumerate(CATEGORY_NAMES.items(), start=1):
        # VAS codes are open-ended (vas.<key>) and priced from the card's vas map.
        services = [
            _service_read(code, pricing)
            for code, pricing in ACTIVITY_TYPES.items()
            if pricing.category == category
        ]
        categories.append(
            BillingCategoryRead(
                code=category,
                name=name,
                sort_order=sort_order,
                allowed_billing_cycles=_allowed_cycles(category),
                services=services,
            )
        )
    return categories


def get_billing_service(code: str) -> BillingServiceRead | None:
    pricing = activity_pricing(code.strip())
    if pricing is None:
        return None
    return _service_read(code.strip(), pricing)
