from __future__ import annotations

from typing import Any

PERM_WILDCARD = "*"
PERM_REGISTRY_READ = "registry.read"
PERM_REGISTRY_WRITE = "registry.write"
PERM_RATE_CARD_READ = "rate_card.read"
PERM_RATE_CARD_WRITE = "rate_card.write"
PERM_BILLING_READ = "billing.read"
PERM_BILLING_WRITE = "billing.write"

DEFAULT_PERMISSION_NAMES = [
    PERM_WILDCARD,
    PERM_REGISTRY_READ,
    PERM_REGISTRY_WRITE,
    PERM_RATE_CARD_READ,
    PERM_RATE_CARD_WRITE,
    PERM_BILLING_READ,
    PERM_BILLING_WRITE,
]


def has_permission(claims: dict[str, Any], permission: str) -> bool:
    permissions = claims.get("permissions", [])
    if not isinstance(permissions, list):
        return False
    return permission in permissions or PERM_WILDCARD in permissions
