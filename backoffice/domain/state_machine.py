from __future__ import annotations

from backoffice.domain.models import InvoiceStatus

INVOICE_ALLOWED_TRANSITIONS: dict[InvoiceStatus, set[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: {InvoiceStatus.ISSUED, InvoiceStatus.VOID},
    InvoiceStatus.ISSUED: {
        InvoiceStatus.SENT,
        InvoiceStatus.PARTIAL,
        InvoiceStatus.PAID,
        InvoiceStatus.OVERDUE,
        InvoiceStatus.VOID,
        InvoiceStatus.CREDITED,
    },
    InvoiceStatus.SENT: {
        InvoiceStatus.PARTIAL,
        InvoiceStatus.PAID,
        InvoiceStatus.OVERDUE,
        InvoiceStatus.VOID,
        InvoiceStatus.CREDITED,
    },
    InvoiceStatus.PARTIAL: {
        InvoiceStatus.PARTIAL,
        InvoiceStatus.PAID,
        InvoiceStatus.OVERDUE,
        InvoiceStatus.CREDITED,
    },
    InvoiceStatus.OVERDUE: {
        InvoiceStatus.PARTIAL,
        InvoiceStatus.PAID,
        InvoiceStatus.CREDITED,
        InvoiceStatus.VOID,
    },
    InvoiceStatus.PAID: {InvoiceStatus.CREDITED},
    InvoiceStatus.VOID: set(),
    InvoiceStatus.CREDITED: set(),
}

# A new invoice may be generated for a period only when every earlier one is in one of these.
INVOICE_REPLACEABLE_STATES = {InvoiceStatus.VOID, InvoiceStatus.CREDITED}

PAYABLE_STATES = {
    InvoiceStatus.ISSUED,
    InvoiceStatus.SENT,
    InvoiceStatus.PARTIAL,
    InvoiceStatus.OVERDUE,
}


def can_transition(source: InvoiceStatus, target: InvoiceStatus) -> bool:
    return target in INVOICE_ALLOWED_TRANSITIONS.get(source, set())
