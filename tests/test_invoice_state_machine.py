from __future__ import annotations

import pytest

from backoffice.domain.models import InvoiceStatus
from backoffice.domain.state_machine import (
    INVOICE_ALLOWED_TRANSITIONS,
    INVOICE_REPLACEABLE_STATES,
    PAYABLE_STATES,
    can_transition,
)


@pytest.mark.parametrize(
    ("source", "target"),
    [
        (InvoiceStatus.DRAFT, InvoiceStatus.ISSUED),
        (InvoiceStatus.DRAFT, InvoiceStatus.VOID),
        (InvoiceStatus.ISSUED, InvoiceStatus.SENT),
        (InvoiceStatus.SENT, InvoiceStatus.OVERDUE),
        (InvoiceStatus.PARTIAL, InvoiceStatus.PARTIAL),
        (InvoiceStatus.OVERDUE, InvoiceStatus.PAID),
        (InvoiceStatus.PAID, InvoiceStatus.CREDITED),
    ],
)
def test_allowed_transitions(source: InvoiceStatus, target: InvoiceStatus) -> None:
    assert can_transition(source, target) is True


@pytest.mark.parametrize(
    ("source", "target"),
    [
        (InvoiceStatus.DRAFT, InvoiceStatus.PAID),
        (InvoiceStatus.DRAFT, InvoiceStatus.SENT),
        (InvoiceStatus.PAID, InvoiceStatus.VOID),
        (InvoiceStatus.PARTIAL, InvoiceStatus.VOID),
        (InvoiceStatus.VOID, InvoiceStatus.DRAFT),
        (InvoiceStatus.CREDITED, InvoiceStatus.ISSUED),
    ],
)
def test_rejected_transitions(source: InvoiceStatus, target: InvoiceStatus) -> None:
    assert can_transition(source, target) is False


def test_every_status_has_a_transition_entry() -> None:
    assert set(INVOICE_ALLOWED_TRANSITIONS) == set(InvoiceStatus)


def test_terminal_states_are_replaceable_and_not_payable() -> None:
    for status in INVOICE_REPLACEABLE_STATES:
        assert INVOICE_ALLOWED_TRANSITIONS[status] == set()
        assert status not in PAYABLE_STATES
    assert InvoiceStatus.DRAFT not in PAYABLE_STATES
