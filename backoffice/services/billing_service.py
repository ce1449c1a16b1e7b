from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from backoffice.domain.billing_aggregation import (
    ActivityFact,
    activities_for_cycle,
    aggregate_invoice_lines,
    line_detail,
    lines_subtotal,
    minimum_charge_line,
    period_minimum_charge,
    to_cents,
    unpriced_line_count,
)
from backoffice.domain.errors import ConflictError, NotFoundError, StateError, ValidationError
from backoffice.domain.models import (
    BillableActivity,
    BillableActivityCreate,
    BillingCategoryRead,
    BillingCycle,
    BillingServiceRead,
    Customer,
    Invoice,
    InvoiceGenerateRequest,
    InvoiceLine,
    InvoiceLineDraft,
    InvoicePaymentRequest,
    InvoiceStatus,
    InvoiceTransitionRequest,
    InvoiceVoidRequest,
    as_utc,
    now_utc,
)
from backoffice.domain import service_catalog
from backoffice.domain.state_machine import INVOICE_REPLACEABLE_STATES, PAYABLE_STATES, can_transition
from backoffice.infra.db import get_engine
from backoffice.infra.events import (
    INVOICE_GENERATED,
    INVOICE_PAYMENT_APPLIED,
    INVOICE_STATUS_CHANGED,
    event_bus,
)
from backoffice.infra.locks import customer_lock, serialize_customer_writes
from backoffice.services.rate_card_service import load_rate_sources

logger = logging.getLogger(__name__)

INVOICE_DUE_DAYS = int(os.getenv("INVOICE_DUE_DAYS", "30"))

CYCLE_CODES = {
    BillingCycle.MONTHLY: "M",
    BillingCycle.WEEKLY: "W",
    BillingCycle.IMMEDIATE: "I",
}

# Reached only through apply_payment, which also moves balance_due.
PAYMENT_DRIVEN_STATES = {InvoiceStatus.PARTIAL, InvoiceStatus.PAID}


class BillingService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_customer(self, session: Session, customer_id: str) -> Customer:
        customer = session.get(Customer, customer_id)
        if customer is None:
            raise NotFoundError("customer not found")
        return customer

    def _get_invoice(self, session: Session, invoice_id: str) -> Invoice:
        invoice = session.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFoundError("invoice not found")
        return invoice

    @staticmethod
    def _normalize_period(period_start: datetime, period_end: datetime) -> tuple[datetime, datetime]:
        start = as_utc(period_start)
        end = as_utc(period_end)
        if end <= start:
            raise ValidationError("period_end must be later than period_start")
        return start, end

    @staticmethod
    def _normalize_non_empty(value: str, field_name: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValidationError(f"{field_name} cannot be empty")
        return normalized

    def _find_duplicate(
        self,
        session: Session,
        customer_id: str,
        reference_id: str,
        occurred_at: datetime,
        activity_type: str,
    ) -> BillableActivity | None:
        return session.exec(
            select(BillableActivity)
            .where(BillableActivity.customer_id == customer_id)
            .where(BillableActivity.reference_id == reference_id)
            .where(BillableActivity.occurred_at == occurred_at)
            .where(BillableActivity.activity_type == activity_type)
        ).first()

    def ingest_activity(
        self,
        customer_id: str,
        actor_id: str | None,
        payload: BillableActivityCreate,
    ) -> tuple[BillableActivity, bool]:
        activity_type = self._normalize_non_empty(payload.activity_type, "activity_type")
        reference_id = payload.reference_id.strip() if payload.reference_id else None
        occurred_at = as_utc(payload.occurred_at)

        with self._session() as session:
            self._get_customer(session, customer_id)
            if reference_id is not None:
                existing = self._find_duplicate(session, customer_id, reference_id, occurred_at, activity_type)
                if existing is not None:
                    return existing, True

            activity = BillableActivity(
                customer_id=customer_id,
                occurred_at=occurred_at,
                activity_type=activity_type,
                quantity=payload.quantity.quantize(Decimal("0.001"), rounding=ROUND_HALF_UP),
                unit=payload.unit,
                description=payload.description,
                reference_id=reference_id,
                rate_override=(
                    payload.rate_override.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)
                    if payload.rate_override is not None
                    else None
                ),
                amount=to_cents(payload.amount) if payload.amount is not None else None,
                zone=payload.zone,
                source=payload.source,
                detail=payload.detail,
                created_by=actor_id,
                created_at=now_utc(),
            )
            session.add(activity)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                dedup = None
                if reference_id is not None:
                    dedup = self._find_duplicate(session, customer_id, reference_id, occurred_at, activity_type)
                if dedup is None:
                    raise ConflictError("failed to ingest billable activity") from exc
                return dedup, True

            session.refresh(activity)
            return activity, False

    def _period_activities(
        self,
        session: Session,
        customer_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> list[BillableActivity]:
        return list(
            session.exec(
                select(BillableActivity)
                .where(BillableActivity.customer_id == customer_id)
                .where(BillableActivity.occurred_at >= period_start)
                .where(BillableActivity.occurred_at < period_end)
                .order_by(col(BillableActivity.occurred_at), col(BillableActivity.id))
            ).all()
        )

    def list_activities(
        self,
        customer_id: str,
        *,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        activity_type: str | None = None,
    ) -> list[BillableActivity]:
        with self._session() as session:
            self._get_customer(session, customer_id)
            statement = select(BillableActivity).where(BillableActivity.customer_id == customer_id)
            if period_start is not None:
                statement = statement.where(BillableActivity.occurred_at >= as_utc(period_start))
            if period_end is not None:
                statement = statement.where(BillableActivity.occurred_at < as_utc(period_end))
            if activity_type is not None:
                statement = statement.where(BillableActivity.activity_type == activity_type.strip())
            return list(
                session.exec(statement.order_by(col(BillableActivity.occurred_at), col(BillableActivity.id))).all()
            )

    def generate_invoice_lines(
        self,
        customer_id: str,
        period_start: datetime,
        period_end: datetime,
        *,
        billing_cycle: BillingCycle | None = None,
    ) -> list[InvoiceLineDraft]:
        start, end = self._normalize_period(period_start, period_end)
        with self._session() as session:
            self._get_customer(session, customer_id)
            activities = self._period_activities(session, customer_id, start, end)
            sources = load_rate_sources(session, customer_id)

        facts = [ActivityFact.from_activity(row) for row in activities]
        if billing_cycle is not None:
            facts = activities_for_cycle(facts, sources, billing_cycle)
        lines = aggregate_invoice_lines(facts, sources)
        self._log_unpriced(customer_id, start, end, lines)
        return lines

    @staticmethod
    def _log_unpriced(
        customer_id: str,
        period_start: datetime,
        period_end: datetime,
        lines: list[InvoiceLineDraft],
    ) -> None:
        unpriced = [line for line in lines if not line.is_priced]
        if unpriced:
            logger.warning(
                "invoice_lines_unpriced",
                extra={
                    "customer_id": customer_id,
                    "period_start": period_start.isoformat(),
                    "period_end": period_end.isoformat(),
                    "descriptions": [line.description for line in unpriced],
                },
            )

    def _next_invoice_number(
        self,
        session: Session,
        customer: Customer,
        billing_cycle: BillingCycle,
        period_start: datetime,
    ) -> str:
        prefix = f"INV-{period_start:%Y%m%d}-{customer.code}-{CYCLE_CODES[billing_cycle]}"
        taken = session.exec(
            select(Invoice.invoice_number).where(col(Invoice.invoice_number).startswith(prefix, autoescape=True))
        ).all()
        return f"{prefix}{len(taken) + 1:02d}"

    def generate_invoice(
        self,
        customer_id: str,
        actor_id: str | None,
        payload: InvoiceGenerateRequest,
    ) -> Invoice:
        period_start, period_end = self._normalize_period(payload.period_start, payload.period_end)

        with customer_lock(customer_id), self._session() as session:
            serialize_customer_writes(session, customer_id)
            customer = self._get_customer(session, customer_id)
            existing = list(
                session.exec(
                    select(Invoice)
                    .where(Invoice.customer_id == customer_id)
                    .where(Invoice.billing_cycle == payload.billing_cycle)
                    .where(Invoice.period_start == period_start)
                    .where(Invoice.period_end == period_end)
                    .order_by(col(Invoice.created_at).desc())
                ).all()
            )
            blocking = [
                row
                for row in existing
                if row.status != InvoiceStatus.DRAFT and row.status not in INVOICE_REPLACEABLE_STATES
            ]
            if blocking:
                raise ConflictError(
                    f"invoice {blocking[0].invoice_number} is {blocking[0].status} and cannot be recomputed"
                )
            draft = next((row for row in existing if row.status == InvoiceStatus.DRAFT), None)
            if draft is not None and not payload.force_recompute:
                return draft

            activities = self._period_activities(session, customer_id, period_start, period_end)
            sources = load_rate_sources(session, customer_id)
            # Each service is billed only on the cycle its rate card assigns it.
            facts = activities_for_cycle(
                [ActivityFact.from_activity(row) for row in activities],
                sources,
                payload.billing_cycle,
            )
            lines = aggregate_invoice_lines(facts, sources)

            minimum: Decimal | None = None
            if payload.billing_cycle == BillingCycle.MONTHLY:
                minimum, minimum_source_id = period_minimum_charge(sources, period_end)
                minimum_line = minimum_charge_line(lines, minimum, minimum_source_id)
                if minimum_line is not None:
                    lines = [*lines, minimum_line]

            subtotal = lines_subtotal(lines)
            tax = to_cents(payload.tax)
            total = subtotal + tax
            now = now_utc()

            if draft is None:
                invoice = Invoice(
                    customer_id=customer_id,
                    invoice_number=self._next_invoice_number(session, customer, payload.billing_cycle, period_start),
                    billing_cycle=payload.billing_cycle,
                    period_start=period_start,
                    period_end=period_end,
                    status=InvoiceStatus.DRAFT,
                    created_by=actor_id,
                    created_at=now,
                )
                session.add(invoice)
                session.flush()
            else:
                invoice = draft
                for line_row in session.exec(select(InvoiceLine).where(InvoiceLine.invoice_id == invoice.id)).all():
                    session.delete(line_row)

            for index, line in enumerate(lines, start=1):
                session.add(
                    InvoiceLine(
                        invoice_id=invoice.id,
                        line_order=index,
                        description=line.description,
                        category=line.category,
                        service_type=line.service_type,
                        subtype=line.subtype,
                        quantity=line.quantity,
                        unit=line.unit,
                        unit_rate=line.unit_rate,
                        line_total=line.line_total,
                        is_priced=line.is_priced,
                        activity_count=line.activity_count,
                        detail=line_detail(line),
                    )
                )

            rate_card_ids = sorted({item for line in lines for item in line.source_rate_card_ids})
            invoice.subtotal = subtotal
            invoice.tax = tax
            invoice.total = total
            invoice.balance_due = total
            invoice.notes = payload.notes
            invoice.data_snapshot = {
                "activity_ids": [item.activity_id for item in facts],
                "rate_card_ids": rate_card_ids,
                "minimum_monthly_charge": str(minimum) if minimum is not None else None,
                "unpriced_line_count": unpriced_line_count(lines),
            }
            invoice.updated_at = now
            session.add(invoice)
            event_bus.publish_dict(
                INVOICE_GENERATED,
                customer_id,
                {
                    "invoice_id": invoice.id,
                    "invoice_number": invoice.invoice_number,
                    "subtotal": str(subtotal),
                    "line_count": len(lines),
                    "recomputed": draft is not None,
                },
                actor_id=actor_id,
                session=session,
            )
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("failed to generate invoice") from exc
            session.refresh(invoice)

        self._log_unpriced(customer_id, period_start, period_end, lines)
        logger.info(
            "invoice_generated",
            extra={
                "customer_id": customer_id,
                "invoice_id": invoice.id,
                "invoice_number": invoice.invoice_number,
                "total": str(invoice.total),
                "line_count": len(lines),
            },
        )
        return invoice

    def list_billing_services(self) -> list[BillingCategoryRead]:
        return service_catalog.list_billing_services()

    def get_billing_service(self, code: str) -> BillingServiceRead:
        service = service_catalog.get_billing_service(code)
        if service is None:
            raise NotFoundError(f"billing service not found: {code}")
        return service

    def list_invoices(
        self,
        *,
        customer_id: str | None = None,
        status: InvoiceStatus | None = None,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
    ) -> list[Invoice]:
        with self._session() as session:
            statement = select(Invoice)
            if customer_id is not None:
                statement = statement.where(Invoice.customer_id == customer_id)
            if status is not None:
                statement = statement.where(Invoice.status == status)
            if period_start is not None:
                statement = statement.where(Invoice.period_start >= as_utc(period_start))
            if period_end is not None:
                statement = statement.where(Invoice.period_end <= as_utc(period_end))
            rows = list(session.exec(statement).all())
            return sorted(rows, key=lambda item: (as_utc(item.period_start), item.invoice_number), reverse=True)

    def get_invoice_detail(self, invoice_id: str) -> tuple[Invoice, list[InvoiceLine]]:
        with self._session() as session:
            invoice = self._get_invoice(session, invoice_id)
            lines = list(
                session.exec(
                    select(InvoiceLine)
                    .where(InvoiceLine.invoice_id == invoice.id)
                    .order_by(col(InvoiceLine.line_order))
                ).all()
            )
            return invoice, lines

    def _change_status(
        self,
        session: Session,
        invoice: Invoice,
        target: InvoiceStatus,
        actor_id: str | None,
        note: str | None = None,
    ) -> None:
        source = invoice.status
        if not can_transition(source, target):
            raise StateError(f"invoice cannot move from {source} to {target}")
        now = now_utc()
        invoice.status = target
        if target == InvoiceStatus.ISSUED:
            invoice.issued_at = now
            invoice.due_date = now + timedelta(days=INVOICE_DUE_DAYS)
        if target == InvoiceStatus.VOID:
            invoice.voided_at = now
        invoice.updated_at = now
        session.add(invoice)
        event_bus.publish_dict(
            INVOICE_STATUS_CHANGED,
            invoice.customer_id,
            {
                "invoice_id": invoice.id,
                "from_status": source,
                "to_status": target,
                "note": note,
            },
            actor_id=actor_id,
            session=session,
        )

    def issue_invoice(self, invoice_id: str, actor_id: str | None) -> Invoice:
        with self._session() as session:
            invoice = self._get_invoice(session, invoice_id)
            if invoice.status == InvoiceStatus.DRAFT and invoice.total < 0:
                raise ValidationError("invoice total cannot be negative")
            self._change_status(session, invoice, InvoiceStatus.ISSUED, actor_id)
            session.commit()
            session.refresh(invoice)
            logger.info("invoice_issued", extra={"invoice_id": invoice.id, "invoice_number": invoice.invoice_number})
            return invoice

    def void_invoice(self, invoice_id: str, actor_id: str | None, payload: InvoiceVoidRequest) -> Invoice:
        with self._session() as session:
            invoice = self._get_invoice(session, invoice_id)
            self._change_status(session, invoice, InvoiceStatus.VOID, actor_id, payload.reason)
            session.commit()
            session.refresh(invoice)
            logger.info(
                "invoice_voided",
                extra={"invoice_id": invoice.id, "invoice_number": invoice.invoice_number, "reason": payload.reason},
            )
            return invoice

    def transition_invoice(
        self,
        invoice_id: str,
        actor_id: str | None,
        payload: InvoiceTransitionRequest,
    ) -> Invoice:
        if payload.status in PAYMENT_DRIVEN_STATES:
            raise ValidationError(f"{payload.status} is reached by recording a payment")
        with self._session() as session:
            invoice = self._get_invoice(session, invoice_id)
            self._change_status(session, invoice, payload.status, actor_id, payload.note)
            session.commit()
            session.refresh(invoice)
            return invoice

    def apply_payment(
        self,
        invoice_id: str,
        actor_id: str | None,
        payload: InvoicePaymentRequest,
    ) -> Invoice:
        amount = to_cents(payload.amount)
        with self._session() as session:
            invoice = self._get_invoice(session, invoice_id)
            if invoice.status not in PAYABLE_STATES:
                raise StateError(f"invoice in status {invoice.status} cannot accept payments")
            balance = to_cents(Decimal(invoice.balance_due))
            if amount > balance:
                raise ValidationError(f"payment {amount} exceeds balance due {balance}")
            remaining = balance - amount
            target = InvoiceStatus.PAID if remaining == 0 else InvoiceStatus.PARTIAL
            self._change_status(session, invoice, target, actor_id, payload.reference)
            invoice.balance_due = remaining
            session.add(invoice)
            event_bus.publish_dict(
                INVOICE_PAYMENT_APPLIED,
                invoice.customer_id,
                {
                    "invoice_id": invoice.id,
                    "amount": str(amount),
                    "balance_due": str(remaining),
                    "reference": payload.reference,
                },
                actor_id=actor_id,
                session=session,
            )
            session.commit()
            session.refresh(invoice)
            logger.info(
                "invoice_payment_applied",
                extra={"invoice_id": invoice.id, "amount": str(amount), "balance_due": str(remaining)},
            )
            return invoice
