from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, Request, status

from backoffice.api.deps import get_current_claims, raise_http_error, require_perm
from backoffice.domain.billing_aggregation import lines_subtotal, unpriced_line_count
from backoffice.domain.errors import BackofficeError
from backoffice.domain.models import (
    BillableActivityCreate,
    BillableActivityIngestRead,
    BillableActivityRead,
    BillingCategoryRead,
    BillingCycle,
    BillingServiceRead,
    InvoiceDetailRead,
    InvoiceGenerateRequest,
    InvoiceLineRead,
    InvoiceLinesPreviewRead,
    InvoicePaymentRequest,
    InvoiceRead,
    InvoiceStatus,
    InvoiceTransitionRequest,
    InvoiceVoidRequest,
    as_utc,
)
from backoffice.domain.permissions import PERM_BILLING_READ, PERM_BILLING_WRITE
from backoffice.infra.audit import set_audit_context
from backoffice.services.billing_service import BillingService

router = APIRouter()


def get_billing_service() -> BillingService:
    return BillingService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[BillingService, Depends(get_billing_service)]


def _audit_invoice(request: Request, action: str, invoice: Any) -> None:
    set_audit_context(
        request,
        action=f"billing.invoice.{action}",
        resource=f"/api/billing/invoices/{invoice.id}",
        detail={
            "what": {
                "invoice_id": invoice.id,
                "invoice_number": invoice.invoice_number,
                "status": invoice.status,
            }
        },
    )


@router.get(
    "/services",
    response_model=list[BillingCategoryRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_services(service: Service) -> list[BillingCategoryRead]:
    return service.list_billing_services()


@router.get(
    "/services/{code}",
    response_model=BillingServiceRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_service(code: str, service: Service) -> BillingServiceRead:
    try:
        return service.get_billing_service(code)
    except BackofficeError as exc:
        raise_http_error(exc)
        raise


@router.post(
    "/customers/{customer_id}/activities",
    response_model=BillableActivityIngestRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def ingest_activity(
    customer_id: str,
    payload: BillableActivityCreate,
    request: Request,
    claims: Claims,
    service: Service,
) -> BillableActivityIngestRead:
    try:
        activity, deduplicated = service.ingest_activity(customer_id, claims["sub"], payload)
    except BackofficeError as exc:
        raise_http_error(exc)
        raise
    set_audit_context(
        request,
        action="billing.activity.ingest",
        resource=f"/api/billing/customers/{customer_id}/activities",
        detail={
            "what": {
                "activity_id": activity.id,
                "activity_type": activity.activity_type,
                "deduplicated": deduplicated,
            }
        },
    )
    return BillableActivityIngestRead(
        activity=BillableActivityRead.model_validate(activity),
        deduplicated=deduplicated,
    )


@router.get(
    "/customers/{customer_id}/activities",
    response_model=list[BillableActivityRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_activities(
    customer_id: str,
    service: Service,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
    activity_type: str | None = None,
) -> list[BillableActivityRead]:
    try:
        rows = service.list_activities(
            customer_id,
            period_start=period_start,
            period_end=period_end,
            activity_type=activity_type,
        )
    except BackofficeError as exc:
        raise_http_error(exc)
        raise
    return [BillableActivityRead.model_validate(item) for item in rows]


@router.get(
    "/customers/{customer_id}/invoice-lines",
    response_model=InvoiceLinesPreviewRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def preview_invoice_lines(
    customer_id: str,
    period_start: datetime,
    period_end: datetime,
    service: Service,
    billing_cycle: BillingCycle | None = None,
) -> InvoiceLinesPreviewRead:
    try:
        lines = service.generate_invoice_lines(
            customer_id,
            period_start,
            period_end,
            billing_cycle=billing_cycle,
        )
    except BackofficeError as exc:
        raise_http_error(exc)
        raise
    return InvoiceLinesPreviewRead(
        customer_id=customer_id,
        period_start=as_utc(period_start),
        period_end=as_utc(period_end),
        billing_cycle=billing_cycle,
        lines=lines,
        subtotal=lines_subtotal(lines),
        unpriced_line_count=unpriced_line_count(lines),
    )


@router.post(
    "/customers/{customer_id}/invoices",
    response_model=InvoiceRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def generate_invoice(
    customer_id: str,
    payload: InvoiceGenerateRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> InvoiceRead:
    try:
        invoice = service.generate_invoice(customer_id, claims["sub"], payload)
    except BackofficeError as exc:
        raise_http_error(exc)
        raise
    _audit_invoice(request, "generate", invoice)
    return InvoiceRead.model_validate(invoice)


@router.get(
    "/invoices",
    response_model=list[InvoiceRead],
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def list_invoices(
    service: Service,
    customer_id: str | None = None,
    status_filter: Annotated[InvoiceStatus | None, Query(alias="status")] = None,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
) -> list[InvoiceRead]:
    rows = service.list_invoices(
        customer_id=customer_id,
        status=status_filter,
        period_start=period_start,
        period_end=period_end,
    )
    return [InvoiceRead.model_validate(item) for item in rows]


@router.get(
    "/invoices/{invoice_id}",
    response_model=InvoiceDetailRead,
    dependencies=[Depends(require_perm(PERM_BILLING_READ))],
)
def get_invoice_detail(invoice_id: str, service: Service) -> InvoiceDetailRead:
    try:
        invoice, lines = service.get_invoice_detail(invoice_id)
    except BackofficeError as exc:
        raise_http_error(exc)
        raise
    return InvoiceDetailRead(
        invoice=InvoiceRead.model_validate(invoice),
        lines=[InvoiceLineRead.model_validate(item) for item in lines],
    )


@router.post(
    "/invoices/{invoice_id}/issue",
    response_model=InvoiceRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def issue_invoice(invoice_id: str, request: Request, claims: Claims, service: Service) -> InvoiceRead:
    try:
        invoice = service.issue_invoice(invoice_id, claims["sub"])
    except BackofficeError as exc:
        raise_http_error(exc)
        raise
    _audit_invoice(request, "issue", invoice)
    return InvoiceRead.model_validate(invoice)


@router.post(
    "/invoices/{invoice_id}/void",
    response_model=InvoiceRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def void_invoice(
    invoice_id: str,
    payload: InvoiceVoidRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> InvoiceRead:
    try:
        invoice = service.void_invoice(invoice_id, claims["sub"], payload)
    except BackofficeError as exc:
        raise_http_error(exc)
        raise
    _audit_invoice(request, "void", invoice)
    return InvoiceRead.model_validate(invoice)


@router.post(
    "/invoices/{invoice_id}/status",
    response_model=InvoiceRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def transition_invoice(
    invoice_id: str,
    payload: InvoiceTransitionRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> InvoiceRead:
    try:
        invoice = service.transition_invoice(invoice_id, claims["sub"], payload)
    except BackofficeError as exc:
        raise_http_error(exc)
        raise
    _audit_invoice(request, "transition", invoice)
    return InvoiceRead.model_validate(invoice)


@router.post(
    "/invoices/{invoice_id}/payments",
    response_model=InvoiceRead,
    dependencies=[Depends(require_perm(PERM_BILLING_WRITE))],
)
def apply_payment(
    invoice_id: str,
    payload: InvoicePaymentRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> InvoiceRead:
    try:
        invoice = service.apply_payment(invoice_id, claims["sub"], payload)
    except BackofficeError as exc:
        raise_http_error(exc)
        raise
    _audit_invoice(request, "payment", invoice)
    return InvoiceRead.model_validate(invoice)
