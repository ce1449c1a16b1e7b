from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from backoffice.api.deps import get_current_claims, raise_http_error, require_perm
from backoffice.domain.errors import BackofficeError
from backoffice.domain.models import (
    ContractLinkCreate,
    EffectiveRatesRead,
    RateCardAdjustmentCreate,
    RateCardArchiveRequest,
    RateCardConflictRead,
    RateCardCreate,
    RateCardDetailRead,
    RateCardRead,
    RateCardVersionCreate,
    now_utc,
)
from backoffice.domain.permissions import PERM_RATE_CARD_READ, PERM_RATE_CARD_WRITE
from backoffice.infra.audit import set_audit_context
from backoffice.services.rate_card_service import RateCardService

router = APIRouter()


def get_rate_card_service() -> RateCardService:
    return RateCardService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[RateCardService, Depends(get_rate_card_service)]


def _audit_card(request: Request, action: str, card: RateCardRead) -> None:
    set_audit_context(
        request,
        action=f"rate_card.{action}",
        resource=f"/api/rate-cards/{card.id}",
        detail={
            "what": {
                "rate_card_id": card.id,
                "customer_id": card.customer_id,
                "version": card.version,
                "rate_card_type": card.rate_card_type,
            }
        },
    )


@router.get(
    "/customers/{customer_id}/rate-cards",
    response_model=list[RateCardRead],
    dependencies=[Depends(require_perm(PERM_RATE_CARD_READ))],
)
def get_rate_card_history(
    customer_id: str,
    service: Service,
    include_archived: bool = False,
) -> list[RateCardRead]:
    try:
        return service.get_rate_card_history(customer_id, include_archived=include_archived)
    except BackofficeError as exc:
        raise_http_error(exc)
        raise


@router.get(
    "/customers/{customer_id}/rate-cards/active",
    response_model=RateCardRead,
    dependencies=[Depends(require_perm(PERM_RATE_CARD_READ))],
)
def get_active_rate_card(customer_id: str, service: Service) -> RateCardRead:
    try:
        card = service.get_active_rate_card(customer_id)
    except BackofficeError as exc:
        raise_http_error(exc)
        raise
    if card is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="no active rate card")
    return card


@router.get(
    "/customers/{customer_id}/rate-cards/for-date",
    response_model=RateCardRead,
    dependencies=[Depends(require_perm(PERM_RATE_CARD_READ))],
)
def get_rate_card_for_date(customer_id: str, at: datetime, service: Service) -> RateCardRead:
    try:
        card = service.get_rate_card_for_date(customer_id, at)
    except BackofficeError as exc:
        raise_http_error(exc)
        raise
    if card is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="no rate card covers this date")
    return card


@router.get(
    "/customers/{customer_id}/rate-cards/conflicts",
    response_model=RateCardConflictRead,
    dependencies=[Depends(require_perm(PERM_RATE_CARD_READ))],
)
def check_rate_card_conflict(
    customer_id: str,
    effective_date: datetime,
    service: Service,
    expires_date: datetime | None = None,
    exclude_rate_card_id: str | None = None,
) -> RateCardConflictRead:
    try:
        conflict = service.has_conflict(customer_id, effective_date, expires_date, exclude_rate_card_id)
    except BackofficeError as exc:
        raise_http_error(exc)
        raise
    return RateCardConflictRead(has_conflict=conflict is not None, conflicting_rate_card=conflict)


@router.get(
    "/customers/{customer_id}/effective-rates",
    response_model=EffectiveRatesRead,
    dependencies=[Depends(require_perm(PERM_RATE_CARD_READ))],
)
def get_effective_rates(
    customer_id: str,
    service: Service,
    at: datetime | None = None,
    service_type: str | None = None,
) -> EffectiveRatesRead:
    try:
        return service.get_effective_rates(customer_id, at or now_utc(), service_type)
    except BackofficeError as exc:
        raise_http_error(exc)
        raise


@router.post(
    "/customers/{customer_id}/rate-cards",
    response_model=RateCardRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_RATE_CARD_WRITE))],
)
def create_standard_rate_card(
    customer_id: str,
    payload: RateCardCreate,
    request: Request,
    claims: Claims,
    service: Service,
) -> RateCardRead:
    try:
        card = service.create_standard_rate_card(customer_id, claims["sub"], payload)
    except BackofficeError as exc:
        raise_http_error(exc)
        raise
    _audit_card(request, "create", card)
    return card


@router.get(
    "/rate-cards/{rate_card_id}",
    response_model=RateCardDetailRead,
    dependencies=[Depends(require_perm(PERM_RATE_CARD_READ))],
)
def get_rate_card(rate_card_id: str, service: Service) -> RateCardDetailRead:
    try:
        return service.get_rate_card(rate_card_id)
    except BackofficeError as exc:
        raise_http_error(exc)
        raise


@router.post(
    "/rate-cards/{rate_card_id}/versions",
    response_model=RateCardRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_RATE_CARD_WRITE))],
)
def create_rate_card_version(
    rate_card_id: str,
    payload: RateCardVersionCreate,
    request: Request,
    claims: Claims,
    service: Service,
) -> RateCardRead:
    try:
        card = service.create_rate_card_version(rate_card_id, claims["sub"], payload)
    except BackofficeError as exc:
        raise_http_error(exc)
        raise
    _audit_card(request, "version", card)
    return card


@router.post(
    "/rate-cards/{rate_card_id}/adjustments",
    response_model=RateCardRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_RATE_CARD_WRITE))],
)
def create_adjustment_rate_card(
    rate_card_id: str,
    payload: RateCardAdjustmentCreate,
    request: Request,
    claims: Claims,
    service: Service,
) -> RateCardRead:
    try:
        card = service.create_adjustment_rate_card(rate_card_id, claims["sub"], payload)
    except BackofficeError as exc:
        raise_http_error(exc)
        raise
    _audit_card(request, "adjust", card)
    return card


@router.post(
    "/rate-cards/{rate_card_id}/deactivate",
    response_model=RateCardRead,
    dependencies=[Depends(require_perm(PERM_RATE_CARD_WRITE))],
)
def deactivate_rate_card(
    rate_card_id: str,
    request: Request,
    claims: Claims,
    service: Service,
) -> RateCardRead:
    try:
        card = service.deactivate_rate_card(rate_card_id, claims["sub"])
    except BackofficeError as exc:
        raise_http_error(exc)
        raise
    _audit_card(request, "deactivate", card)
    return card


@router.post(
    "/rate-cards/{rate_card_id}/reactivate",
    response_model=RateCardRead,
    dependencies=[Depends(require_perm(PERM_RATE_CARD_WRITE))],
)
def reactivate_rate_card(
    rate_card_id: str,
    request: Request,
    claims: Claims,
    service: Service,
) -> RateCardRead:
    try:
        card = service.reactivate_rate_card(rate_card_id, claims["sub"])
    except BackofficeError as exc:
        raise_http_error(exc)
        raise
    _audit_card(request, "reactivate", card)
    return card


@router.post(
    "/rate-cards/{rate_card_id}/archive",
    response_model=RateCardRead,
    dependencies=[Depends(require_perm(PERM_RATE_CARD_WRITE))],
)
def archive_rate_card(
    rate_card_id: str,
    payload: RateCardArchiveRequest,
    request: Request,
    claims: Claims,
    service: Service,
) -> RateCardRead:
    try:
        card = service.archive_rate_card(rate_card_id, claims["sub"], payload.reason)
    except BackofficeError as exc:
        raise_http_error(exc)
        raise
    _audit_card(request, "archive", card)
    return card


@router.post(
    "/rate-cards/{rate_card_id}/restore",
    response_model=RateCardRead,
    dependencies=[Depends(require_perm(PERM_RATE_CARD_WRITE))],
)
def restore_rate_card(
    rate_card_id: str,
    request: Request,
    claims: Claims,
    service: Service,
) -> RateCardRead:
    try:
        card = service.restore_rate_card(rate_card_id, claims["sub"])
    except BackofficeError as exc:
        raise_http_error(exc)
        raise
    _audit_card(request, "restore", card)
    return card


@router.post(
    "/rate-cards/{rate_card_id}/contracts",
    response_model=RateCardRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_RATE_CARD_WRITE))],
)
def add_contract_link(
    rate_card_id: str,
    payload: ContractLinkCreate,
    request: Request,
    claims: Claims,
    service: Service,
) -> RateCardRead:
    try:
        card = service.add_contract_link(rate_card_id, claims["sub"], payload)
    except BackofficeError as exc:
        raise_http_error(exc)
        raise
    set_audit_context(
        request,
        action="rate_card.contract.link",
        resource=f"/api/rate-cards/{rate_card_id}/contracts",
        detail={"what": {"contract_id": payload.contract_id, "link_type": payload.link_type}},
    )
    return card


@router.delete(
    "/rate-cards/{rate_card_id}/contracts/{contract_id}",
    response_model=RateCardRead,
    dependencies=[Depends(require_perm(PERM_RATE_CARD_WRITE))],
)
def remove_contract_link(
    rate_card_id: str,
    contract_id: str,
    request: Request,
    claims: Claims,
    service: Service,
) -> RateCardRead:
    try:
        card = service.remove_contract_link(rate_card_id, contract_id, claims["sub"])
    except BackofficeError as exc:
        raise_http_error(exc)
        raise
    set_audit_context(
        request,
        action="rate_card.contract.unlink",
        resource=f"/api/rate-cards/{rate_card_id}/contracts/{contract_id}",
        detail={"what": {"contract_id": contract_id}},
    )
    return card
