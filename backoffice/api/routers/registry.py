from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Request, status

from backoffice.api.deps import get_current_claims, raise_http_error, require_perm
from backoffice.domain.errors import BackofficeError
from backoffice.domain.models import ContractCreate, ContractRead, CustomerCreate, CustomerRead
from backoffice.domain.permissions import PERM_REGISTRY_READ, PERM_REGISTRY_WRITE
from backoffice.infra.audit import set_audit_context
from backoffice.services.registry_service import RegistryService

router = APIRouter()


def get_registry_service() -> RegistryService:
    return RegistryService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
Service = Annotated[RegistryService, Depends(get_registry_service)]


@router.post(
    "/customers",
    response_model=CustomerRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_REGISTRY_WRITE))],
)
def create_customer(payload: CustomerCreate, request: Request, service: Service) -> CustomerRead:
    try:
        customer = service.create_customer(payload)
    except BackofficeError as exc:
        raise_http_error(exc)
        raise
    set_audit_context(
        request,
        action="registry.customer.create",
        resource="/api/registry/customers",
        detail={"what": {"customer_id": customer.id, "code": customer.code}},
    )
    return CustomerRead.model_validate(customer)


@router.get(
    "/customers",
    response_model=list[CustomerRead],
    dependencies=[Depends(require_perm(PERM_REGISTRY_READ))],
)
def list_customers(service: Service) -> list[CustomerRead]:
    return [CustomerRead.model_validate(item) for item in service.list_customers()]


@router.get(
    "/customers/{customer_id}",
    response_model=CustomerRead,
    dependencies=[Depends(require_perm(PERM_REGISTRY_READ))],
)
def get_customer(customer_id: str, service: Service) -> CustomerRead:
    try:
        return CustomerRead.model_validate(service.get_customer(customer_id))
    except BackofficeError as exc:
        raise_http_error(exc)
        raise


@router.post(
    "/customers/{customer_id}/contracts",
    response_model=ContractRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_perm(PERM_REGISTRY_WRITE))],
)
def create_contract(
    customer_id: str,
    payload: ContractCreate,
    request: Request,
    service: Service,
) -> ContractRead:
    try:
        contract = service.create_contract(customer_id, payload)
    except BackofficeError as exc:
        raise_http_error(exc)
        raise
    set_audit_context(
        request,
        action="registry.contract.create",
        resource=f"/api/registry/customers/{customer_id}/contracts",
        detail={"what": {"contract_id": contract.id, "contract_number": contract.contract_number}},
    )
    return ContractRead.model_validate(contract)


@router.get(
    "/customers/{customer_id}/contracts",
    response_model=list[ContractRead],
    dependencies=[Depends(require_perm(PERM_REGISTRY_READ))],
)
def list_contracts(customer_id: str, service: Service) -> list[ContractRead]:
    try:
        return [ContractRead.model_validate(item) for item in service.list_contracts(customer_id)]
    except BackofficeError as exc:
        raise_http_error(exc)
        raise
