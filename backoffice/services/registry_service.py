from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from backoffice.domain.errors import ConflictError, NotFoundError, ValidationError
from backoffice.domain.models import Contract, ContractCreate, Customer, CustomerCreate
from backoffice.infra.db import get_engine

logger = logging.getLogger(__name__)


class RegistryService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    @staticmethod
    def _normalize_non_empty(value: str, field_name: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValidationError(f"{field_name} cannot be empty")
        return normalized

    def _get_customer(self, session: Session, customer_id: str) -> Customer:
        customer = session.get(Customer, customer_id)
        if customer is None:
            raise NotFoundError("customer not found")
        return customer

    def create_customer(self, payload: CustomerCreate) -> Customer:
        customer = Customer(
            code=self._normalize_non_empty(payload.code, "code").upper(),
            name=self._normalize_non_empty(payload.name, "name"),
        )
        with self._session() as session:
            session.add(customer)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(f"customer code {customer.code} already exists") from exc
            session.refresh(customer)
            logger.info("customer_created", extra={"customer_id": customer.id, "code": customer.code})
            return customer

    def list_customers(self) -> list[Customer]:
        with self._session() as session:
            return list(session.exec(select(Customer).order_by(col(Customer.code))).all())

    def get_customer(self, customer_id: str) -> Customer:
        with self._session() as session:
            return self._get_customer(session, customer_id)

    def create_contract(self, customer_id: str, payload: ContractCreate) -> Contract:
        if payload.end_date is not None and payload.end_date < payload.start_date:
            raise ValidationError("end_date cannot be earlier than start_date")
        with self._session() as session:
            self._get_customer(session, customer_id)
            contract = Contract(
                customer_id=customer_id,
                contract_number=payload.contract_number,
                name=self._normalize_non_empty(payload.name, "name"),
                start_date=payload.start_date,
                end_date=payload.end_date,
                status=payload.status,
            )
            session.add(contract)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("contract number already exists") from exc
            session.refresh(contract)
            return contract

    def list_contracts(self, customer_id: str) -> list[Contract]:
        with self._session() as session:
            self._get_customer(session, customer_id)
            statement = (
                select(Contract)
                .where(Contract.customer_id == customer_id)
                .order_by(col(Contract.start_date), col(Contract.created_at))
            )
            return list(session.exec(statement).all())
