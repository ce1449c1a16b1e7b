from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from backoffice.domain.errors import (
    AdjustmentOutOfBoundsError,
    ConflictError,
    DateConflictError,
    EmptyContractSetError,
    NestedAdjustmentError,
    NotFoundError,
    ParentArchivedError,
    ParentNotFoundError,
    StateError,
    ValidationError,
)
from backoffice.domain.models import (
    Contract,
    ContractLinkCreate,
    ContractLinkRead,
    ContractLinkType,
    Customer,
    EffectiveRatesRead,
    RateCard,
    RateCardAdjustmentCreate,
    RateCardContract,
    RateCardCreate,
    RateCardDetailRead,
    RateCardRead,
    RateCardType,
    RateCardVersionCreate,
    as_utc,
    now_utc,
)
from backoffice.domain.rate_resolution import (
    SERVICE_SUBTYPES,
    RateSource,
    resolve_effective_rates,
    resolve_minimum_charge,
    resolve_vas_rates,
    resolve_volume_discounts,
    select_rate_sources,
)
from backoffice.domain.tier_validation import collect_rate_errors, collect_tier_gaps
from backoffice.infra.db import get_engine
from backoffice.infra.events import (
    RATE_CARD_ADJUSTMENT_CREATED,
    RATE_CARD_ARCHIVED,
    RATE_CARD_CONTRACT_LINKED,
    RATE_CARD_CONTRACT_UNLINKED,
    RATE_CARD_CREATED,
    RATE_CARD_DEACTIVATED,
    RATE_CARD_REACTIVATED,
    RATE_CARD_RESTORED,
    RATE_CARD_SUPERSEDED,
    RATE_CARD_VERSIONED,
    event_bus,
)
from backoffice.infra.locks import customer_lock, serialize_customer_writes
from backoffice.services.rate_card_conflicts import find_date_conflict

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def load_rate_sources(session: Session, customer_id: str) -> list[RateSource]:
    rows = session.exec(
        select(RateCard)
        .where(RateCard.customer_id == customer_id)
        .order_by(col(RateCard.effective_date), col(RateCard.created_at))
    ).all()
    return [RateSource.from_rate_card(row) for row in rows]


def _quantize_money(value: Decimal | None) -> Decimal | None:
    if value is None:
        return None
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _optional_utc(value: datetime | None) -> datetime | None:
    return as_utc(value) if value is not None else None


def _iso_date(value: datetime) -> str:
    return as_utc(value).date().isoformat()


class RateCardService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    @staticmethod
    def _commit(session: Session, message: str) -> None:
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError(message) from exc

    def _get_customer(self, session: Session, customer_id: str) -> Customer:
        customer = session.get(Customer, customer_id)
        if customer is None:
            raise NotFoundError("customer not found")
        return customer

    def _get_card(self, session: Session, rate_card_id: str) -> RateCard:
        card = session.get(RateCard, rate_card_id)
        if card is None:
            raise NotFoundError("rate card not found")
        return card

    def _lookup_customer_id(self, rate_card_id: str, *, parent: bool = False) -> str:
        with self._session() as session:
            card = session.get(RateCard, rate_card_id)
            if card is None:
                if parent:
                    raise ParentNotFoundError(f"parent rate card {rate_card_id} not found")
                raise NotFoundError("rate card not found")
            return card.customer_id

    def _links_by_card(self, session: Session, card_ids: Iterable[str]) -> dict[str, list[RateCardContract]]:
        ids = list(card_ids)
        grouped: dict[str, list[RateCardContract]] = {card_id: [] for card_id in ids}
        if not ids:
            return grouped
        rows = session.exec(
            select(RateCardContract)
            .where(col(RateCardContract.rate_card_id).in_(ids))
            .order_by(col(RateCardContract.linked_at), col(RateCardContract.contract_id))
        ).all()
        for row in rows:
            grouped[row.rate_card_id].append(row)
        # Primary link first; inherited links keep it primary.
        for links in grouped.values():
            links.sort(key=lambda link: link.link_type != ContractLinkType.PRIMARY)
        return grouped

    @staticmethod
    def _read(card: RateCard, links: list[RateCardContract]) -> RateCardRead:
        read = RateCardRead.model_validate(card)
        return read.model_copy(
            update={"contract_links": [ContractLinkRead.model_validate(link) for link in links]}
        )

    def _to_read(self, session: Session, card: RateCard) -> RateCardRead:
        return self._read(card, self._links_by_card(session, [card.id])[card.id])

    def _to_reads(self, session: Session, cards: list[RateCard]) -> list[RateCardRead]:
        links = self._links_by_card(session, [card.id for card in cards])
        return [self._read(card, links[card.id]) for card in cards]

    def _next_standard_version(self, session: Session, customer_id: str) -> int:
        current = session.exec(
            select(func.max(RateCard.version))
            .where(RateCard.customer_id == customer_id)
            .where(RateCard.rate_card_type == RateCardType.STANDARD)
        ).one()
        return (current or 0) + 1

    @staticmethod
    def _check_interval(effective_date: datetime, expires_date: datetime | None) -> None:
        if expires_date is not None and expires_date <= effective_date:
            raise ValidationError("expires_date must be later than effective_date")

    @staticmethod
    def _check_rates(customer_id: str, rates: dict[str, Any]) -> None:
        errors = collect_rate_errors(rates)
        if errors:
            raise ValidationError("; ".join(errors))
        gaps = collect_tier_gaps(rates)
        if gaps:
            logger.warning(
                "rate_card_tier_gaps",
                extra={
                    "customer_id": customer_id,
                    "gaps": {path: [[str(low), str(high)] for low, high in found] for path, found in gaps.items()},
                },
            )

    def _raise_date_conflict(self, customer_id: str, conflict: RateCard, action: str) -> None:
        logger.warning(
            "rate_card_date_conflict",
            extra={"customer_id": customer_id, "conflicting_rate_card_id": conflict.id, "action": action},
        )
        raise DateConflictError(
            f'Cannot {action}: active rate card "{conflict.name}" already exists for this date '
            f"(effective {_iso_date(conflict.effective_date)})",
            conflict,
        )

    def _resolve_contract_ids(self, session: Session, customer_id: str, contract_ids: list[str]) -> list[str]:
        unique_ids = list(dict.fromkeys(item.strip() for item in contract_ids if item.strip()))
        if not unique_ids:
            raise EmptyContractSetError("at least one contract link is required")
        rows = session.exec(select(Contract).where(col(Contract.id).in_(unique_ids))).all()
        found = {row.id: row for row in rows}
        missing = [item for item in unique_ids if item not in found]
        if missing:
            raise NotFoundError(f"contract not found: {', '.join(missing)}")
        foreign = [item for item in unique_ids if found[item].customer_id != customer_id]
        if foreign:
            raise ValidationError(f"contract does not belong to customer: {', '.join(foreign)}")
        return unique_ids

    def _parent_contract_ids(self, session: Session, parent_id: str) -> list[str]:
        return [link.contract_id for link in self._links_by_card(session, [parent_id])[parent_id]]

    @staticmethod
    def _create_links(session: Session, rate_card_id: str, contract_ids: list[str], actor_id: str | None) -> None:
        now = now_utc()
        for index, contract_id in enumerate(contract_ids):
            session.add(
                RateCardContract(
                    rate_card_id=rate_card_id,
                    contract_id=contract_id,
                    link_type=ContractLinkType.PRIMARY if index == 0 else ContractLinkType.ADDENDUM,
                    linked_at=now,
                    linked_by=actor_id,
                )
            )

    def _clip_adjustments(
        self,
        session: Session,
        parent: RateCard,
        cutoff: datetime,
        *,
        strict: bool,
    ) -> list[str]:
        rows = session.exec(
            select(RateCard)
            .where(RateCard.parent_rate_card_id == parent.id)
            .where(col(RateCard.archived_at).is_(None))
        ).all()
        now = now_utc()
        clipped: list[str] = []
        for adjustment in rows:
            expires = _optional_utc(adjustment.expires_date)
            if expires is not None and expires <= cutoff:
                continue
            if as_utc(adjustment.effective_date) >= cutoff:
                if strict:
                    raise StateError(
                        f"adjustment {adjustment.id} starts on or after {_iso_date(cutoff)}; "
                        "archive it before superseding its parent"
                    )
                adjustment.is_active = False
                adjustment.deactivated_at = now
                adjustment.expires_date = adjustment.effective_date
            else:
                adjustment.expires_date = cutoff
            adjustment.updated_at = now
            session.add(adjustment)
            clipped.append(adjustment.id)
        return clipped

    def create_standard_rate_card(
        self,
        customer_id: str,
        actor_id: str | None,
        payload: RateCardCreate,
    ) -> RateCardRead:
        effective_date = as_utc(payload.effective_date)
        expires_date = _optional_utc(payload.expires_date)
        self._check_interval(effective_date, expires_date)
        rates = payload.rates.to_document()
        self._check_rates(customer_id, rates)

        with customer_lock(customer_id), self._session() as session:
            serialize_customer_writes(session, customer_id)
            self._get_customer(session, customer_id)
            contract_ids = self._resolve_contract_ids(session, customer_id, payload.contract_ids)

            conflict = find_date_conflict(session, customer_id, effective_date, expires_date)
            if conflict is not None:
                self._raise_date_conflict(customer_id, conflict, "create rate card")

            version = self._next_standard_version(session, customer_id)
            now = now_utc()
            card = RateCard(
                customer_id=customer_id,
                name=payload.name or f"Rate Card v{version}",
                version=version,
                rate_card_type=RateCardType.STANDARD,
                effective_date=effective_date,
                expires_date=expires_date,
                is_active=True,
                rates=rates,
                billing_cycles=payload.billing_cycles.to_document() if payload.billing_cycles else {},
                minimum_monthly_charge=_quantize_money(payload.minimum_monthly_charge),
                based_on_template=payload.based_on_template,
                notes=payload.notes,
                created_by=actor_id,
                created_at=now,
                updated_at=now,
            )
            session.add(card)
            session.flush()
            self._create_links(session, card.id, contract_ids, actor_id)
            event_bus.publish_dict(
                RATE_CARD_CREATED,
                customer_id,
                {
                    "rate_card_id": card.id,
                    "version": card.version,
                    "effective_date": effective_date.isoformat(),
                    "contract_ids": contract_ids,
                },
                actor_id=actor_id,
                session=session,
            )
            self._commit(session, "rate card version already exists for customer")
            logger.info(
                "rate_card_created",
                extra={"customer_id": customer_id, "rate_card_id": card.id, "version": card.version},
            )
            return self._to_read(session, card)

    def create_rate_card_version(
        self,
        parent_id: str,
        actor_id: str | None,
        payload: RateCardVersionCreate,
    ) -> RateCardRead:
        effective_date = as_utc(payload.effective_date)
        expires_date = _optional_utc(payload.expires_date)
        self._check_interval(effective_date, expires_date)
        customer_id = self._lookup_customer_id(parent_id, parent=True)

        with customer_lock(customer_id), self._session() as session:
            serialize_customer_writes(session, customer_id)
            parent = session.get(RateCard, parent_id)
            if parent is None:
                raise ParentNotFoundError(f"parent rate card {parent_id} not found")
            if parent.archived_at is not None:
                raise ParentArchivedError("cannot create a version of an archived rate card")
            if parent.rate_card_type != RateCardType.STANDARD:
                raise ValidationError("only standard rate cards can be versioned")
            successor = session.exec(select(RateCard).where(RateCard.supersedes_id == parent.id)).first()
            if successor is not None:
                raise StateError(f"rate card {parent.id} is already superseded by version {successor.version}")
            if effective_date <= as_utc(parent.effective_date):
                raise ValidationError("new version must take effect after the version it supersedes")

            conflict = find_date_conflict(
                session,
                customer_id,
                effective_date,
                expires_date,
                exclude_rate_card_id=parent.id,
            )
            if conflict is not None:
                self._raise_date_conflict(customer_id, conflict, "create rate card version")

            rates = dict(parent.rates or {})
            if payload.rates is not None:
                rates.update(payload.rates.to_document())
            self._check_rates(customer_id, rates)
            billing_cycles = dict(parent.billing_cycles or {})
            if payload.billing_cycles is not None:
                billing_cycles.update(payload.billing_cycles.to_document())

            if payload.contract_ids is not None:
                requested_ids = payload.contract_ids
            else:
                requested_ids = self._parent_contract_ids(session, parent.id)
            contract_ids = self._resolve_contract_ids(session, customer_id, requested_ids)

            if "minimum_monthly_charge" in payload.model_fields_set:
                minimum = _quantize_money(payload.minimum_monthly_charge)
            else:
                minimum = parent.minimum_monthly_charge

            clipped = self._clip_adjustments(session, parent, effective_date, strict=True)

            now = now_utc()
            parent.is_active = False
            parent.deactivated_at = now
            parent_expires = _optional_utc(parent.expires_date)
            if parent_expires is None or parent_expires > effective_date:
                parent.expires_date = effective_date
            parent.updated_at = now
            session.add(parent)
            session.flush()

            version = max(parent.version + 1, self._next_standard_version(session, customer_id))
            card = RateCard(
                customer_id=customer_id,
                name=payload.name or parent.name or f"Rate Card v{version}",
                version=version,
                rate_card_type=RateCardType.STANDARD,
                supersedes_id=parent.id,
                effective_date=effective_date,
                expires_date=expires_date,
                is_active=True,
                rates=rates,
                billing_cycles=billing_cycles,
                minimum_monthly_charge=minimum,
                based_on_template=payload.based_on_template or parent.based_on_template,
                notes=payload.notes if payload.notes is not None else parent.notes,
                created_by=actor_id,
                created_at=now,
                updated_at=now,
            )
            session.add(card)
            session.flush()
            self._create_links(session, card.id, contract_ids, actor_id)

            event_bus.publish_dict(
                RATE_CARD_SUPERSEDED,
                customer_id,
                {
                    "rate_card_id": parent.id,
                    "superseded_by_id": card.id,
                    "expires_date": effective_date.isoformat(),
                    "clipped_adjustment_ids": clipped,
                },
                actor_id=actor_id,
                session=session,
            )
            event_bus.publish_dict(
                RATE_CARD_VERSIONED,
                customer_id,
                {
                    "rate_card_id": card.id,
                    "supersedes_id": parent.id,
                    "version": card.version,
                    "effective_date": effective_date.isoformat(),
                },
                actor_id=actor_id,
                session=session,
            )
            self._commit(session, "rate card version already exists for customer")
            logger.info(
                "rate_card_superseded",
                extra={
                    "customer_id": customer_id,
                    "rate_card_id": card.id,
                    "supersedes_id": parent.id,
                    "version": card.version,
                    "clipped_adjustments": len(clipped),
                },
            )
            return self._to_read(session, card)

    def create_adjustment_rate_card(
        self,
        parent_id: str,
        actor_id: str | None,
        payload: RateCardAdjustmentCreate,
    ) -> RateCardRead:
        effective_date = as_utc(payload.effective_date)
        expires_date = _optional_utc(payload.expires_date)
        self._check_interval(effective_date, expires_date)
        customer_id = self._lookup_customer_id(parent_id, parent=True)
        rates = payload.rates.to_document()
        self._check_rates(customer_id, rates)

        with customer_lock(customer_id), self._session() as session:
            serialize_customer_writes(session, customer_id)
            parent = session.get(RateCard, parent_id)
            if parent is None:
                raise ParentNotFoundError(f"parent rate card {parent_id} not found")
            if parent.archived_at is not None:
                raise ParentArchivedError("cannot adjust an archived rate card")
            if parent.rate_card_type != RateCardType.STANDARD:
                raise NestedAdjustmentError("adjustments can only overlay a standard rate card")

            parent_expires = _optional_utc(parent.expires_date)
            if effective_date < as_utc(parent.effective_date):
                raise AdjustmentOutOfBoundsError("adjustment cannot start before its parent rate card")
            if parent_expires is not None:
                if effective_date >= parent_expires:
                    raise AdjustmentOutOfBoundsError("adjustment must start before its parent rate card expires")
                if expires_date is not None and expires_date > parent_expires:
                    raise AdjustmentOutOfBoundsError("adjustment cannot end after its parent rate card")

            if payload.contract_ids:
                requested_ids = payload.contract_ids
            else:
                requested_ids = self._parent_contract_ids(session, parent.id)
            contract_ids = self._resolve_contract_ids(session, customer_id, requested_ids)

            now = now_utc()
            card = RateCard(
                customer_id=customer_id,
                name=payload.name or f"{parent.name} - Adjustment",
                version=parent.version,
                rate_card_type=RateCardType.ADJUSTMENT,
                parent_rate_card_id=parent.id,
                effective_date=effective_date,
                expires_date=expires_date,
                is_active=True,
                rates=rates,
                billing_cycles=payload.billing_cycles.to_document() if payload.billing_cycles else {},
                minimum_monthly_charge=_quantize_money(payload.minimum_monthly_charge),
                notes=payload.notes,
                created_by=actor_id,
                created_at=now,
                updated_at=now,
            )
            session.add(card)
            session.flush()
            self._create_links(session, card.id, contract_ids, actor_id)
            event_bus.publish_dict(
                RATE_CARD_ADJUSTMENT_CREATED,
                customer_id,
                {
                    "rate_card_id": card.id,
                    "parent_rate_card_id": parent.id,
                    "effective_date": effective_date.isoformat(),
                    "expires_date": expires_date.isoformat() if expires_date else None,
                },
                actor_id=actor_id,
                session=session,
            )
            self._commit(session, "failed to create adjustment rate card")
            logger.info(
                "rate_card_adjustment_created",
                extra={"customer_id": customer_id, "rate_card_id": card.id, "parent_rate_card_id": parent.id},
            )
            return self._to_read(session, card)

    def deactivate_rate_card(self, rate_card_id: str, actor_id: str | None = None) -> RateCardRead:
        customer_id = self._lookup_customer_id(rate_card_id)
        with customer_lock(customer_id), self._session() as session:
            serialize_customer_writes(session, customer_id)
            card = self._get_card(session, rate_card_id)
            if not card.is_active:
                raise StateError("rate card is already inactive")
            now = now_utc()
            # A card that has not started yet closes on its own start date.
            cutoff = max(now, as_utc(card.effective_date))
            expires = _optional_utc(card.expires_date)
            if expires is None or expires > cutoff:
                card.expires_date = cutoff
            card.is_active = False
            card.deactivated_at = now
            card.updated_at = now
            clipped: list[str] = []
            if card.rate_card_type == RateCardType.STANDARD:
                clipped = self._clip_adjustments(session, card, as_utc(card.expires_date), strict=False)
            session.add(card)
            event_bus.publish_dict(
                RATE_CARD_DEACTIVATED,
                customer_id,
                {
                    "rate_card_id": card.id,
                    "expires_date": as_utc(card.expires_date).isoformat(),
                    "clipped_adjustment_ids": clipped,
                },
                actor_id=actor_id,
                session=session,
            )
            self._commit(session, "failed to deactivate rate card")
            logger.info("rate_card_deactivated", extra={"customer_id": customer_id, "rate_card_id": card.id})
            return self._to_read(session, card)

    def reactivate_rate_card(self, rate_card_id: str, actor_id: str | None = None) -> RateCardRead:
        customer_id = self._lookup_customer_id(rate_card_id)
        with customer_lock(customer_id), self._session() as session:
            serialize_customer_writes(session, customer_id)
            card = self._get_card(session, rate_card_id)
            if card.archived_at is not None:
                raise StateError("archived rate card must be restored before it can be reactivated")
            if card.is_active:
                raise StateError("rate card is already active")
            if card.rate_card_type == RateCardType.STANDARD:
                successor = session.exec(select(RateCard).where(RateCard.supersedes_id == card.id)).first()
                if successor is not None:
                    raise StateError("a superseded rate card cannot be reactivated")
                conflict = find_date_conflict(
                    session,
                    customer_id,
                    as_utc(card.effective_date),
                    _optional_utc(card.expires_date),
                    exclude_rate_card_id=card.id,
                )
                if conflict is not None:
                    self._raise_date_conflict(customer_id, conflict, "reactivate rate card")
            else:
                parent = self._get_card(session, card.parent_rate_card_id or "")
                if parent.archived_at is not None:
                    raise ParentArchivedError("cannot reactivate an adjustment of an archived rate card")

            card.is_active = True
            card.deactivated_at = None
            card.updated_at = now_utc()
            session.add(card)
            event_bus.publish_dict(
                RATE_CARD_REACTIVATED,
                customer_id,
                {"rate_card_id": card.id},
                actor_id=actor_id,
                session=session,
            )
            self._commit(session, "failed to reactivate rate card")
            logger.info("rate_card_reactivated", extra={"customer_id": customer_id, "rate_card_id": card.id})
            return self._to_read(session, card)

    def archive_rate_card(self, rate_card_id: str, actor_id: str | None, reason: str | None = None) -> RateCardRead:
        customer_id = self._lookup_customer_id(rate_card_id)
        with customer_lock(customer_id), self._session() as session:
            serialize_customer_writes(session, customer_id)
            card = self._get_card(session, rate_card_id)
            if card.archived_at is not None:
                raise StateError("rate card is already archived")
            now = now_utc()
            card.archived_at = now
            card.archived_by = actor_id
            card.archived_reason = reason
            card.is_active = False
            card.updated_at = now
            session.add(card)
            event_bus.publish_dict(
                RATE_CARD_ARCHIVED,
                customer_id,
                {"rate_card_id": card.id, "reason": reason},
                actor_id=actor_id,
                session=session,
            )
            self._commit(session, "failed to archive rate card")
            logger.info(
                "rate_card_archived",
                extra={"customer_id": customer_id, "rate_card_id": card.id, "reason": reason},
            )
            return self._to_read(session, card)

    def restore_rate_card(self, rate_card_id: str, actor_id: str | None = None) -> RateCardRead:
        customer_id = self._lookup_customer_id(rate_card_id)
        with customer_lock(customer_id), self._session() as session:
            serialize_customer_writes(session, customer_id)
            card = self._get_card(session, rate_card_id)
            if card.archived_at is None:
                raise StateError("rate card is not archived")
            card.archived_at = None
            card.archived_by = None
            card.archived_reason = None
            card.updated_at = now_utc()
            session.add(card)
            event_bus.publish_dict(
                RATE_CARD_RESTORED,
                customer_id,
                {"rate_card_id": card.id},
                actor_id=actor_id,
                session=session,
            )
            self._commit(session, "failed to restore rate card")
            logger.info("rate_card_restored", extra={"customer_id": customer_id, "rate_card_id": card.id})
            return self._to_read(session, card)

    def add_contract_link(
        self,
        rate_card_id: str,
        actor_id: str | None,
        payload: ContractLinkCreate,
    ) -> RateCardRead:
        customer_id = self._lookup_customer_id(rate_card_id)
        with customer_lock(customer_id), self._session() as session:
            serialize_customer_writes(session, customer_id)
            card = self._get_card(session, rate_card_id)
            (contract_id,) = self._resolve_contract_ids(session, customer_id, [payload.contract_id])
            existing = session.get(RateCardContract, (rate_card_id, contract_id))
            if existing is not None:
                raise ConflictError("contract is already linked to this rate card")
            session.add(
                RateCardContract(
                    rate_card_id=rate_card_id,
                    contract_id=contract_id,
                    link_type=payload.link_type,
                    linked_at=now_utc(),
                    linked_by=actor_id,
                    notes=payload.notes,
                )
            )
            event_bus.publish_dict(
                RATE_CARD_CONTRACT_LINKED,
                customer_id,
                {"rate_card_id": rate_card_id, "contract_id": contract_id, "link_type": payload.link_type},
                actor_id=actor_id,
                session=session,
            )
            self._commit(session, "contract is already linked to this rate card")
            return self._to_read(session, card)

    def remove_contract_link(self, rate_card_id: str, contract_id: str, actor_id: str | None = None) -> RateCardRead:
        customer_id = self._lookup_customer_id(rate_card_id)
        with customer_lock(customer_id), self._session() as session:
            serialize_customer_writes(session, customer_id)
            card = self._get_card(session, rate_card_id)
            links = self._links_by_card(session, [rate_card_id])[rate_card_id]
            link = next((item for item in links if item.contract_id == contract_id), None)
            if link is None:
                raise NotFoundError("contract link not found")
            if len(links) <= 1:
                raise StateError("cannot remove the last contract from a rate card")
            session.delete(link)
            if link.link_type == ContractLinkType.PRIMARY:
                successor = next(item for item in links if item.contract_id != contract_id)
                successor.link_type = ContractLinkType.PRIMARY
                session.add(successor)
            event_bus.publish_dict(
                RATE_CARD_CONTRACT_UNLINKED,
                customer_id,
                {"rate_card_id": rate_card_id, "contract_id": contract_id},
                actor_id=actor_id,
                session=session,
            )
            self._commit(session, "failed to remove contract link")
            return self._to_read(session, card)

    def get_rate_card(self, rate_card_id: str) -> RateCardDetailRead:
        with self._session() as session:
            card = self._get_card(session, rate_card_id)
            successor = session.exec(select(RateCard).where(RateCard.supersedes_id == card.id)).first()
            adjustments = list(
                session.exec(
                    select(RateCard)
                    .where(RateCard.parent_rate_card_id == card.id)
                    .order_by(col(RateCard.effective_date), col(RateCard.created_at))
                ).all()
            )
            base = self._to_read(session, card)
            return RateCardDetailRead(
                **base.model_dump(),
                superseded_by_id=successor.id if successor is not None else None,
                adjustments=self._to_reads(session, adjustments),
            )

    def get_active_rate_card(self, customer_id: str) -> RateCardRead | None:
        with self._session() as session:
            self._get_customer(session, customer_id)
            card = session.exec(
                select(RateCard)
                .where(RateCard.customer_id == customer_id)
                .where(RateCard.rate_card_type == RateCardType.STANDARD)
                .where(col(RateCard.is_active).is_(True))
                .where(col(RateCard.archived_at).is_(None))
                .order_by(col(RateCard.effective_date).desc())
            ).first()
            if card is None:
                return None
            return self._to_read(session, card)

    def get_rate_card_for_date(self, customer_id: str, at: datetime) -> RateCardRead | None:
        with self._session() as session:
            self._get_customer(session, customer_id)
            sources = select_rate_sources(load_rate_sources(session, customer_id), at)
            standard = next((item for item in sources if not item.is_adjustment), None)
            if standard is None:
                return None
            return self._to_read(session, self._get_card(session, standard.rate_card_id))

    def get_rate_card_history(self, customer_id: str, *, include_archived: bool = False) -> list[RateCardRead]:
        with self._session() as session:
            self._get_customer(session, customer_id)
            statement = select(RateCard).where(RateCard.customer_id == customer_id)
            if not include_archived:
                statement = statement.where(col(RateCard.archived_at).is_(None))
            rows = list(
                session.exec(
                    statement.order_by(
                        col(RateCard.version).desc(),
                        col(RateCard.effective_date).desc(),
                        col(RateCard.created_at).desc(),
                    )
                ).all()
            )
            return self._to_reads(session, rows)

    def has_conflict(
        self,
        customer_id: str,
        effective_date: datetime,
        expires_date: datetime | None = None,
        exclude_rate_card_id: str | None = None,
    ) -> RateCardRead | None:
        with self._session() as session:
            self._get_customer(session, customer_id)
            conflict = find_date_conflict(
                session,
                customer_id,
                as_utc(effective_date),
                _optional_utc(expires_date),
                exclude_rate_card_id=exclude_rate_card_id,
            )
            if conflict is None:
                return None
            return self._to_read(session, conflict)

    def get_effective_rates(
        self,
        customer_id: str,
        at: datetime,
        service_type: str | None = None,
    ) -> EffectiveRatesRead:
        if service_type is not None and service_type not in SERVICE_SUBTYPES:
            raise ValidationError(f"unknown service type: {service_type}")
        moment = as_utc(at)
        with self._session() as session:
            self._get_customer(session, customer_id)
            sources = select_rate_sources(load_rate_sources(session, customer_id), moment)

        if service_type is not None:
            rates: dict[str, Any] = resolve_effective_rates(sources, service_type)
        else:
            rates = {name: resolve_effective_rates(sources, name) for name in SERVICE_SUBTYPES}
        return EffectiveRatesRead(
            customer_id=customer_id,
            at=moment,
            service_type=service_type,
            source_rate_card_ids=[item.rate_card_id for item in sources],
            rates=rates,
            vas=resolve_vas_rates(sources),
            minimum_monthly_charge=resolve_minimum_charge(sources),
            volume_discounts=resolve_volume_discounts(sources),
        )
