from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Annotated, Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel


def now_utc() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class RateCardType(StrEnum):
    STANDARD = "STANDARD"
    ADJUSTMENT = "ADJUSTMENT"


class ContractLinkType(StrEnum):
    PRIMARY = "PRIMARY"
    ADDENDUM = "ADDENDUM"
    AMENDMENT = "AMENDMENT"


class ContractStatus(StrEnum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    TERMINATED = "TERMINATED"


class BillingCycle(StrEnum):
    IMMEDIATE = "IMMEDIATE"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class InvoiceStatus(StrEnum):
    DRAFT = "DRAFT"
    ISSUED = "ISSUED"
    SENT = "SENT"
    PAID = "PAID"
    PARTIAL = "PARTIAL"
    OVERDUE = "OVERDUE"
    VOID = "VOID"
    CREDITED = "CREDITED"


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    customer_id: str | None = Field(default=None, index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    correlation_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class Customer(SQLModel, table=True):
    __tablename__ = "customers"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    code: str = Field(index=True, unique=True)
    name: str = Field(index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Contract(SQLModel, table=True):
    __tablename__ = "contracts"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    customer_id: str = Field(foreign_key="customers.id", index=True)
    contract_number: str | None = Field(default=None, index=True, unique=True)
    name: str
    start_date: date
    end_date: date | None = None
    status: ContractStatus = Field(default=ContractStatus.ACTIVE, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class RateCard(SQLModel, table=True):
    __tablename__ = "rate_cards"
    __table_args__ = (
        Index(
            "uq_rate_cards_customer_standard_version",
            "customer_id",
            "version",
            unique=True,
            sqlite_where=text("rate_card_type = 'STANDARD'"),
            postgresql_where=text("rate_card_type = 'STANDARD'"),
        ),
        Index("ix_rate_cards_customer_active", "customer_id", "is_active"),
        Index("ix_rate_cards_customer_effective", "customer_id", "effective_date"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    customer_id: str = Field(foreign_key="customers.id", index=True)
    name: str
    version: int = Field(default=1)
    rate_card_type: RateCardType = Field(default=RateCardType.STANDARD, index=True)
    parent_rate_card_id: str | None = Field(default=None, foreign_key="rate_cards.id", index=True)
    supersedes_id: str | None = Field(default=None, foreign_key="rate_cards.id", index=True)
    effective_date: datetime = Field(index=True)
    expires_date: datetime | None = Field(default=None, index=True)
    is_active: bool = Field(default=True, index=True)
    deactivated_at: datetime | None = Field(default=None, index=True)
    rates: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    billing_cycles: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    minimum_monthly_charge: Decimal | None = Field(default=None, max_digits=12, decimal_places=2)
    based_on_template: str | None = None
    notes: str | None = None
    archived_at: datetime | None = Field(default=None, index=True)
    archived_by: str | None = None
    archived_reason: str | None = None
    created_by: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)


class RateCardContract(SQLModel, table=True):
    __tablename__ = "rate_card_contracts"

    rate_card_id: str = Field(foreign_key="rate_cards.id", primary_key=True)
    contract_id: str = Field(foreign_key="contracts.id", primary_key=True, index=True)
    link_type: ContractLinkType = Field(default=ContractLinkType.PRIMARY)
    linked_at: datetime = Field(default_factory=now_utc)
    linked_by: str | None = None
    notes: str | None = None


class BillableActivity(SQLModel, table=True):
    __tablename__ = "billable_activities"
    __table_args__ = (
        UniqueConstraint(
            "customer_id",
            "reference_id",
            "occurred_at",
            "activity_type",
            name="uq_billable_activities_reference",
        ),
        Index("ix_billable_activities_customer_occurred", "customer_id", "occurred_at"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    customer_id: str = Field(foreign_key="customers.id", index=True)
    occurred_at: datetime = Field(index=True)
    activity_type: str = Field(index=True)
    quantity: Decimal = Field(max_digits=12, decimal_places=3)
    unit: str | None = None
    description: str | None = None
    reference_id: str | None = Field(default=None, index=True)
    rate_override: Decimal | None = Field(default=None, max_digits=12, decimal_places=4)
    amount: Decimal | None = Field(default=None, max_digits=12, decimal_places=2)
    zone: int | None = None
    source: str | None = None
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    created_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Invoice(SQLModel, table=True):
    __tablename__ = "invoices"
    __table_args__ = (
        Index(
            "uq_invoices_one_draft_per_period",
            "customer_id",
            "billing_cycle",
            "period_start",
            "period_end",
            unique=True,
            sqlite_where=text("status = 'DRAFT'"),
            postgresql_where=text("status = 'DRAFT'"),
        ),
        Index("ix_invoices_customer_period", "customer_id", "period_start", "period_end"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    customer_id: str = Field(foreign_key="customers.id", index=True)
    invoice_number: str = Field(index=True, unique=True)
    billing_cycle: BillingCycle = Field(default=BillingCycle.MONTHLY, index=True)
    period_start: datetime = Field(index=True)
    period_end: datetime = Field(index=True)
    status: InvoiceStatus = Field(default=InvoiceStatus.DRAFT, index=True)
    subtotal: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    tax: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    total: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    balance_due: Decimal = Field(default=Decimal("0.00"), max_digits=12, decimal_places=2)
    issued_at: datetime | None = None
    due_date: datetime | None = None
    voided_at: datetime | None = None
    data_snapshot: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    notes: str | None = None
    created_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)


class InvoiceLine(SQLModel, table=True):
    __tablename__ = "invoice_lines"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    invoice_id: str = Field(foreign_key="invoices.id", index=True)
    line_order: int = Field(default=0)
    description: str
    category: str = Field(index=True)
    service_type: str | None = None
    subtype: str | None = None
    quantity: Decimal = Field(max_digits=12, decimal_places=3)
    unit: str | None = None
    unit_rate: Decimal = Field(max_digits=12, decimal_places=4)
    line_total: Decimal = Field(max_digits=12, decimal_places=2)
    is_priced: bool = Field(default=True)
    activity_count: int = Field(default=0)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    @field_validator("*", mode="after")
    @classmethod
    def _utc_datetimes(cls, value: Any) -> Any:
        # SQLite hands back naive timestamps; everything stored is UTC.
        if isinstance(value, datetime):
            return as_utc(value)
        return value


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    customer_id: str | None = None
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    correlation_id: str | None = None
    payload: dict[str, Any]


PositiveRate = Annotated[Decimal, PydanticField(gt=0)]


class VolumeTier(BaseModel):
    model_config = ConfigDict(extra="forbid")

    min_volume: Decimal = PydanticField(ge=0)
    max_volume: Decimal | None = None
    rate: PositiveRate

    @model_validator(mode="after")
    def _check_bounds(self) -> VolumeTier:
        if self.max_volume is not None and self.max_volume < self.min_volume:
            raise ValueError("max_volume must be greater than or equal to min_volume")
        return self


class ZoneRate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    min_zone: int = PydanticField(ge=1)
    max_zone: int | None = None
    rate: PositiveRate

    @model_validator(mode="after")
    def _check_bounds(self) -> ZoneRate:
        if self.max_zone is not None and self.max_zone < self.min_zone:
            raise ValueError("max_zone must be greater than or equal to min_zone")
        return self


TieredRate = PositiveRate | list[VolumeTier]


class ReceivingRates(BaseModel):
    model_config = ConfigDict(extra="forbid")

    standard_pallet: TieredRate | None = None
    oversize_pallet: TieredRate | None = None
    container_devanning_20ft: TieredRate | None = None
    container_devanning_40ft: TieredRate | None = None
    per_item: TieredRate | None = None
    per_hour: TieredRate | None = None


class StorageRates(BaseModel):
    model_config = ConfigDict(extra="forbid")

    pallet_monthly: TieredRate | None = None
    pallet_daily: TieredRate | None = None
    cubic_foot_monthly: TieredRate | None = None
    long_term_penalty_monthly: TieredRate | None = None


class FulfillmentRates(BaseModel):
    model_config = ConfigDict(extra="forbid")

    base_order: TieredRate | None = None
    additional_item: TieredRate | None = None
    b2b_pallet: TieredRate | None = None
    pick_per_line: TieredRate | None = None


class ShippingRates(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Markups can exceed 100%.
    markup_percent: Decimal | None = PydanticField(default=None, ge=0)
    label_fee: PositiveRate | None = None
    zone_rates: list[ZoneRate] | None = None


class VolumeDiscount(BaseModel):
    model_config = ConfigDict(extra="forbid")

    min_orders_monthly: int = PydanticField(gt=0)
    discount_percent: Decimal = PydanticField(ge=0, le=100)


class RateCardRates(BaseModel):
    model_config = ConfigDict(extra="forbid")

    receiving: ReceivingRates | None = None
    storage: StorageRates | None = None
    fulfillment: FulfillmentRates | None = None
    shipping: ShippingRates | None = None
    vas: dict[str, PositiveRate] | None = None
    volume_discounts: list[VolumeDiscount] | None = None

    @field_validator("volume_discounts")
    @classmethod
    def _unique_discount_thresholds(cls, value: list[VolumeDiscount] | None) -> list[VolumeDiscount] | None:
        if value is None:
            return None
        thresholds = [item.min_orders_monthly for item in value]
        if len(set(thresholds)) != len(thresholds):
            raise ValueError("volume discount thresholds must be unique")
        return sorted(value, key=lambda item: item.min_orders_monthly)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


ALLOWED_BILLING_CYCLES: dict[str, frozenset[BillingCycle]] = {
    "shipping": frozenset({BillingCycle.IMMEDIATE, BillingCycle.WEEKLY, BillingCycle.MONTHLY}),
    "receiving": frozenset({BillingCycle.WEEKLY, BillingCycle.MONTHLY}),
    "storage": frozenset({BillingCycle.MONTHLY}),
    "fulfillment": frozenset({BillingCycle.WEEKLY, BillingCycle.MONTHLY}),
    "vas": frozenset({BillingCycle.WEEKLY, BillingCycle.MONTHLY}),
}


class BillingCycles(BaseModel):
    model_config = ConfigDict(extra="forbid")

    shipping: BillingCycle | None = None
    receiving: BillingCycle | None = None
    storage: BillingCycle | None = None
    fulfillment: BillingCycle | None = None
    vas: BillingCycle | None = None

    @field_validator("*", mode="before")
    @classmethod
    def _blank_as_unset(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().upper()
            return value or None
        return value

    @model_validator(mode="after")
    def _check_allowed_cycles(self) -> BillingCycles:
        for service_type, allowed in ALLOWED_BILLING_CYCLES.items():
            cycle = getattr(self, service_type)
            if cycle is not None and cycle not in allowed:
                options = ", ".join(sorted(allowed))
                raise ValueError(f"{service_type} cannot be billed {cycle}; allowed: {options}")
        return self

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class CustomerCreate(BaseModel):
    code: str
    name: str


class CustomerRead(ORMReadModel):
    id: str
    code: str
    name: str
    created_at: datetime


class ContractCreate(BaseModel):
    name: str
    contract_number: str | None = None
    start_date: date
    end_date: date | None = None
    status: ContractStatus = ContractStatus.ACTIVE


class ContractRead(ORMReadModel):
    id: str
    customer_id: str
    contract_number: str | None
    name: str
    start_date: date
    end_date: date | None
    status: ContractStatus
    created_at: datetime


class RateCardCreate(BaseModel):
    effective_date: datetime
    expires_date: datetime | None = None
    name: str | None = None
    rates: RateCardRates
    billing_cycles: BillingCycles | None = None
    minimum_monthly_charge: PositiveRate | None = None
    based_on_template: str | None = None
    notes: str | None = None
    contract_ids: list[str] = PydanticField(default_factory=list)


class RateCardVersionCreate(BaseModel):
    effective_date: datetime
    expires_date: datetime | None = None
    name: str | None = None
    rates: RateCardRates | None = None
    billing_cycles: BillingCycles | None = None
    minimum_monthly_charge: PositiveRate | None = None
    based_on_template: str | None = None
    notes: str | None = None
    contract_ids: list[str] | None = None


class RateCardAdjustmentCreate(BaseModel):
    effective_date: datetime
    expires_date: datetime | None = None
    name: str | None = None
    rates: RateCardRates
    billing_cycles: BillingCycles | None = None
    minimum_monthly_charge: PositiveRate | None = None
    notes: str | None = None
    contract_ids: list[str] | None = None


class RateCardArchiveRequest(BaseModel):
    reason: str | None = None


class ContractLinkCreate(BaseModel):
    contract_id: str
    link_type: ContractLinkType
    notes: str | None = None


class ContractLinkRead(ORMReadModel):
    rate_card_id: str
    contract_id: str
    link_type: ContractLinkType
    linked_at: datetime
    linked_by: str | None
    notes: str | None


class RateCardRead(ORMReadModel):
    id: str
    customer_id: str
    name: str
    version: int
    rate_card_type: RateCardType
    parent_rate_card_id: str | None
    supersedes_id: str | None
    effective_date: datetime
    expires_date: datetime | None
    is_active: bool
    deactivated_at: datetime | None = None
    rates: dict[str, Any]
    billing_cycles: dict[str, Any]
    minimum_monthly_charge: Decimal | None
    based_on_template: str | None
    notes: str | None
    archived_at: datetime | None
    archived_by: str | None
    archived_reason: str | None
    created_by: str | None
    created_at: datetime
    updated_at: datetime
    contract_links: list[ContractLinkRead] = PydanticField(default_factory=list)


class RateCardDetailRead(RateCardRead):
    superseded_by_id: str | None = None
    adjustments: list[RateCardRead] = PydanticField(default_factory=list)


class RateCardConflictRead(BaseModel):
    has_conflict: bool
    conflicting_rate_card: RateCardRead | None = None


class EffectiveRatesRead(BaseModel):
    customer_id: str
    at: datetime
    service_type: str | None
    source_rate_card_ids: list[str]
    rates: dict[str, Any]
    vas: dict[str, Decimal]
    minimum_monthly_charge: Decimal | None
    volume_discounts: list[dict[str, Any]] = PydanticField(default_factory=list)


class BillableActivityCreate(BaseModel):
    occurred_at: datetime
    activity_type: str
    quantity: Decimal
    unit: str | None = None
    description: str | None = None
    reference_id: str | None = None
    rate_override: Decimal | None = PydanticField(default=None, ge=0)
    amount: Decimal | None = None
    zone: int | None = PydanticField(default=None, ge=1)
    source: str | None = None
    detail: dict[str, Any] = PydanticField(default_factory=dict)

    @field_validator("quantity")
    @classmethod
    def _non_zero_quantity(cls, value: Decimal) -> Decimal:
        if value == 0:
            raise ValueError("quantity cannot be zero")
        return value


class BillableActivityRead(ORMReadModel):
    id: str
    customer_id: str
    occurred_at: datetime
    activity_type: str
    quantity: Decimal
    unit: str | None
    description: str | None
    reference_id: str | None
    rate_override: Decimal | None
    amount: Decimal | None
    zone: int | None
    source: str | None
    detail: dict[str, Any]
    created_by: str | None
    created_at: datetime


class BillableActivityIngestRead(BaseModel):
    activity: BillableActivityRead
    deduplicated: bool


class InvoiceLineDraft(BaseModel):
    model_config = ConfigDict(frozen=True)

    description: str
    category: str
    service_type: str | None = None
    subtype: str | None = None
    quantity: Decimal
    unit: str | None = None
    unit_rate: Decimal
    line_total: Decimal
    is_priced: bool = True
    activity_count: int = 0
    source_rate_card_ids: list[str] = PydanticField(default_factory=list)


class InvoiceLinesPreviewRead(BaseModel):
    customer_id: str
    period_start: datetime
    period_end: datetime
    billing_cycle: BillingCycle | None = None
    lines: list[InvoiceLineDraft]
    subtotal: Decimal
    unpriced_line_count: int


class InvoiceGenerateRequest(BaseModel):
    period_start: datetime
    period_end: datetime
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    tax: Decimal = PydanticField(default=Decimal("0.00"), ge=0)
    notes: str | None = None
    force_recompute: bool = False


class InvoiceRead(ORMReadModel):
    id: str
    customer_id: str
    invoice_number: str
    billing_cycle: BillingCycle
    period_start: datetime
    period_end: datetime
    status: InvoiceStatus
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    balance_due: Decimal
    issued_at: datetime | None
    due_date: datetime | None
    voided_at: datetime | None
    data_snapshot: dict[str, Any]
    notes: str | None
    created_by: str | None
    created_at: datetime
    updated_at: datetime


class InvoiceLineRead(ORMReadModel):
    id: str
    invoice_id: str
    line_order: int
    description: str
    category: str
    service_type: str | None
    subtype: str | None
    quantity: Decimal
    unit: str | None
    unit_rate: Decimal
    line_total: Decimal
    is_priced: bool
    activity_count: int
    detail: dict[str, Any]


class InvoiceDetailRead(BaseModel):
    invoice: InvoiceRead
    lines: list[InvoiceLineRead]


class InvoiceVoidRequest(BaseModel):
    reason: str | None = None


class InvoiceTransitionRequest(BaseModel):
    status: InvoiceStatus
    note: str | None = None


class InvoicePaymentRequest(BaseModel):
    amount: PositiveRate
    reference: str | None = None


class BillingServiceRead(BaseModel):
    code: str
    name: str
    category: str
    service_type: str
    subtype: str
    unit: str | None
    allowed_billing_cycles: list[BillingCycle]


class BillingCategoryRead(BaseModel):
    code: str
    name: str
    sort_order: int
    allowed_billing_cycles: list[BillingCycle]
    services: list[BillingServiceRead]
