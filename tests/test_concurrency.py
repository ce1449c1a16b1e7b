from __future__ import annotations

import threading
from datetime import UTC, date, datetime
from pathlib import Path

import pytest
from sqlalchemy import event
from sqlmodel import Session, SQLModel, col, create_engine, select

from backoffice.domain.errors import DateConflictError
from backoffice.domain.models import (
    BillableActivityCreate,
    ContractCreate,
    CustomerCreate,
    Invoice,
    InvoiceGenerateRequest,
    RateCard,
    RateCardCreate,
)
from backoffice.infra import db, locks
from backoffice.services.billing_service import BillingService
from backoffice.services.rate_card_service import RateCardService
from backoffice.services.registry_service import RegistryService


@pytest.fixture()
def customer(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> tuple[str, str]:
    db_path = tmp_path / "concurrency_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)

    registry = RegistryService()
    created = registry.create_customer(CustomerCreate(code="RACE", name="Race Logistics"))
    contract = registry.create_contract(created.id, ContractCreate(name="MSA", start_date=date(2024, 1, 1)))
    return created.id, contract.id


def _run_concurrently(workers: list, count: int = 2) -> list[object]:
    barrier = threading.Barrier(count)
    results: list[object] = [None] * count

    def _target(index: int) -> None:
        barrier.wait()
        try:
            results[index] = workers[index]()
        except Exception as exc:
            results[index] = exc

    threads = [threading.Thread(target=_target, args=(index,)) for index in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return results


def test_concurrent_overlapping_creates_admit_exactly_one(customer: tuple[str, str]) -> None:
    customer_id, contract_id = customer
    service = RateCardService()

    def _create(month: int):
        def _call():
            return service.create_standard_rate_card(
                customer_id,
                f"user-{month}",
                RateCardCreate.model_validate(
                    {
                        "effective_date": datetime(2024, month, 1, tzinfo=UTC),
                        "rates": {"storage": {"pallet_monthly": "20"}},
                        "contract_ids": [contract_id],
                    }
                ),
            )

        return _call

    results = _run_concurrently([_create(1), _create(2)])

    conflicts = [item for item in results if isinstance(item, DateConflictError)]
    created = [item for item in results if not isinstance(item, Exception)]
    assert len(created) == 1
    assert len(conflicts) == 1
    with Session(db.engine) as session:
        active = session.exec(select(RateCard).where(col(RateCard.is_active).is_(True))).all()
    assert len(active) == 1


def test_concurrent_generation_shares_one_draft(customer: tuple[str, str]) -> None:
    customer_id, contract_id = customer
    RateCardService().create_standard_rate_card(
        customer_id,
        None,
        RateCardCreate.model_validate(
            {
                "effective_date": datetime(2024, 1, 1, tzinfo=UTC),
                "rates": {"fulfillment": {"base_order": "3.00"}},
                "contract_ids": [contract_id],
            }
        ),
    )
    billing = BillingService()
    billing.ingest_activity(
        customer_id,
        None,
        BillableActivityCreate(
            occurred_at=datetime(2024, 2, 3, tzinfo=UTC),
            activity_type="order_fulfillment",
            quantity=10,
        ),
    )
    request = InvoiceGenerateRequest(
        period_start=datetime(2024, 2, 1, tzinfo=UTC),
        period_end=datetime(2024, 3, 1, tzinfo=UTC),
    )

    results = _run_concurrently(
        [
            lambda: billing.generate_invoice(customer_id, "user-a", request),
            lambda: billing.generate_invoice(customer_id, "user-b", request),
        ]
    )

    assert not any(isinstance(item, Exception) for item in results)
    assert results[0].id == results[1].id
    with Session(db.engine) as session:
        assert len(session.exec(select(Invoice)).all()) == 1


def test_customer_lock_times_out_when_held(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(locks, "CUSTOMER_LOCK_TIMEOUT_SECONDS", 0.05)
    holding = threading.Event()
    release = threading.Event()

    def _holder() -> None:
        with locks.customer_lock("busy-customer"):
            holding.set()
            release.wait(timeout=5)

    thread = threading.Thread(target=_holder)
    thread.start()
    holding.wait(timeout=5)
    try:
        with pytest.raises(locks.LockTimeoutError):
            with locks.customer_lock("busy-customer"):
                pass
    finally:
        release.set()
        thread.join(timeout=5)

    with locks.customer_lock("busy-customer"):
        pass


def test_local_locks_are_released_from_the_registry(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(locks, "CUSTOMER_LOCK_BACKEND", "local")
    for index in range(50):
        with locks.customer_lock(f"customer-{index}"):
            assert f"customer:customer-{index}" in locks._local_locks

    with locks.customer_lock("nested"):
        with locks.customer_lock("nested"):
            pass
        assert "customer:nested" in locks._local_locks

    assert locks._local_locks == {}
