from __future__ import annotations

from datetime import datetime

from sqlmodel import Session, col, select

from backoffice.domain.models import RateCard, RateCardType, as_utc
from backoffice.domain.rate_resolution import FAR_FUTURE


def intervals_overlap(
    start: datetime,
    end: datetime | None,
    other_start: datetime,
    other_end: datetime | None,
) -> bool:
    # Both bounds inclusive; a missing end is open-ended.
    upper = as_utc(end) if end is not None else FAR_FUTURE
    other_upper = as_utc(other_end) if other_end is not None else FAR_FUTURE
    return as_utc(other_start) <= upper and other_upper >= as_utc(start)


def find_date_conflict(
    session: Session,
    customer_id: str,
    effective_date: datetime,
    expires_date: datetime | None = None,
    exclude_rate_card_id: str | None = None,
) -> RateCard | None:
    statement = (
        select(RateCard)
        .where(RateCard.customer_id == customer_id)
        .where(RateCard.rate_card_type == RateCardType.STANDARD)
        .where(col(RateCard.is_active).is_(True))
        .where(col(RateCard.archived_at).is_(None))
        .order_by(col(RateCard.effective_date), col(RateCard.created_at))
    )
    if exclude_rate_card_id is not None:
        statement = statement.where(RateCard.id != exclude_rate_card_id)

    for card in session.exec(statement).all():
        if intervals_overlap(effective_date, expires_date, card.effective_date, card.expires_date):
            return card
    return None
