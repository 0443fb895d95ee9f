from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Mapping

from sqlalchemy import func
from sqlalchemy.orm import Session

from graindesk import models
from graindesk.core.errors import InvalidAmount
from graindesk.core.timeutils import utc_now


def _norm_instrument(instrument: str) -> str:
    return str(instrument or "").strip().upper()


def latest_reference_price(*, db: Session, instrument: str | None) -> Decimal | None:
    if not instrument:
        return None
    row = (
        db.query(models.ReferencePrice)
        .filter(models.ReferencePrice.instrument == _norm_instrument(instrument))
        .order_by(models.ReferencePrice.as_of.desc(), models.ReferencePrice.id.desc())
        .first()
    )
    return Decimal(row.price) if row is not None else None


def latest_prices(*, db: Session) -> dict[str, Decimal]:
    """Latest price per instrument, in one query."""

    latest = (
        db.query(
            models.ReferencePrice.instrument.label("instrument"),
            func.max(models.ReferencePrice.as_of).label("as_of"),
        )
        .group_by(models.ReferencePrice.instrument)
        .subquery()
    )
    rows = (
        db.query(models.ReferencePrice)
        .join(
            latest,
            (models.ReferencePrice.instrument == latest.c.instrument)
            & (models.ReferencePrice.as_of == latest.c.as_of),
        )
        .order_by(models.ReferencePrice.id.asc())
        .all()
    )
    # Same-timestamp duplicates: the last inserted row wins.
    return {r.instrument: Decimal(r.price) for r in rows}


def record_prices(
    *,
    db: Session,
    prices: Mapping[str, Decimal | float | int | str],
    as_of: datetime | None = None,
    source: str | None = None,
) -> list[models.ReferencePrice]:
    """Append quotes. Caller commits."""

    if as_of is None:
        as_of = utc_now()
    created: list[models.ReferencePrice] = []
    for instrument, raw in prices.items():
        code = _norm_instrument(instrument)
        if not code:
            raise InvalidAmount("Instrument code is required")
        price = Decimal(str(raw))
        if price <= 0:
            raise InvalidAmount(
                f"Price for {code} must be positive", details={"instrument": code}
            )
        row = models.ReferencePrice(instrument=code, price=price, as_of=as_of, source=source)
        db.add(row)
        created.append(row)
    db.flush()
    return created


def price_history(
    *, db: Session, instrument: str | None = None, limit: int = 200
) -> list[models.ReferencePrice]:
    q = db.query(models.ReferencePrice)
    if instrument:
        q = q.filter(models.ReferencePrice.instrument == _norm_instrument(instrument))
    return (
        q.order_by(models.ReferencePrice.as_of.desc(), models.ReferencePrice.id.desc())
        .limit(int(limit))
        .all()
    )
