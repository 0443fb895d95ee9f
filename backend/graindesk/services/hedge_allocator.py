"""Hedge allocation: contracts <-> tonnage, coverage booking and rolls.

Contract products (corn, soybean meal) hedge in whole futures contracts, so a
tonnage request is rounded up and the rounding surplus is reported as
over-coverage. Tonnage-only products never accept a contract count.

Rolls move an uncovered slice of a sale or vessel onto a new reference
instrument. The source row is decremented with a guarded UPDATE and the child
row is inserted in the same transaction, so ``remaining + child == original``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal

from sqlalchemy import func
from sqlalchemy.orm import Session

from graindesk import models
from graindesk.core.errors import (
    ConsistencyWarning,
    InvalidAmount,
    InvalidRollVolume,
    MissingReference,
    NotFound,
    RollNotSupported,
    SameReference,
    StaleState,
    VolumeExceedsBalance,
)
from graindesk.core.timeutils import utc_now
from graindesk.models.domain import (
    OPEN_LISTING_STATES,
    PositionType,
    PricingMode,
    ProductType,
)
from graindesk.services.conversion import require_contract_size, supports_contracts
from graindesk.services.events import EventType, bus
from graindesk.services.pru_calculator import volume_weighted_average
from graindesk.services.transitions import atomic_decrement

log = logging.getLogger("graindesk.hedge")

ZERO = Decimal("0")
PCT = Decimal("0.01")
# SUM() over Numeric comes back as float on SQLite.
Q4 = Decimal("0.0001")


def _dec(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def volume_to_contracts(volume: Decimal, product: ProductType | str) -> int:
    """Smallest whole number of contracts covering ``volume`` tonnes."""

    size = require_contract_size(product)
    volume = _dec(volume)
    if volume <= 0:
        return 0
    return int((volume / size).to_integral_value(rounding=ROUND_CEILING))


def contracts_to_volume(contracts: int, product: ProductType | str) -> Decimal:
    size = require_contract_size(product)
    if int(contracts) < 0:
        raise InvalidAmount("Contract count cannot be negative", details={"contracts": contracts})
    return size * int(contracts)


def calculate_overcoverage(
    remaining_volume: Decimal, contracts: int, product: ProductType | str
) -> Decimal:
    excess = contracts_to_volume(contracts, product) - _dec(remaining_volume)
    return excess if excess > 0 else ZERO


@dataclass(frozen=True)
class HedgeQuantity:
    contracts: int
    tonnage: Decimal
    # Tonnage booked beyond what was asked for because contracts are whole.
    rounding_excess: Decimal = ZERO


def resolve_hedge_quantity(
    product: ProductType | str,
    *,
    contracts: int | None = None,
    tonnage: Decimal | None = None,
) -> HedgeQuantity:
    if contracts is None and tonnage is None:
        raise InvalidAmount("Either contracts or tonnage is required")

    if not supports_contracts(product):
        if contracts:
            # Raises ContractSizeUnsupported with the product in details.
            require_contract_size(product)
        if tonnage is None or _dec(tonnage) <= 0:
            raise InvalidAmount("Tonnage must be positive", details={"tonnage": str(tonnage)})
        return HedgeQuantity(contracts=0, tonnage=_dec(tonnage))

    if contracts is not None:
        if int(contracts) <= 0:
            raise InvalidAmount("Contract count must be positive", details={"contracts": contracts})
        booked = contracts_to_volume(int(contracts), product)
        asked = _dec(tonnage) if tonnage is not None else booked
        excess = booked - asked
        return HedgeQuantity(
            contracts=int(contracts), tonnage=booked, rounding_excess=max(excess, ZERO)
        )

    asked = _dec(tonnage)
    if asked <= 0:
        raise InvalidAmount("Tonnage must be positive", details={"tonnage": str(tonnage)})
    n = volume_to_contracts(asked, product)
    booked = contracts_to_volume(n, product)
    return HedgeQuantity(contracts=n, tonnage=booked, rounding_excess=booked - asked)


@dataclass
class CoverageSummary:
    volume: Decimal
    covered_tonnage: Decimal
    uncovered_volume: Decimal
    coverage_pct: Decimal
    weighted_futures_price: Decimal
    overcoverage: Decimal
    warnings: list[ConsistencyWarning] = field(default_factory=list)


def _summarize(
    *, volume: Decimal, legs: list[tuple[Decimal, Decimal]], subject: dict
) -> CoverageSummary:
    volume = _dec(volume)
    covered = sum((_dec(t) for t, _ in legs), ZERO)
    weighted = volume_weighted_average(legs) if covered > 0 else ZERO
    excess = covered - volume
    warnings: list[ConsistencyWarning] = []
    if excess > 0:
        warnings.append(
            ConsistencyWarning(
                code="OVERCOVERAGE",
                message=f"Hedged tonnage {covered} exceeds position volume {volume}",
                details={
                    **subject,
                    "covered_tonnage": str(covered),
                    "volume": str(volume),
                    "excess": str(excess),
                },
            )
        )
    pct = (covered / volume * 100).quantize(PCT, rounding=ROUND_HALF_UP) if volume > 0 else ZERO
    return CoverageSummary(
        volume=volume,
        covered_tonnage=covered,
        uncovered_volume=max(volume - covered, ZERO),
        coverage_pct=pct,
        weighted_futures_price=weighted,
        overcoverage=max(excess, ZERO),
        warnings=warnings,
    )


def sale_covered_tonnage(*, db: Session, sale_id: int) -> Decimal:
    total = (
        db.query(func.coalesce(func.sum(models.SaleCoverage.tonnage), 0))
        .filter(models.SaleCoverage.sale_id == int(sale_id))
        .scalar()
    )
    return _dec(total or 0).quantize(Q4)


def vessel_covered_tonnage(*, db: Session, vessel_id: int) -> Decimal:
    total = (
        db.query(func.coalesce(func.sum(models.PurchaseCoverage.tonnage), 0))
        .filter(models.PurchaseCoverage.vessel_id == int(vessel_id))
        .scalar()
    )
    return _dec(total or 0).quantize(Q4)


def vessel_sold_volume(*, db: Session, vessel_id: int) -> Decimal:
    total = (
        db.query(func.coalesce(func.sum(models.Sale.volume), 0))
        .filter(models.Sale.vessel_id == int(vessel_id))
        .scalar()
    )
    return _dec(total or 0).quantize(Q4)


def sale_listed_uncovered(*, db: Session, sale_id: int) -> Decimal:
    """Uncovered tonnage held by open resale listings on the sale."""

    total = (
        db.query(func.coalesce(func.sum(models.ResaleListing.volume), 0))
        .filter(models.ResaleListing.sale_id == int(sale_id))
        .filter(models.ResaleListing.position_type == PositionType.uncovered)
        .filter(models.ResaleListing.state.in_(OPEN_LISTING_STATES))
        .scalar()
    )
    return _dec(total or 0).quantize(Q4)


def coverage_summary(*, db: Session, sale: models.Sale) -> CoverageSummary:
    rows = (
        db.query(models.SaleCoverage.tonnage, models.SaleCoverage.futures_price)
        .filter(models.SaleCoverage.sale_id == int(sale.id))
        .all()
    )
    return _summarize(
        volume=sale.volume,
        legs=[(_dec(t), _dec(p)) for t, p in rows],
        subject={"sale_id": sale.id},
    )


def vessel_coverage_summary(*, db: Session, vessel: models.Vessel) -> CoverageSummary:
    rows = (
        db.query(models.PurchaseCoverage.tonnage, models.PurchaseCoverage.futures_price)
        .filter(models.PurchaseCoverage.vessel_id == int(vessel.id))
        .all()
    )
    return _summarize(
        volume=vessel.total_quantity,
        legs=[(_dec(t), _dec(p)) for t, p in rows],
        subject={"vessel_id": vessel.id},
    )


def _rounding_warning(q: HedgeQuantity, subject: dict) -> list[ConsistencyWarning]:
    if q.rounding_excess <= 0:
        return []
    return [
        ConsistencyWarning(
            code="CONTRACT_ROUNDING",
            message=(
                f"{q.contracts} contracts book {q.tonnage} t, "
                f"{q.rounding_excess} t above the request"
            ),
            details={**subject, "contracts": q.contracts, "excess": str(q.rounding_excess)},
        )
    ]


def _check_futures_price(futures_price) -> Decimal:
    price = _dec(futures_price)
    if price <= 0:
        raise InvalidAmount("Futures price must be positive", details={"futures_price": str(price)})
    return price


def book_sale_coverage(
    *,
    db: Session,
    sale_id: int,
    futures_price: Decimal,
    contracts: int | None = None,
    tonnage: Decimal | None = None,
    coverage_date: date | None = None,
) -> tuple[models.SaleCoverage, CoverageSummary]:
    """Book a futures hedge against a sale.

    Over-coverage is accepted and reported in the returned summary.
    """

    sale = db.get(models.Sale, int(sale_id))
    if sale is None:
        raise NotFound(f"Sale {sale_id} not found")
    price = _check_futures_price(futures_price)
    q = resolve_hedge_quantity(sale.vessel.product, contracts=contracts, tonnage=tonnage)

    cov = models.SaleCoverage(
        sale_id=sale.id,
        origin_sale_id=sale.id,
        contracts=q.contracts,
        tonnage=q.tonnage,
        futures_price=price,
        coverage_date=coverage_date or utc_now().date(),
    )
    db.add(cov)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(cov)
    db.refresh(sale)

    summary = coverage_summary(db=db, sale=sale)
    summary.warnings[:0] = _rounding_warning(q, {"sale_id": sale.id})
    log.info(
        "sale_coverage_booked",
        extra={
            "sale_id": sale.id,
            "coverage_id": cov.id,
            "contracts": q.contracts,
            "tonnage": str(q.tonnage),
            "warnings": [w.code for w in summary.warnings],
        },
    )
    return cov, summary


def book_purchase_coverage(
    *,
    db: Session,
    vessel_id: int,
    futures_price: Decimal,
    contracts: int | None = None,
    tonnage: Decimal | None = None,
    coverage_date: date | None = None,
) -> tuple[models.PurchaseCoverage, CoverageSummary]:
    vessel = db.get(models.Vessel, int(vessel_id))
    if vessel is None:
        raise NotFound(f"Vessel {vessel_id} not found")
    price = _check_futures_price(futures_price)
    q = resolve_hedge_quantity(vessel.product, contracts=contracts, tonnage=tonnage)

    cov = models.PurchaseCoverage(
        vessel_id=vessel.id,
        contracts=q.contracts,
        tonnage=q.tonnage,
        futures_price=price,
        coverage_date=coverage_date or utc_now().date(),
    )
    db.add(cov)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(cov)
    db.refresh(vessel)

    summary = vessel_coverage_summary(db=db, vessel=vessel)
    summary.warnings[:0] = _rounding_warning(q, {"vessel_id": vessel.id})
    log.info(
        "purchase_coverage_booked",
        extra={"vessel_id": vessel.id, "coverage_id": cov.id, "tonnage": str(q.tonnage)},
    )
    return cov, summary


@dataclass(frozen=True)
class RollResult:
    source_id: int
    child_id: int
    moved_volume: Decimal
    source_remaining: Decimal
    original_total: Decimal
    new_reference: str


def _norm_reference(reference: str | None) -> str:
    return str(reference or "").strip().upper()


def _validate_roll(
    *,
    pricing_mode: PricingMode,
    current_reference: str | None,
    new_reference: str | None,
    volume_to_move: Decimal,
    uncovered: Decimal,
) -> str:
    if pricing_mode != PricingMode.prime:
        raise RollNotSupported("Only premium-priced positions can change reference")
    if volume_to_move <= 0 or volume_to_move > uncovered:
        raise InvalidRollVolume(
            f"Volume to roll must be between 0 and {uncovered} t",
            details={"volume_to_move": str(volume_to_move), "uncovered": str(uncovered)},
        )
    ref = _norm_reference(new_reference)
    if not ref:
        raise MissingReference("A new reference instrument is required")
    if ref == _norm_reference(current_reference):
        raise SameReference(
            "New reference must differ from the current one", details={"reference": ref}
        )
    return ref


def roll_sale(
    *,
    db: Session,
    sale_id: int,
    volume_to_move: Decimal,
    new_reference: str,
    new_premium: Decimal | None = None,
) -> RollResult:
    """Move an uncovered slice of a sale onto ``new_reference``.

    The child sale keeps the client and vessel, links back through
    ``parent_sale_id`` and inherits the premium unless ``new_premium`` is given.
    """

    x = _dec(volume_to_move)
    try:
        sale = (
            db.query(models.Sale)
            .filter(models.Sale.id == int(sale_id))
            .with_for_update()
            .first()
        )
        if sale is None:
            raise NotFound(f"Sale {sale_id} not found")

        covered = sale_covered_tonnage(db=db, sale_id=sale.id)
        # Volume reserved by open uncovered listings stays on the sale.
        reserved = sale_listed_uncovered(db=db, sale_id=sale.id)
        original_total = _dec(sale.volume)
        ref = _validate_roll(
            pricing_mode=sale.pricing_mode,
            current_reference=sale.reference,
            new_reference=new_reference,
            volume_to_move=x,
            uncovered=max(original_total - covered - reserved, ZERO),
        )

        guard = atomic_decrement(
            db=db,
            model=models.Sale,
            row_id=sale.id,
            column="volume",
            amount=x,
            floor=covered + reserved,
        )
        if not guard.updated:
            raise StaleState(
                f"Sale {sale.id} volume changed concurrently", details={"sale_id": sale.id}
            )

        child = models.Sale(
            client_id=sale.client_id,
            vessel_id=sale.vessel_id,
            pricing_mode=PricingMode.prime,
            volume=x,
            premium=_dec(new_premium) if new_premium is not None else sale.premium,
            reference=ref,
            deal_date=utc_now().date(),
            parent_sale_id=sale.id,
        )
        db.add(child)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(sale)
    db.refresh(child)
    result = RollResult(
        source_id=sale.id,
        child_id=child.id,
        moved_volume=x,
        source_remaining=_dec(sale.volume),
        original_total=original_total,
        new_reference=ref,
    )
    bus.publish(
        EventType.POSITION_ROLLED,
        {
            "entity": "sale",
            "source_id": sale.id,
            "child_id": child.id,
            "volume": str(x),
            "new_reference": ref,
        },
    )
    log.info("sale_rolled", extra={"sale_id": sale.id, "child_id": child.id, "volume": str(x)})
    return result


def roll_vessel(
    *,
    db: Session,
    vessel_id: int,
    volume_to_move: Decimal,
    new_reference: str,
    new_premium: Decimal | None = None,
) -> RollResult:
    """Split the uncovered part of a vessel's purchase onto ``new_reference``.

    The parent keeps every sale booked against it, so its quantity may not drop
    below the volume already sold.
    """

    x = _dec(volume_to_move)
    try:
        vessel = (
            db.query(models.Vessel)
            .filter(models.Vessel.id == int(vessel_id))
            .with_for_update()
            .first()
        )
        if vessel is None:
            raise NotFound(f"Vessel {vessel_id} not found")

        covered = vessel_covered_tonnage(db=db, vessel_id=vessel.id)
        sold = vessel_sold_volume(db=db, vessel_id=vessel.id)
        original_total = _dec(vessel.total_quantity)
        ref = _validate_roll(
            pricing_mode=vessel.purchase_pricing_mode,
            current_reference=vessel.purchase_reference,
            new_reference=new_reference,
            volume_to_move=x,
            uncovered=max(original_total - covered, ZERO),
        )
        if original_total - x < sold:
            raise VolumeExceedsBalance(
                f"Vessel {vessel.id} has {sold} t sold; cannot roll {x} t out of it",
                details={"vessel_id": vessel.id, "sold": str(sold), "volume_to_move": str(x)},
            )

        guard = atomic_decrement(
            db=db,
            model=models.Vessel,
            row_id=vessel.id,
            column="total_quantity",
            amount=x,
            floor=max(covered, sold),
        )
        if not guard.updated:
            raise StaleState(
                f"Vessel {vessel.id} quantity changed concurrently",
                details={"vessel_id": vessel.id},
            )

        child = models.Vessel(
            name=f"{vessel.name} - Roll {ref}",
            product=vessel.product,
            total_quantity=x,
            purchase_pricing_mode=vessel.purchase_pricing_mode,
            purchase_premium=(
                _dec(new_premium) if new_premium is not None else vessel.purchase_premium
            ),
            purchase_reference=ref,
            commercial_term=vessel.commercial_term,
            freight_rate=vessel.freight_rate,
            supplier=vessel.supplier,
            arrival_date=vessel.arrival_date,
            parent_vessel_id=vessel.id,
        )
        db.add(child)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(vessel)
    db.refresh(child)
    bus.publish(
        EventType.POSITION_ROLLED,
        {
            "entity": "vessel",
            "source_id": vessel.id,
            "child_id": child.id,
            "volume": str(x),
            "new_reference": ref,
        },
    )
    log.info(
        "vessel_rolled", extra={"vessel_id": vessel.id, "child_id": child.id, "volume": str(x)}
    )
    return RollResult(
        source_id=vessel.id,
        child_id=child.id,
        moved_volume=x,
        source_remaining=_dec(vessel.total_quantity),
        original_total=original_total,
        new_reference=ref,
    )
