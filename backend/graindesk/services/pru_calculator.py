"""Weighted-average unit cost (PRU) of a sale position.

``compute_pru`` is a pure function over a ``PruInput``; ``compute_pru_for_sale``
only gathers the sale, its linked coverages and the latest reference price and
then delegates. Nothing here writes to the database.

    weighted_futures = sum(v_i * f_i) / V_hedged
    blended          = (weighted_futures * V_hedged + R * V_unhedged) / V
    PRU              = (blended + premium) * conversion_factor

Flat sales short-circuit to their flat price.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Sequence

from sqlalchemy.orm import Session

from graindesk import models
from graindesk.core.errors import (
    ConsistencyWarning,
    MissingFlatPrice,
    MissingReferencePrice,
    NotFound,
    ZeroVolumePosition,
)
from graindesk.models.domain import PricingMode, ProductType
from graindesk.services.conversion import get_conversion_factor
from graindesk.services.market_prices import latest_reference_price

ZERO = Decimal("0")


def _dec(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def volume_weighted_average(pairs: Iterable[tuple[Decimal, Decimal]]) -> Decimal:
    """Average of ``value`` weighted by ``volume`` over ``(volume, value)`` pairs."""

    total_volume = ZERO
    total_value = ZERO
    for volume, value in pairs:
        v = _dec(volume)
        total_volume += v
        total_value += v * _dec(value)
    if total_volume == 0:
        raise ZeroVolumePosition("Cannot average over zero volume")
    return total_value / total_volume


@dataclass(frozen=True)
class PruInput:
    product: ProductType
    pricing_mode: PricingMode
    volume: Decimal
    premium: Decimal | None = None
    flat_price: Decimal | None = None
    # (tonnage, futures price) per hedge leg
    hedges: Sequence[tuple[Decimal, Decimal]] = ()
    reference_price: Decimal | None = None
    sale_id: int | None = None


@dataclass
class PruResult:
    pru: Decimal
    pricing_mode: PricingMode
    blended_price: Decimal | None
    weighted_futures_price: Decimal
    hedged_volume: Decimal
    unhedged_volume: Decimal
    reference_price: Decimal | None
    conversion_factor: Decimal
    warnings: list[ConsistencyWarning] = field(default_factory=list)


def compute_pru(data: PruInput) -> PruResult:
    volume = _dec(data.volume)
    legs = [(_dec(v), _dec(f)) for v, f in data.hedges]
    hedged = sum((v for v, _ in legs), ZERO)
    weighted_futures = volume_weighted_average(legs) if hedged > 0 else ZERO
    factor = get_conversion_factor(data.product)

    if data.pricing_mode == PricingMode.flat:
        if data.flat_price is None:
            raise MissingFlatPrice(
                "Flat-priced sale has no flat price", details={"sale_id": data.sale_id}
            )
        return PruResult(
            pru=_dec(data.flat_price),
            pricing_mode=PricingMode.flat,
            blended_price=None,
            weighted_futures_price=weighted_futures,
            hedged_volume=min(hedged, volume),
            unhedged_volume=max(volume - hedged, ZERO),
            reference_price=data.reference_price,
            conversion_factor=Decimal("1"),
        )

    if volume <= 0:
        raise ZeroVolumePosition(
            "PRU is undefined for a zero-volume position", details={"sale_id": data.sale_id}
        )

    warnings: list[ConsistencyWarning] = []
    if hedged > volume:
        warnings.append(
            ConsistencyWarning(
                code="OVERCOVERAGE",
                message=f"Hedged tonnage {hedged} exceeds sale volume {volume}; priced on {volume}",
                details={
                    "sale_id": data.sale_id,
                    "covered_tonnage": str(hedged),
                    "volume": str(volume),
                    "excess": str(hedged - volume),
                },
            )
        )
        hedged = volume
    unhedged = volume - hedged

    reference = _dec(data.reference_price) if data.reference_price is not None else None
    if unhedged > 0 and reference is None:
        raise MissingReferencePrice(
            "No reference price available for the unhedged volume",
            details={"sale_id": data.sale_id, "unhedged_volume": str(unhedged)},
        )

    if hedged == 0:
        blended = reference
    elif unhedged == 0:
        blended = weighted_futures
    else:
        blended = (weighted_futures * hedged + reference * unhedged) / volume

    premium = _dec(data.premium) if data.premium is not None else ZERO
    return PruResult(
        pru=(blended + premium) * factor,
        pricing_mode=PricingMode.prime,
        blended_price=blended,
        weighted_futures_price=weighted_futures,
        hedged_volume=hedged,
        unhedged_volume=unhedged,
        reference_price=reference,
        conversion_factor=factor,
        warnings=warnings,
    )


def pru_input_for_sale(
    *, db: Session, sale: models.Sale, reference_price: Decimal | None = None
) -> PruInput:
    rows = (
        db.query(models.SaleCoverage.tonnage, models.SaleCoverage.futures_price)
        .filter(models.SaleCoverage.sale_id == int(sale.id))
        .order_by(models.SaleCoverage.id.asc())
        .all()
    )
    if reference_price is None and sale.pricing_mode == PricingMode.prime:
        reference_price = latest_reference_price(db=db, instrument=sale.reference)
    return PruInput(
        product=sale.vessel.product,
        pricing_mode=sale.pricing_mode,
        volume=_dec(sale.volume),
        premium=sale.premium,
        flat_price=sale.flat_price,
        hedges=[(_dec(t), _dec(f)) for t, f in rows],
        reference_price=reference_price,
        sale_id=sale.id,
    )


def compute_pru_for_sale(
    *, db: Session, sale_id: int, reference_price: Decimal | None = None
) -> PruResult:
    """Load a sale and compute its PRU against the latest quote for its reference."""

    sale = db.get(models.Sale, int(sale_id))
    if sale is None:
        raise NotFound(f"Sale {sale_id} not found")
    return compute_pru(pru_input_for_sale(db=db, sale=sale, reference_price=reference_price))
