"""Read-only P&L views per vessel, per client and for the whole book.

Purchase side, with FOB freight folded in:
    premium purchase: premium + freight / factor   (cts/bu)
    flat purchase:    flat + freight               (USD/t)

    pnl_prime   = (vw_sale_premium - purchase_premium) * factor * prime_volume
    pnl_flat    = (vw_sale_flat - purchase_flat) * flat_volume
    pnl_futures = (vw_sale_futures - vw_purchase_futures) * factor
                  * min(purchase_hedged, sale_hedged)

Per client the same rules run sale by sale; futures use the sale's own hedged
tonnage against the vessel's average purchase futures.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable

from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload

from graindesk import models
from graindesk.core.errors import ConsistencyWarning, NotFound, NumericFailure
from graindesk.models.domain import CommercialTerm, PricingMode
from graindesk.services.conversion import get_conversion_factor
from graindesk.services.market_prices import latest_prices
from graindesk.services.pru_calculator import PruInput, compute_pru, volume_weighted_average

log = logging.getLogger("graindesk.pnl")

ZERO = Decimal("0")


def _dec(value) -> Decimal:
    if value is None:
        return ZERO
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _vwa_or_zero(pairs: Iterable[tuple[Decimal, Decimal]]) -> Decimal:
    pairs = list(pairs)
    if sum((v for v, _ in pairs), ZERO) == 0:
        return ZERO
    return volume_weighted_average(pairs)


@dataclass
class VesselPnl:
    vessel_id: int
    vessel_name: str
    product: str
    purchase_price_display: Decimal
    avg_sale_price: Decimal
    avg_sale_flat_price: Decimal
    avg_sale_pru: Decimal | None
    avg_purchase_futures: Decimal
    avg_sale_futures: Decimal
    pnl_prime: Decimal
    pnl_flat: Decimal
    pnl_futures: Decimal
    pnl_total: Decimal
    volume_bought: Decimal
    volume_sold: Decimal
    volume_hedged_purchase: Decimal
    volume_hedged_sale: Decimal
    realized_gain: Decimal
    commission_total: Decimal
    warnings: list[ConsistencyWarning] = field(default_factory=list)


@dataclass
class ClientPnl:
    client_id: int
    client_name: str
    vessel_id: int
    vessel_name: str
    product: str
    pnl_prime: Decimal = ZERO
    pnl_flat: Decimal = ZERO
    pnl_futures: Decimal = ZERO
    pnl_total: Decimal = ZERO
    volume: Decimal = ZERO
    volume_hedged: Decimal = ZERO
    realized_gain: Decimal = ZERO


@dataclass
class VesselClientsPnl:
    vessel_id: int
    vessel_name: str
    product: str
    clients: list[ClientPnl]
    total_pnl: Decimal
    total_volume: Decimal


@dataclass
class PortfolioPnl:
    pnl_total: Decimal
    pnl_prime_total: Decimal
    pnl_flat_total: Decimal
    pnl_futures_total: Decimal
    realized_gain_total: Decimal
    vessel_count: int
    volume_total: Decimal
    vessels: list[VesselPnl]


def purchase_premium_with_freight(vessel: models.Vessel) -> Decimal:
    premium = _dec(vessel.purchase_premium)
    if vessel.commercial_term == CommercialTerm.FOB and vessel.freight_rate:
        factor = get_conversion_factor(vessel.product)
        if factor > 0:
            premium += _dec(vessel.freight_rate) / factor
    return premium


def purchase_flat_with_freight(vessel: models.Vessel) -> Decimal:
    flat = _dec(vessel.purchase_flat_price)
    if vessel.commercial_term == CommercialTerm.FOB and vessel.freight_rate:
        flat += _dec(vessel.freight_rate)
    return flat


def _coverage_legs(coverages) -> list[tuple[Decimal, Decimal]]:
    return [(_dec(c.tonnage), _dec(c.futures_price)) for c in coverages]


def _sale_pru(
    sale: models.Sale, product, prices: dict[str, Decimal]
) -> tuple[Decimal | None, ConsistencyWarning | None]:
    try:
        result = compute_pru(
            PruInput(
                product=product,
                pricing_mode=sale.pricing_mode,
                volume=_dec(sale.volume),
                premium=sale.premium,
                flat_price=sale.flat_price,
                hedges=_coverage_legs(sale.coverages),
                reference_price=prices.get(str(sale.reference or "").upper()),
                sale_id=sale.id,
            )
        )
    except NumericFailure as exc:
        return None, ConsistencyWarning(
            code=exc.code, message=exc.message, details={"sale_id": sale.id, **exc.details}
        )
    return result.pru, None


def compute_vessel_pnl(
    vessel: models.Vessel,
    sales: list[models.Sale],
    *,
    prices: dict[str, Decimal] | None = None,
    realized: tuple[Decimal, Decimal] = (ZERO, ZERO),
) -> VesselPnl:
    """P&L of one vessel over ``sales`` (all of its sales, or one client's)."""

    factor = get_conversion_factor(vessel.product)
    prices = prices or {}

    prime_sales = [s for s in sales if s.pricing_mode == PricingMode.prime]
    flat_sales = [s for s in sales if s.pricing_mode == PricingMode.flat]
    prime_volume = sum((_dec(s.volume) for s in prime_sales), ZERO)
    flat_volume = sum((_dec(s.volume) for s in flat_sales), ZERO)

    avg_premium = _vwa_or_zero((_dec(s.volume), _dec(s.premium)) for s in prime_sales)
    avg_flat = _vwa_or_zero((_dec(s.volume), _dec(s.flat_price)) for s in flat_sales)

    pnl_prime = ZERO
    if prime_volume > 0:
        pnl_prime = (avg_premium - purchase_premium_with_freight(vessel)) * factor * prime_volume
    pnl_flat = ZERO
    if flat_volume > 0:
        pnl_flat = (avg_flat - purchase_flat_with_freight(vessel)) * flat_volume

    purchase_legs = _coverage_legs(vessel.purchase_coverages)
    sale_legs = [leg for s in sales for leg in _coverage_legs(s.coverages)]
    purchase_hedged = sum((v for v, _ in purchase_legs), ZERO)
    sale_hedged = sum((v for v, _ in sale_legs), ZERO)
    avg_purchase_futures = _vwa_or_zero(purchase_legs)
    avg_sale_futures = _vwa_or_zero(sale_legs)
    pnl_futures = ZERO
    if purchase_hedged > 0 and sale_hedged > 0:
        pnl_futures = (
            (avg_sale_futures - avg_purchase_futures)
            * factor
            * min(purchase_hedged, sale_hedged)
        )

    sold = prime_volume + flat_volume
    avg_sale_price = ZERO
    if sold > 0:
        avg_sale_price = (avg_premium * factor * prime_volume + avg_flat * flat_volume) / sold

    warnings: list[ConsistencyWarning] = []
    pru_pairs: list[tuple[Decimal, Decimal]] = []
    for sale in sales:
        # Fully resold positions carry no cost basis any more.
        if _dec(sale.volume) <= 0:
            continue
        pru, warning = _sale_pru(sale, vessel.product, prices)
        if warning is not None:
            warnings.append(warning)
        else:
            pru_pairs.append((_dec(sale.volume), pru))
    avg_sale_pru = volume_weighted_average(pru_pairs) if pru_pairs else None

    if vessel.purchase_pricing_mode == PricingMode.flat:
        purchase_display = _dec(vessel.purchase_flat_price)
    else:
        purchase_display = _dec(vessel.purchase_premium) * factor

    gain, commission = realized
    return VesselPnl(
        vessel_id=vessel.id,
        vessel_name=vessel.name,
        product=vessel.product.value,
        purchase_price_display=purchase_display,
        avg_sale_price=avg_sale_price,
        avg_sale_flat_price=avg_flat,
        avg_sale_pru=avg_sale_pru,
        avg_purchase_futures=avg_purchase_futures,
        avg_sale_futures=avg_sale_futures,
        pnl_prime=pnl_prime,
        pnl_flat=pnl_flat,
        pnl_futures=pnl_futures,
        pnl_total=pnl_prime + pnl_flat + pnl_futures,
        volume_bought=_dec(vessel.total_quantity),
        volume_sold=sold,
        volume_hedged_purchase=purchase_hedged,
        volume_hedged_sale=sale_hedged,
        realized_gain=gain,
        commission_total=commission,
        warnings=warnings,
    )


def _vessel_query(db: Session):
    return db.query(models.Vessel).options(
        selectinload(models.Vessel.purchase_coverages),
        selectinload(models.Vessel.sales).selectinload(models.Sale.coverages),
        selectinload(models.Vessel.sales).selectinload(models.Sale.client),
    )


def _realized_by_vessel(
    db: Session, client_id: int | None = None
) -> dict[int, tuple[Decimal, Decimal]]:
    q = (
        db.query(
            models.Sale.vessel_id,
            func.coalesce(func.sum(models.Transaction.seller_gain), 0),
            func.coalesce(func.sum(models.Transaction.commission), 0),
        )
        .join(models.ResaleListing, models.ResaleListing.id == models.Transaction.listing_id)
        .join(models.Sale, models.Sale.id == models.ResaleListing.sale_id)
    )
    if client_id is not None:
        q = q.filter(models.Transaction.seller_id == int(client_id))
    rows = q.group_by(models.Sale.vessel_id).all()
    quant = Decimal("0.0001")
    return {
        vid: (_dec(gain).quantize(quant), _dec(fee).quantize(quant)) for vid, gain, fee in rows
    }


def vessel_pnl(*, db: Session, vessel_id: int, client_id: int | None = None) -> VesselPnl:
    vessel = _vessel_query(db).filter(models.Vessel.id == int(vessel_id)).first()
    if vessel is None:
        raise NotFound(f"Vessel {vessel_id} not found")
    sales = [s for s in vessel.sales if client_id is None or s.client_id == int(client_id)]
    realized = _realized_by_vessel(db, client_id).get(vessel.id, (ZERO, ZERO))
    return compute_vessel_pnl(vessel, sales, prices=latest_prices(db=db), realized=realized)


def portfolio_pnl(*, db: Session, client_id: int | None = None) -> PortfolioPnl:
    """Whole book, or one client's share of it when ``client_id`` is given."""

    prices = latest_prices(db=db)
    realized = _realized_by_vessel(db, client_id)
    vessels: list[VesselPnl] = []
    for vessel in _vessel_query(db).order_by(models.Vessel.id.asc()).all():
        sales = [s for s in vessel.sales if client_id is None or s.client_id == int(client_id)]
        if client_id is not None and not sales:
            continue
        vessels.append(
            compute_vessel_pnl(
                vessel, sales, prices=prices, realized=realized.get(vessel.id, (ZERO, ZERO))
            )
        )
    log.debug("portfolio_pnl_computed", extra={"vessels": len(vessels), "client_id": client_id})
    return PortfolioPnl(
        pnl_total=sum((v.pnl_total for v in vessels), ZERO),
        pnl_prime_total=sum((v.pnl_prime for v in vessels), ZERO),
        pnl_flat_total=sum((v.pnl_flat for v in vessels), ZERO),
        pnl_futures_total=sum((v.pnl_futures for v in vessels), ZERO),
        realized_gain_total=sum((v.realized_gain for v in vessels), ZERO),
        vessel_count=len(vessels),
        volume_total=sum((v.volume_bought for v in vessels), ZERO),
        vessels=vessels,
    )


def _client_rows_for_vessel(
    vessel: models.Vessel, sales: list[models.Sale]
) -> dict[int, ClientPnl]:
    factor = get_conversion_factor(vessel.product)
    purchase_premium = purchase_premium_with_freight(vessel)
    purchase_flat = purchase_flat_with_freight(vessel)
    avg_purchase_futures = _vwa_or_zero(_coverage_legs(vessel.purchase_coverages))

    rows: dict[int, ClientPnl] = {}
    for sale in sales:
        row = rows.get(sale.client_id)
        if row is None:
            row = ClientPnl(
                client_id=sale.client_id,
                client_name=sale.client.name if sale.client is not None else "",
                vessel_id=vessel.id,
                vessel_name=vessel.name,
                product=vessel.product.value,
            )
            rows[sale.client_id] = row
        volume = _dec(sale.volume)
        row.volume += volume
        if sale.pricing_mode == PricingMode.prime:
            row.pnl_prime += (_dec(sale.premium) - purchase_premium) * factor * volume
        else:
            row.pnl_flat += (_dec(sale.flat_price) - purchase_flat) * volume

        legs = _coverage_legs(sale.coverages)
        hedged = sum((v for v, _ in legs), ZERO)
        if hedged > 0:
            row.pnl_futures += (
                (volume_weighted_average(legs) - avg_purchase_futures) * factor * hedged
            )
            row.volume_hedged += hedged
        row.pnl_total = row.pnl_prime + row.pnl_flat + row.pnl_futures
    return rows


def pnl_by_client(*, db: Session, client_id: int | None = None) -> list[VesselClientsPnl]:
    gains = (
        db.query(
            models.Transaction.seller_id,
            models.Sale.vessel_id,
            func.coalesce(func.sum(models.Transaction.seller_gain), 0),
        )
        .join(models.ResaleListing, models.ResaleListing.id == models.Transaction.listing_id)
        .join(models.Sale, models.Sale.id == models.ResaleListing.sale_id)
        .group_by(models.Transaction.seller_id, models.Sale.vessel_id)
        .all()
    )
    realized = {(cid, vid): _dec(g).quantize(Decimal("0.0001")) for cid, vid, g in gains}

    out: list[VesselClientsPnl] = []
    for vessel in _vessel_query(db).order_by(models.Vessel.id.asc()).all():
        sales = [s for s in vessel.sales if client_id is None or s.client_id == int(client_id)]
        if not sales:
            continue
        rows = _client_rows_for_vessel(vessel, sales)
        for row in rows.values():
            row.realized_gain = realized.get((row.client_id, vessel.id), ZERO)
        clients = sorted(rows.values(), key=lambda r: r.client_id)
        out.append(
            VesselClientsPnl(
                vessel_id=vessel.id,
                vessel_name=vessel.name,
                product=vessel.product.value,
                clients=clients,
                total_pnl=sum((c.pnl_total for c in clients), ZERO),
                total_volume=sum((c.volume for c in clients), ZERO),
            )
        )
    return out
