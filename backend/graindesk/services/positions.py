"""Raw position facts: clients, vessels, sales and orphaned coverage lookups."""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from graindesk import models
from graindesk.core.errors import (
    InvalidAmount,
    InvalidTransition,
    MissingFlatPrice,
    MissingFreightRate,
    MissingReference,
    NotFound,
    VolumeExceedsBalance,
)
from graindesk.models.domain import ClientRole, CommercialTerm, PricingMode, ProductType
from graindesk.services.hedge_allocator import vessel_sold_volume

log = logging.getLogger("graindesk.positions")


def _dec(value) -> Decimal | None:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _norm_reference(reference: str | None) -> str | None:
    ref = str(reference or "").strip().upper()
    return ref or None


def create_client(
    *,
    db: Session,
    name: str,
    email: str | None = None,
    role: ClientRole = ClientRole.client,
    visible_on_market: bool = True,
) -> models.Client:
    client = models.Client(
        name=name.strip(),
        email=(email or "").strip().lower() or None,
        role=role,
        visible_on_market=visible_on_market,
    )
    db.add(client)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise InvalidTransition("A client with this email already exists", details={"email": email})
    db.refresh(client)
    return client


def list_clients(*, db: Session) -> list[models.Client]:
    return db.query(models.Client).order_by(models.Client.name.asc()).all()


def get_client(*, db: Session, client_id: int) -> models.Client:
    client = db.get(models.Client, int(client_id))
    if client is None:
        raise NotFound(f"Client {client_id} not found")
    return client


def _check_pricing(
    *,
    mode: PricingMode,
    premium: Decimal | None,
    flat_price: Decimal | None,
    reference: str | None,
    what: str,
) -> None:
    if mode == PricingMode.prime:
        if not reference:
            raise MissingReference(f"A premium-priced {what} needs a reference instrument")
        if premium is None:
            raise InvalidAmount(f"A premium-priced {what} needs a premium")
    elif flat_price is None or flat_price <= 0:
        raise MissingFlatPrice(f"A flat-priced {what} needs a positive flat price")


def create_vessel(
    *,
    db: Session,
    name: str,
    product: ProductType,
    total_quantity: Decimal,
    purchase_pricing_mode: PricingMode,
    purchase_premium: Decimal | None = None,
    purchase_flat_price: Decimal | None = None,
    purchase_reference: str | None = None,
    commercial_term: CommercialTerm = CommercialTerm.CFR,
    freight_rate: Decimal | None = None,
    supplier: str | None = None,
    arrival_date: date | None = None,
) -> models.Vessel:
    quantity = _dec(total_quantity)
    if quantity is None or quantity <= 0:
        raise InvalidAmount("Vessel quantity must be positive")
    reference = _norm_reference(purchase_reference)
    premium = _dec(purchase_premium)
    flat = _dec(purchase_flat_price)
    _check_pricing(
        mode=purchase_pricing_mode,
        premium=premium,
        flat_price=flat,
        reference=reference,
        what="purchase",
    )
    freight = _dec(freight_rate)
    if commercial_term == CommercialTerm.FOB and freight is None:
        raise MissingFreightRate("FOB purchases need a freight rate")

    vessel = models.Vessel(
        name=name.strip(),
        product=product,
        total_quantity=quantity,
        purchase_pricing_mode=purchase_pricing_mode,
        purchase_premium=premium,
        purchase_flat_price=flat,
        purchase_reference=reference,
        commercial_term=commercial_term,
        freight_rate=freight,
        supplier=supplier,
        arrival_date=arrival_date,
    )
    db.add(vessel)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(vessel)
    log.info("vessel_created", extra={"vessel_id": vessel.id, "product": product.value})
    return vessel


def list_vessels(*, db: Session) -> list[models.Vessel]:
    return db.query(models.Vessel).order_by(models.Vessel.id.desc()).all()


def get_vessel(*, db: Session, vessel_id: int) -> models.Vessel:
    vessel = db.get(models.Vessel, int(vessel_id))
    if vessel is None:
        raise NotFound(f"Vessel {vessel_id} not found")
    return vessel


def create_sale(
    *,
    db: Session,
    client_id: int,
    vessel_id: int,
    pricing_mode: PricingMode,
    volume: Decimal,
    premium: Decimal | None = None,
    flat_price: Decimal | None = None,
    reference: str | None = None,
    deal_date: date | None = None,
) -> models.Sale:
    """Book a sale against a vessel.

    The vessel row is locked while the sold volume is checked so two sales
    cannot oversell the same cargo.
    """

    v = _dec(volume)
    if v is None or v <= 0:
        raise InvalidAmount("Sale volume must be positive")
    ref = _norm_reference(reference)
    _check_pricing(
        mode=pricing_mode,
        premium=_dec(premium),
        flat_price=_dec(flat_price),
        reference=ref,
        what="sale",
    )
    get_client(db=db, client_id=client_id)

    try:
        vessel = (
            db.query(models.Vessel)
            .filter(models.Vessel.id == int(vessel_id))
            .with_for_update()
            .first()
        )
        if vessel is None:
            raise NotFound(f"Vessel {vessel_id} not found")
        sold = vessel_sold_volume(db=db, vessel_id=vessel.id)
        capacity = Decimal(vessel.total_quantity) - sold
        if v > capacity:
            raise VolumeExceedsBalance(
                f"Vessel {vessel.id} has only {capacity} t unsold",
                details={"vessel_id": vessel.id, "requested": str(v), "available": str(capacity)},
            )
        sale = models.Sale(
            client_id=int(client_id),
            vessel_id=vessel.id,
            pricing_mode=pricing_mode,
            volume=v,
            premium=_dec(premium) if pricing_mode == PricingMode.prime else None,
            flat_price=_dec(flat_price) if pricing_mode == PricingMode.flat else None,
            reference=ref,
            deal_date=deal_date,
        )
        db.add(sale)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(sale)
    log.info("sale_created", extra={"sale_id": sale.id, "vessel_id": sale.vessel_id})
    return sale


def list_sales(
    *, db: Session, client_id: int | None = None, vessel_id: int | None = None
) -> list[models.Sale]:
    q = db.query(models.Sale)
    if client_id is not None:
        q = q.filter(models.Sale.client_id == int(client_id))
    if vessel_id is not None:
        q = q.filter(models.Sale.vessel_id == int(vessel_id))
    return q.order_by(models.Sale.id.desc()).all()


def get_sale(*, db: Session, sale_id: int) -> models.Sale:
    sale = db.get(models.Sale, int(sale_id))
    if sale is None:
        raise NotFound(f"Sale {sale_id} not found")
    return sale


def orphaned_coverages(*, db: Session, vessel_id: int | None = None) -> list[models.SaleCoverage]:
    q = db.query(models.SaleCoverage).filter(models.SaleCoverage.sale_id.is_(None))
    if vessel_id is not None:
        q = q.join(models.Sale, models.Sale.id == models.SaleCoverage.origin_sale_id).filter(
            models.Sale.vessel_id == int(vessel_id)
        )
    return q.order_by(models.SaleCoverage.orphaned_at.desc(), models.SaleCoverage.id.desc()).all()
