# ruff: noqa: E501
from datetime import date, datetime
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
    func,
    inspect,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from graindesk.database import Base

# Tonnes and prices. Scale 4 keeps roll/settlement arithmetic exact on SQLite too.
Volume = Numeric(18, 4)
Price = Numeric(18, 4)


class ClientRole(PyEnum):
    admin = "admin"
    client = "client"


class ProductType(PyEnum):
    corn = "corn"
    soybean_meal = "soybean_meal"
    wheat = "wheat"
    barley = "barley"
    ddgs = "ddgs"
    scrap = "scrap"


class PricingMode(PyEnum):
    prime = "prime"
    flat = "flat"


class CommercialTerm(PyEnum):
    FOB = "FOB"
    CFR = "CFR"


class PositionType(PyEnum):
    covered = "covered"
    uncovered = "uncovered"


class ListingState(PyEnum):
    pending_validation = "pending_validation"
    listed = "listed"
    rejected = "rejected"
    withdrawn = "withdrawn"
    settled = "settled"


OPEN_LISTING_STATES = (ListingState.pending_validation, ListingState.listed)


class BidStatus(PyEnum):
    active = "active"
    accepted = "accepted"
    rejected = "rejected"


class JobRunStatus(PyEnum):
    running = "running"
    succeeded = "succeeded"
    failed = "failed"


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), unique=True)
    role: Mapped[ClientRole] = mapped_column(
        Enum(ClientRole, native_enum=False), default=ClientRole.client, nullable=False
    )
    # Hidden clients may still trade but their listings stay off the market view.
    visible_on_market: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    sales = relationship("Sale", back_populates="client")


class Vessel(Base):
    __tablename__ = "vessels"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    product: Mapped[ProductType] = mapped_column(
        Enum(ProductType, native_enum=False), nullable=False
    )
    total_quantity: Mapped[Decimal] = mapped_column(Volume, nullable=False)
    purchase_pricing_mode: Mapped[PricingMode] = mapped_column(
        Enum(PricingMode, native_enum=False), nullable=False
    )
    purchase_premium: Mapped[Decimal | None] = mapped_column(Price)
    purchase_flat_price: Mapped[Decimal | None] = mapped_column(Price)
    purchase_reference: Mapped[str | None] = mapped_column(String(32))
    commercial_term: Mapped[CommercialTerm] = mapped_column(
        Enum(CommercialTerm, native_enum=False), default=CommercialTerm.CFR, nullable=False
    )
    freight_rate: Mapped[Decimal | None] = mapped_column(Price)
    supplier: Mapped[str | None] = mapped_column(String(255))
    arrival_date: Mapped[date | None] = mapped_column(Date)
    parent_vessel_id: Mapped[int | None] = mapped_column(ForeignKey("vessels.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    sales = relationship("Sale", back_populates="vessel")
    purchase_coverages = relationship(
        "PurchaseCoverage", back_populates="vessel", cascade="all, delete-orphan"
    )
    parent = relationship("Vessel", remote_side=[id])


class Sale(Base):
    __tablename__ = "sales"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), nullable=False, index=True)
    vessel_id: Mapped[int] = mapped_column(ForeignKey("vessels.id"), nullable=False, index=True)
    pricing_mode: Mapped[PricingMode] = mapped_column(
        Enum(PricingMode, native_enum=False), nullable=False
    )
    volume: Mapped[Decimal] = mapped_column(Volume, nullable=False)
    premium: Mapped[Decimal | None] = mapped_column(Price)
    flat_price: Mapped[Decimal | None] = mapped_column(Price)
    reference: Mapped[str | None] = mapped_column(String(32))
    deal_date: Mapped[date | None] = mapped_column(Date)
    parent_sale_id: Mapped[int | None] = mapped_column(ForeignKey("sales.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    client = relationship("Client", back_populates="sales")
    vessel = relationship("Vessel", back_populates="sales")
    coverages = relationship(
        "SaleCoverage",
        back_populates="sale",
        foreign_keys="SaleCoverage.sale_id",
        order_by="SaleCoverage.id",
    )
    parent = relationship("Sale", remote_side=[id])


class SaleCoverage(Base):
    """Futures position hedging a sale.

    ``sale_id`` is NULL for orphaned coverage: the originating sale shrank below
    the hedge after a resale. ``origin_sale_id`` keeps the lineage either way.
    """

    __tablename__ = "sale_coverages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sale_id: Mapped[int | None] = mapped_column(ForeignKey("sales.id"), index=True)
    origin_sale_id: Mapped[int | None] = mapped_column(ForeignKey("sales.id"), index=True)
    contracts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tonnage: Mapped[Decimal] = mapped_column(Volume, nullable=False)
    futures_price: Mapped[Decimal] = mapped_column(Price, nullable=False)
    coverage_date: Mapped[date] = mapped_column(Date, nullable=False)
    orphaned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    sale = relationship("Sale", back_populates="coverages", foreign_keys=[sale_id])

    @property
    def is_orphaned(self) -> bool:
        return self.sale_id is None


class PurchaseCoverage(Base):
    __tablename__ = "purchase_coverages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vessel_id: Mapped[int] = mapped_column(ForeignKey("vessels.id"), nullable=False, index=True)
    contracts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tonnage: Mapped[Decimal] = mapped_column(Volume, nullable=False)
    futures_price: Mapped[Decimal] = mapped_column(Price, nullable=False)
    coverage_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    vessel = relationship("Vessel", back_populates="purchase_coverages")


class ResaleListing(Base):
    __tablename__ = "resale_listings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sale_id: Mapped[int] = mapped_column(ForeignKey("sales.id"), nullable=False, index=True)
    seller_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), nullable=False, index=True)
    position_type: Mapped[PositionType] = mapped_column(
        Enum(PositionType, native_enum=False), nullable=False
    )
    original_volume: Mapped[Decimal] = mapped_column(Volume, nullable=False)
    volume: Mapped[Decimal] = mapped_column(Volume, nullable=False)
    requested_price: Mapped[Decimal] = mapped_column(Price, nullable=False)
    # PRU (prime) or flat price of the sale, frozen when the listing was created.
    cost_basis: Mapped[Decimal] = mapped_column(Price, nullable=False)
    state: Mapped[ListingState] = mapped_column(
        Enum(ListingState, native_enum=False),
        default=ListingState.pending_validation,
        nullable=False,
        index=True,
    )
    validation_expiry: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    validated_by: Mapped[int | None] = mapped_column(ForeignKey("clients.id"))
    expiry_notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    comment: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )

    sale = relationship("Sale")
    seller = relationship("Client", foreign_keys=[seller_id])
    bids = relationship("Bid", back_populates="listing", order_by="Bid.id")


class Bid(Base):
    __tablename__ = "bids"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    listing_id: Mapped[int] = mapped_column(
        ForeignKey("resale_listings.id"), nullable=False, index=True
    )
    bidder_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), nullable=False, index=True)
    price: Mapped[Decimal] = mapped_column(Price, nullable=False)
    volume: Mapped[Decimal] = mapped_column(Volume, nullable=False)
    status: Mapped[BidStatus] = mapped_column(
        Enum(BidStatus, native_enum=False), default=BidStatus.active, nullable=False, index=True
    )
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    listing = relationship("ResaleListing", back_populates="bids")
    bidder = relationship("Client")


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (UniqueConstraint("bid_id", name="uq_transactions_bid_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    listing_id: Mapped[int] = mapped_column(
        ForeignKey("resale_listings.id"), nullable=False, index=True
    )
    bid_id: Mapped[int] = mapped_column(ForeignKey("bids.id"), nullable=False)
    seller_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), nullable=False, index=True)
    buyer_id: Mapped[int] = mapped_column(ForeignKey("clients.id"), nullable=False, index=True)
    buyer_sale_id: Mapped[int | None] = mapped_column(ForeignKey("sales.id"))
    original_cost_basis: Mapped[Decimal] = mapped_column(Price, nullable=False)
    final_price: Mapped[Decimal] = mapped_column(Price, nullable=False)
    volume: Mapped[Decimal] = mapped_column(Volume, nullable=False)
    seller_gain: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)
    commission: Mapped[Decimal] = mapped_column(
        Numeric(20, 4), default=Decimal("0"), nullable=False
    )
    pnl_paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    pnl_paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    listing = relationship("ResaleListing")

    # Settlement warnings for the response that created the row; not persisted.
    warnings = ()

    @validates("volume")
    def _validate_volume(self, _key, value):
        if value is None or Decimal(str(value)) <= 0:
            raise ValueError("Transaction.volume must be > 0")
        return value


# Only the P&L payment flag may change once a transaction is written.
TRANSACTION_MUTABLE_FIELDS = frozenset({"pnl_paid", "pnl_paid_at"})


@event.listens_for(Transaction, "before_update")
def _transaction_before_update(_mapper, _connection, target: Transaction):
    state = inspect(target)
    for attr in state.mapper.column_attrs:
        if attr.key in TRANSACTION_MUTABLE_FIELDS:
            continue
        if state.attrs[attr.key].history.has_changes():
            raise ValueError(f"Transaction.{attr.key} is immutable")


class ReferencePrice(Base):
    """Append-only quote for a reference instrument; the latest ``as_of`` wins."""

    __tablename__ = "reference_prices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instrument: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    price: Mapped[Decimal] = mapped_column(Price, nullable=False)
    as_of: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    source: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ScheduledJobRun(Base):
    __tablename__ = "scheduled_job_runs"
    __table_args__ = (UniqueConstraint("job_name", "slot_key", name="uq_job_runs_name_slot"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_name: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    slot_key: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[JobRunStatus] = mapped_column(
        Enum(JobRunStatus, native_enum=False), default=JobRunStatus.running, nullable=False
    )
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    result_json: Mapped[dict | None] = mapped_column(JSON)
    error: Mapped[str | None] = mapped_column(Text)
