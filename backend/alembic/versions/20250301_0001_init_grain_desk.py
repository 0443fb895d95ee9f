"""init grain desk tables

Revision ID: 20250301_0001
Revises: None
Create Date: 2025-03-01
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20250301_0001_init_grain_desk"
down_revision = None
branch_labels = None
depends_on = None

VOLUME = sa.Numeric(18, 4)
PRICE = sa.Numeric(18, 4)


def upgrade() -> None:
    def _enum(*values: str, name: str) -> sa.Enum:
        # Stored as VARCHAR on every backend so adding a product needs no ALTER TYPE.
        return sa.Enum(*values, name=name, native_enum=False, create_constraint=False)

    role_enum = _enum("admin", "client", name="clientrole")
    product_enum = _enum(
        "corn", "soybean_meal", "wheat", "barley", "ddgs", "scrap", name="producttype"
    )
    pricing_enum = _enum("prime", "flat", name="pricingmode")
    term_enum = _enum("FOB", "CFR", name="commercialterm")
    position_enum = _enum("covered", "uncovered", name="positiontype")
    listing_enum = _enum(
        "pending_validation", "listed", "rejected", "withdrawn", "settled", name="listingstate"
    )
    bid_enum = _enum("active", "accepted", "rejected", name="bidstatus")
    job_enum = _enum("running", "succeeded", "failed", name="jobrunstatus")

    op.create_table(
        "clients",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), unique=True),
        sa.Column("role", role_enum, nullable=False),
        sa.Column("visible_on_market", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "vessels",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("product", product_enum, nullable=False),
        sa.Column("total_quantity", VOLUME, nullable=False),
        sa.Column("purchase_pricing_mode", pricing_enum, nullable=False),
        sa.Column("purchase_premium", PRICE),
        sa.Column("purchase_flat_price", PRICE),
        sa.Column("purchase_reference", sa.String(length=32)),
        sa.Column("commercial_term", term_enum, nullable=False),
        sa.Column("freight_rate", PRICE),
        sa.Column("supplier", sa.String(length=255)),
        sa.Column("arrival_date", sa.Date()),
        sa.Column("parent_vessel_id", sa.Integer(), sa.ForeignKey("vessels.id")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_vessels_parent_vessel_id", "vessels", ["parent_vessel_id"])

    op.create_table(
        "sales",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("client_id", sa.Integer(), sa.ForeignKey("clients.id"), nullable=False),
        sa.Column("vessel_id", sa.Integer(), sa.ForeignKey("vessels.id"), nullable=False),
        sa.Column("pricing_mode", pricing_enum, nullable=False),
        sa.Column("volume", VOLUME, nullable=False),
        sa.Column("premium", PRICE),
        sa.Column("flat_price", PRICE),
        sa.Column("reference", sa.String(length=32)),
        sa.Column("deal_date", sa.Date()),
        sa.Column("parent_sale_id", sa.Integer(), sa.ForeignKey("sales.id")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_sales_client_id", "sales", ["client_id"])
    op.create_index("ix_sales_vessel_id", "sales", ["vessel_id"])
    op.create_index("ix_sales_parent_sale_id", "sales", ["parent_sale_id"])

    op.create_table(
        "sale_coverages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("sale_id", sa.Integer(), sa.ForeignKey("sales.id")),
        sa.Column("origin_sale_id", sa.Integer(), sa.ForeignKey("sales.id")),
        sa.Column("contracts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tonnage", VOLUME, nullable=False),
        sa.Column("futures_price", PRICE, nullable=False),
        sa.Column("coverage_date", sa.Date(), nullable=False),
        sa.Column("orphaned_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_sale_coverages_sale_id", "sale_coverages", ["sale_id"])
    op.create_index("ix_sale_coverages_origin_sale_id", "sale_coverages", ["origin_sale_id"])

    op.create_table(
        "purchase_coverages",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("vessel_id", sa.Integer(), sa.ForeignKey("vessels.id"), nullable=False),
        sa.Column("contracts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tonnage", VOLUME, nullable=False),
        sa.Column("futures_price", PRICE, nullable=False),
        sa.Column("coverage_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_purchase_coverages_vessel_id", "purchase_coverages", ["vessel_id"])

    op.create_table(
        "resale_listings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("sale_id", sa.Integer(), sa.ForeignKey("sales.id"), nullable=False),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("clients.id"), nullable=False),
        sa.Column("position_type", position_enum, nullable=False),
        sa.Column("original_volume", VOLUME, nullable=False),
        sa.Column("volume", VOLUME, nullable=False),
        sa.Column("requested_price", PRICE, nullable=False),
        sa.Column("cost_basis", PRICE, nullable=False),
        sa.Column("state", listing_enum, nullable=False),
        sa.Column("validation_expiry", sa.DateTime(timezone=True), nullable=False),
        sa.Column("validated_at", sa.DateTime(timezone=True)),
        sa.Column("validated_by", sa.Integer(), sa.ForeignKey("clients.id")),
        sa.Column("expiry_notified_at", sa.DateTime(timezone=True)),
        sa.Column("comment", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_resale_listings_sale_id", "resale_listings", ["sale_id"])
    op.create_index("ix_resale_listings_seller_id", "resale_listings", ["seller_id"])
    op.create_index("ix_resale_listings_state", "resale_listings", ["state"])

    op.create_table(
        "bids",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "listing_id", sa.Integer(), sa.ForeignKey("resale_listings.id"), nullable=False
        ),
        sa.Column("bidder_id", sa.Integer(), sa.ForeignKey("clients.id"), nullable=False),
        sa.Column("price", PRICE, nullable=False),
        sa.Column("volume", VOLUME, nullable=False),
        sa.Column("status", bid_enum, nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_bids_listing_id", "bids", ["listing_id"])
    op.create_index("ix_bids_bidder_id", "bids", ["bidder_id"])
    op.create_index("ix_bids_status", "bids", ["status"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "listing_id", sa.Integer(), sa.ForeignKey("resale_listings.id"), nullable=False
        ),
        sa.Column("bid_id", sa.Integer(), sa.ForeignKey("bids.id"), nullable=False),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("clients.id"), nullable=False),
        sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("clients.id"), nullable=False),
        sa.Column("buyer_sale_id", sa.Integer(), sa.ForeignKey("sales.id")),
        sa.Column("original_cost_basis", PRICE, nullable=False),
        sa.Column("final_price", PRICE, nullable=False),
        sa.Column("volume", VOLUME, nullable=False),
        sa.Column("seller_gain", sa.Numeric(20, 4), nullable=False),
        sa.Column("commission", sa.Numeric(20, 4), nullable=False, server_default="0"),
        sa.Column("pnl_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("pnl_paid_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("bid_id", name="uq_transactions_bid_id"),
    )
    op.create_index("ix_transactions_listing_id", "transactions", ["listing_id"])
    op.create_index("ix_transactions_seller_id", "transactions", ["seller_id"])
    op.create_index("ix_transactions_buyer_id", "transactions", ["buyer_id"])

    op.create_table(
        "reference_prices",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("instrument", sa.String(length=32), nullable=False),
        sa.Column("price", PRICE, nullable=False),
        sa.Column("as_of", sa.DateTime(timezone=True), nullable=False),
        sa.Column("source", sa.String(length=64)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_reference_prices_instrument", "reference_prices", ["instrument"])
    op.create_index("ix_reference_prices_as_of", "reference_prices", ["as_of"])

    op.create_table(
        "scheduled_job_runs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("job_name", sa.String(length=64), nullable=False),
        sa.Column("slot_key", sa.String(length=64), nullable=False),
        sa.Column("status", job_enum, nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True)),
        sa.Column("result_json", sa.JSON()),
        sa.Column("error", sa.Text()),
        sa.UniqueConstraint("job_name", "slot_key", name="uq_job_runs_name_slot"),
    )
    op.create_index("ix_scheduled_job_runs_job_name", "scheduled_job_runs", ["job_name"])


def downgrade() -> None:
    op.drop_table("scheduled_job_runs")
    op.drop_table("reference_prices")
    op.drop_table("transactions")
    op.drop_table("bids")
    op.drop_table("resale_listings")
    op.drop_table("purchase_coverages")
    op.drop_table("sale_coverages")
    op.drop_table("sales")
    op.drop_table("vessels")
    op.drop_table("clients")
