from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from graindesk.models.domain import ClientRole, CommercialTerm, PricingMode, ProductType


class ClientBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: Optional[str] = Field(None, max_length=255)
    role: ClientRole = ClientRole.client
    visible_on_market: bool = True


class ClientCreate(ClientBase):
    pass


class ClientRead(ClientBase):
    id: int
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class VesselBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    product: ProductType
    total_quantity: Decimal
    purchase_pricing_mode: PricingMode
    purchase_premium: Optional[Decimal] = None
    purchase_flat_price: Optional[Decimal] = None
    purchase_reference: Optional[str] = Field(None, max_length=32)
    commercial_term: CommercialTerm = CommercialTerm.CFR
    freight_rate: Optional[Decimal] = None
    supplier: Optional[str] = Field(None, max_length=255)
    arrival_date: Optional[date] = None


class VesselCreate(VesselBase):
    pass


class VesselRead(VesselBase):
    id: int
    parent_vessel_id: Optional[int] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SaleBase(BaseModel):
    client_id: int
    vessel_id: int
    pricing_mode: PricingMode
    volume: Decimal
    premium: Optional[Decimal] = None
    flat_price: Optional[Decimal] = None
    reference: Optional[str] = Field(None, max_length=32)
    deal_date: Optional[date] = None


class SaleCreate(SaleBase):
    pass


class SaleRead(SaleBase):
    id: int
    parent_sale_id: Optional[int] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class RollRequest(BaseModel):
    volume_to_move: Decimal
    new_reference: str = Field(..., max_length=32)
    new_premium: Optional[Decimal] = None


class RollRead(BaseModel):
    source_id: int
    child_id: int
    moved_volume: Decimal
    source_remaining: Decimal
    original_total: Decimal
    new_reference: str

    model_config = ConfigDict(from_attributes=True)
