from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from graindesk.models.domain import BidStatus, ListingState, PositionType
from graindesk.schemas.coverage import WarningRead


class ResaleListingCreate(BaseModel):
    sale_id: int
    position_type: PositionType
    volume: Decimal
    requested_price: Decimal
    comment: Optional[str] = None


class ResaleListingRead(BaseModel):
    id: int
    sale_id: int
    seller_id: int
    position_type: PositionType
    original_volume: Decimal
    volume: Decimal
    requested_price: Decimal
    cost_basis: Decimal
    state: ListingState
    validation_expiry: datetime
    validated_at: Optional[datetime] = None
    validated_by: Optional[int] = None
    comment: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ResaleRejectRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class AdminQueueItemRead(BaseModel):
    listing: ResaleListingRead
    expired: bool
    warnings: List[WarningRead] = Field(default_factory=list)


class BidCreate(BaseModel):
    price: Decimal
    volume: Decimal


class BidRead(BaseModel):
    id: int
    listing_id: int
    bidder_id: int
    price: Decimal
    volume: Decimal
    status: BidStatus
    accepted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class BidAcceptRequest(BaseModel):
    commission: Optional[Decimal] = None


class TransactionRead(BaseModel):
    id: int
    listing_id: int
    bid_id: int
    seller_id: int
    buyer_id: int
    buyer_sale_id: Optional[int] = None
    original_cost_basis: Decimal
    final_price: Decimal
    volume: Decimal
    seller_gain: Decimal
    commission: Decimal
    pnl_paid: bool
    pnl_paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    warnings: List[WarningRead] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)
