from __future__ import annotations

from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from graindesk.schemas.coverage import WarningRead


class VesselPnlRead(BaseModel):
    vessel_id: int
    vessel_name: str
    product: str
    purchase_price_display: Decimal
    avg_sale_price: Decimal
    avg_sale_flat_price: Decimal
    avg_sale_pru: Optional[Decimal] = None
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
    warnings: List[WarningRead] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class ClientPnlRead(BaseModel):
    client_id: int
    client_name: str
    vessel_id: int
    vessel_name: str
    product: str
    pnl_prime: Decimal
    pnl_flat: Decimal
    pnl_futures: Decimal
    pnl_total: Decimal
    volume: Decimal
    volume_hedged: Decimal
    realized_gain: Decimal

    model_config = ConfigDict(from_attributes=True)


class VesselClientsPnlRead(BaseModel):
    vessel_id: int
    vessel_name: str
    product: str
    clients: List[ClientPnlRead]
    total_pnl: Decimal
    total_volume: Decimal

    model_config = ConfigDict(from_attributes=True)


class PortfolioPnlRead(BaseModel):
    pnl_total: Decimal
    pnl_prime_total: Decimal
    pnl_flat_total: Decimal
    pnl_futures_total: Decimal
    realized_gain_total: Decimal
    vessel_count: int
    volume_total: Decimal
    vessels: List[VesselPnlRead]

    model_config = ConfigDict(from_attributes=True)
