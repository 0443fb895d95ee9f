from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from graindesk.models.domain import PricingMode


class WarningRead(BaseModel):
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


class CoverageCreate(BaseModel):
    """Either ``contracts`` (contract-traded products) or ``tonnage``."""

    futures_price: Decimal
    contracts: Optional[int] = None
    tonnage: Optional[Decimal] = None
    coverage_date: Optional[date] = None


class SaleCoverageRead(BaseModel):
    id: int
    sale_id: Optional[int] = None
    origin_sale_id: Optional[int] = None
    contracts: int
    tonnage: Decimal
    futures_price: Decimal
    coverage_date: date
    orphaned_at: Optional[datetime] = None
    is_orphaned: bool = False

    model_config = ConfigDict(from_attributes=True)


class PurchaseCoverageRead(BaseModel):
    id: int
    vessel_id: int
    contracts: int
    tonnage: Decimal
    futures_price: Decimal
    coverage_date: date

    model_config = ConfigDict(from_attributes=True)


class CoverageSummaryRead(BaseModel):
    volume: Decimal
    covered_tonnage: Decimal
    uncovered_volume: Decimal
    coverage_pct: Decimal
    weighted_futures_price: Decimal
    overcoverage: Decimal
    warnings: List[WarningRead] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class SaleCoverageBooked(BaseModel):
    coverage: SaleCoverageRead
    summary: CoverageSummaryRead


class PurchaseCoverageBooked(BaseModel):
    coverage: PurchaseCoverageRead
    summary: CoverageSummaryRead


class PruRead(BaseModel):
    sale_id: int
    pru: Decimal
    pricing_mode: PricingMode
    blended_price: Optional[Decimal] = None
    weighted_futures_price: Decimal
    hedged_volume: Decimal
    unhedged_volume: Decimal
    reference_price: Optional[Decimal] = None
    conversion_factor: Decimal
    warnings: List[WarningRead] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class ReferencePriceCreate(BaseModel):
    prices: Dict[str, Decimal]
    as_of: Optional[datetime] = None
    source: Optional[str] = Field(None, max_length=64)


class ReferencePriceRead(BaseModel):
    id: int
    instrument: str
    price: Decimal
    as_of: datetime
    source: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)
