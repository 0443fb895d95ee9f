from graindesk.schemas.coverage import (
    CoverageCreate,
    CoverageSummaryRead,
    PruRead,
    PurchaseCoverageBooked,
    PurchaseCoverageRead,
    ReferencePriceCreate,
    ReferencePriceRead,
    SaleCoverageBooked,
    SaleCoverageRead,
    WarningRead,
)
from graindesk.schemas.ops import BadgeCountsRead, JobRunRead
from graindesk.schemas.pnl import (
    ClientPnlRead,
    PortfolioPnlRead,
    VesselClientsPnlRead,
    VesselPnlRead,
)
from graindesk.schemas.positions import (
    ClientCreate,
    ClientRead,
    RollRead,
    RollRequest,
    SaleCreate,
    SaleRead,
    VesselCreate,
    VesselRead,
)
from graindesk.schemas.resales import (
    AdminQueueItemRead,
    BidAcceptRequest,
    BidCreate,
    BidRead,
    ResaleListingCreate,
    ResaleListingRead,
    ResaleRejectRequest,
    TransactionRead,
)

__all__ = [
    "AdminQueueItemRead",
    "BadgeCountsRead",
    "BidAcceptRequest",
    "BidCreate",
    "BidRead",
    "ClientCreate",
    "ClientPnlRead",
    "ClientRead",
    "CoverageCreate",
    "CoverageSummaryRead",
    "JobRunRead",
    "PortfolioPnlRead",
    "PruRead",
    "PurchaseCoverageBooked",
    "PurchaseCoverageRead",
    "ReferencePriceCreate",
    "ReferencePriceRead",
    "ResaleListingCreate",
    "ResaleListingRead",
    "ResaleRejectRequest",
    "RollRead",
    "RollRequest",
    "SaleCoverageBooked",
    "SaleCoverageRead",
    "SaleCreate",
    "SaleRead",
    "TransactionRead",
    "VesselClientsPnlRead",
    "VesselCreate",
    "VesselPnlRead",
    "WarningRead",
]
