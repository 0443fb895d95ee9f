from graindesk.models.domain import (  # noqa: F401
    OPEN_LISTING_STATES,
    Bid,
    BidStatus,
    Client,
    ClientRole,
    CommercialTerm,
    JobRunStatus,
    ListingState,
    PositionType,
    PricingMode,
    ProductType,
    PurchaseCoverage,
    ReferencePrice,
    ResaleListing,
    Sale,
    SaleCoverage,
    ScheduledJobRun,
    Transaction,
    Vessel,
)
