from fastapi import APIRouter

from graindesk.api.routes import (
    bids,
    clients,
    coverages,
    events,
    jobs,
    pnl,
    reference_prices,
    resales,
    sales,
    transactions,
    vessels,
)

api_router = APIRouter()
api_router.include_router(clients.router)
api_router.include_router(vessels.router)
api_router.include_router(sales.router)
api_router.include_router(coverages.router)
api_router.include_router(reference_prices.router)
api_router.include_router(resales.router)
api_router.include_router(bids.router)
api_router.include_router(transactions.router)
api_router.include_router(pnl.router)
api_router.include_router(events.router)
api_router.include_router(jobs.router)
