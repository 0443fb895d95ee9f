"""Domain services. Routes call these; nothing here imports FastAPI."""

__all__ = [
    "conversion",
    "events",
    "hedge_allocator",
    "market_prices",
    "pnl_aggregator",
    "positions",
    "pru_calculator",
    "resale_workflow",
    "scheduler",
    "settlement",
    "transitions",
]
