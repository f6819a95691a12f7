from bidscout_workers.adapters import auction_lots, autotrader  # noqa: F401  registers adapters
from bidscout_workers.adapters.base import get_adapter, registered_sources

__all__ = ["get_adapter", "registered_sources"]
