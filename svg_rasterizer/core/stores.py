from enum import Enum


class StoreNames(str, Enum):
    """Logical Redis stores.  Each may live on a different server."""

    CACHE = "cache"
    RATE_LIMIT = "rate_limit"
