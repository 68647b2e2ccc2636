"""Real-time quote feeds and their caches."""

from .base import FeedHealth, FeedState, LiveQuoteFeed, ReconnectBackoff
from .cache import GreeksCache, QuoteCache
from .dxlink import DXLinkFeed, QuoteTokenProvider
from .polygon_ws import PolygonSocketFeed
from .sweeps import Sweep, SweepDetector

__all__ = [
    "DXLinkFeed",
    "FeedHealth",
    "FeedState",
    "GreeksCache",
    "LiveQuoteFeed",
    "PolygonSocketFeed",
    "QuoteCache",
    "QuoteTokenProvider",
    "ReconnectBackoff",
    "Sweep",
    "SweepDetector",
]
