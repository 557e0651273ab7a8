"""
Market State Module
===================

Immutable per-instrument snapshots, derived liquidity metrics and the
single-writer store that publishes changes.
"""

from .market_state import HealthScore, MarketState, SyncStatus, current_midpoint, health_score, midpoint
from .store import MarketChange, MarketStateStore

__all__ = [
    'HealthScore',
    'MarketState',
    'SyncStatus',
    'current_midpoint',
    'health_score',
    'midpoint',
    'MarketChange',
    'MarketStateStore'
]
