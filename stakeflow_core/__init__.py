"""
StakeFlow - multi-pool staking engine with reward-per-share accounting.

Key features:
- Constant-time reward accrual per pool (18-decimal fixed-point accumulator)
- Stake, withdraw, harvest, restake and emergency withdraw
- Strategies that split one deposit across several pools by basis points
- All-or-nothing operations with custody refunds on failure
- Owner-gated pool administration and a global pause switch
- SQLite persistence and an aiohttp REST API
"""

__version__ = "0.1.0"
__all__ = [
    "precision",
    "pool",
    "position",
    "store",
    "engine",
    "strategy",
    "admin",
    "custody",
    "access",
    "events",
    "invariants",
    "storage",
    "config",
    "api",
]
