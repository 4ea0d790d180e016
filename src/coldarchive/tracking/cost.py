"""Recurring storage cost estimation for archived data."""

from __future__ import annotations

from typing import Callable, Optional

# Storage pricing (USD per GB-month)
STORAGE_PRICING = {
    # AWS S3 tiers
    "deep_archive": 0.00099,
    "glacier_flexible": 0.0036,
    "glacier_instant": 0.004,
    "s3_standard": 0.023,

    # Other object stores
    "b2": 0.006,
    "wasabi": 0.0069,

    # Local / self-hosted repository
    "local": 0.0,
}

DEFAULT_TIER = "deep_archive"

BYTES_PER_GB = 1024 ** 3


def estimate_monthly_cost(
    size_bytes: int,
    tier: str = DEFAULT_TIER,
    price_per_gb_month: Optional[float] = None,
) -> float:
    """Estimate the monthly cost of storing ``size_bytes``.

    Args:
        size_bytes: Archived bytes
        tier: Key in STORAGE_PRICING (ignored when a price is given)
        price_per_gb_month: Explicit price override

    Raises:
        ValueError: If the tier is unknown and no price is given
    """
    if price_per_gb_month is None:
        if tier not in STORAGE_PRICING:
            raise ValueError(f"Unknown storage tier '{tier}'. Must be one of: {sorted(STORAGE_PRICING)}")
        price_per_gb_month = STORAGE_PRICING[tier]
    return max(0, size_bytes) / BYTES_PER_GB * price_per_gb_month


def make_cost_estimator(
    tier: str = DEFAULT_TIER, price_per_gb_month: Optional[float] = None
) -> Callable[[int], float]:
    """Bind a tier/price into a pure ``bytes -> cost`` function."""
    # Fail on a bad tier now rather than on the first roll-up
    estimate_monthly_cost(0, tier, price_per_gb_month)

    def _estimate(size_bytes: int) -> float:
        return estimate_monthly_cost(size_bytes, tier, price_per_gb_month)

    return _estimate


def human_bytes(n: int) -> str:
    units = ["B", "KB", "MB", "GB", "TB", "PB"]
    x = float(max(0, n))
    i = 0
    while x >= 1024.0 and i < len(units) - 1:
        x /= 1024.0
        i += 1
    if i == 0:
        return f"{int(x)} {units[i]}"
    return f"{x:.2f} {units[i]}"


__all__ = [
    "STORAGE_PRICING",
    "DEFAULT_TIER",
    "estimate_monthly_cost",
    "make_cost_estimator",
    "human_bytes",
]
