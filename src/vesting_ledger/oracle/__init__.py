"""Token price lookups."""

from vesting_ledger.oracle.price import CoinGeckoPriceOracle, PriceOracle

__all__ = ["CoinGeckoPriceOracle", "PriceOracle"]
