"""Endpoint pricing resolution and USD/base-unit conversion."""
from __future__ import annotations

import re
from collections.abc import Iterable
from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache

from policykit.schemas.protocol import CatalogEntry, EndpointPricing, PaywallConfig, PricingEntry
from policykit.utils.networks import chain_id_to_network

ZERO = Decimal("0")


def usd_to_base_units(usd: Decimal | str | int, decimals: int = 6) -> int:
    """Convert a USD amount to integer asset units, rounding half-up."""

    scaled = Decimal(usd).scaleb(decimals)
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def base_units_to_usd(units: int | str, decimals: int = 6) -> Decimal:
    return Decimal(int(units)).scaleb(-decimals)


@lru_cache(maxsize=256)
def _pattern_regex(pattern: str) -> re.Pattern[str]:
    # ``**`` spans segments, ``*`` stays within one.
    parts = []
    for deep in pattern.split("**"):
        parts.append("[^/]*".join(re.escape(piece) for piece in deep.split("*")))
    return re.compile("^" + ".*".join(parts) + "$")


def match_pattern(path: str, pattern: str) -> bool:
    return _pattern_regex(pattern).match(path) is not None


def _normalise(entry: Decimal | PricingEntry, config: PaywallConfig) -> EndpointPricing:
    if not isinstance(entry, PricingEntry):
        entry = PricingEntry(price_usd=entry)
    units = entry.price_in_asset_units
    if units is None:
        units = usd_to_base_units(entry.price_usd, config.asset_decimals)
    return EndpointPricing(
        price_usd=entry.price_usd,
        price_in_asset_units=units,
        asset=entry.asset or config.default_asset,
        chain_id=entry.chain_id or config.default_chain_id,
        description=entry.description,
        schemes=entry.schemes,
    )


def resolve_pricing(path: str, config: PaywallConfig) -> EndpointPricing | None:
    """Return the price of ``path`` or ``None`` when the endpoint is free.

    Exact entries win, then wildcard patterns in configuration order, then the
    configured default price.
    """

    entry = config.pricing.get(path)
    if entry is not None:
        return _normalise(entry, config)

    for pattern, candidate in config.pricing.items():
        if "*" in pattern and match_pattern(path, pattern):
            return _normalise(candidate, config)

    if config.default_price_usd is not None:
        return _normalise(config.default_price_usd, config)
    return None


def pricing_catalog(config: PaywallConfig) -> list[CatalogEntry]:
    """List every configured endpoint with its resolved price."""

    catalog = []
    for endpoint, entry in config.pricing.items():
        pricing = _normalise(entry, config)
        catalog.append(
            CatalogEntry(
                endpoint=endpoint,
                price_usd=pricing.price_usd,
                asset=pricing.asset,
                chain_id=pricing.chain_id,
                network=chain_id_to_network(pricing.chain_id),
                description=pricing.description,
            )
        )
    return catalog


def total_price(paths: Iterable[str], config: PaywallConfig) -> Decimal:
    """Sum the USD price of ``paths``; free endpoints count as zero."""

    total = ZERO
    for path in paths:
        pricing = resolve_pricing(path, config)
        if pricing is not None:
            total += pricing.price_usd
    return total


__all__ = [
    "PaywallConfig",
    "usd_to_base_units",
    "base_units_to_usd",
    "match_pattern",
    "resolve_pricing",
    "pricing_catalog",
    "total_price",
]
