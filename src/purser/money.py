"""Money conversion helpers using fixed micro-dollar precision."""

from __future__ import annotations

from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP


MICROS_PER_USD = 1_000_000
_USD_QUANT = Decimal("0.000001")

DEFAULT_ASSET_DECIMALS = 6
# Decimal exponents agreed out of band; never renegotiated per request.
ASSET_DECIMALS = {
    "USDC": 6,
    "USDT": 6,
    "PYUSD": 6,
    "SOL": 9,
    "ETH": 18,
}


def asset_decimals(asset: str) -> int:
    """Decimal exponent for an asset symbol, defaulting to USDC precision."""
    return ASSET_DECIMALS.get(asset.upper(), DEFAULT_ASSET_DECIMALS)


def amount_usd_to_micros(value: Decimal | float | int | str) -> int:
    """Convert spend amount to micro-dollars, rounding up (conservative)."""
    dec = Decimal(str(value)).quantize(_USD_QUANT, rounding=ROUND_CEILING)
    return int(dec * MICROS_PER_USD)


def limit_usd_to_micros(value: Decimal | float | int | str) -> int:
    """Convert budget limit to micro-dollars, rounding down (conservative)."""
    dec = Decimal(str(value)).quantize(_USD_QUANT, rounding=ROUND_FLOOR)
    return int(dec * MICROS_PER_USD)


def micros_to_usd_decimal(value: int) -> Decimal:
    """Convert integer micro-dollars to Decimal USD."""
    return (Decimal(value) / Decimal(MICROS_PER_USD)).quantize(_USD_QUANT)


def micros_to_usd_float(value: int) -> float:
    """Convert integer micro-dollars to float USD (for display APIs)."""
    return float(micros_to_usd_decimal(value))


def format_usd_from_micros(value: int) -> str:
    """Format integer micro-dollars as a currency string."""
    return f"${micros_to_usd_decimal(value):.2f}"


def usd_to_base_units(price_usd: Decimal | float | int | str, decimals: int) -> int:
    """Price in USD to the asset's smallest unit, rounding half up."""
    scaled = Decimal(str(price_usd)) * (Decimal(10) ** decimals)
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def base_units_to_usd(amount: int, decimals: int) -> Decimal:
    """Smallest-unit amount to USD."""
    return Decimal(amount) / (Decimal(10) ** decimals)
