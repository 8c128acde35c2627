"""Fixed-point monetary arithmetic.

All ledger amounts are integers in micro-units of a currency
(1_000_000 micro-units = 1.00). Fractional values are rounded half-up at the
point they become a persisted amount, never truncated.
"""

import math
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal

from workspace_credits.config import get_settings

MICROS_PER_UNIT = 1_000_000
_MICROS = Decimal(MICROS_PER_UNIT)
_ONE_MILLION = Decimal("1000000")

# Tavily pricing: $0.008 per credit
TAVILY_COST_PER_CREDIT_MICROS = 8_000

# Conservative reservation estimate for Exa calls: $0.01
EXA_DEFAULT_ESTIMATE_DOLLARS = Decimal("0.01")


def _to_decimal(value: Decimal | int | float | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # repr() keeps the shortest round-tripping form (0.1 -> "0.1")
        return Decimal(repr(value))
    return Decimal(value)


def round_micros(value: Decimal | int | float | str) -> int:
    """Round a (possibly fractional) micro-unit quantity half-up to an int."""
    return int(_to_decimal(value).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def to_micros(amount: Decimal | int | float | str) -> int:
    """Convert an amount in currency units to micro-units.

    Args:
        amount: Amount in whole currency units (e.g. ``Decimal("1.25")``)

    Returns:
        Integer micro-units, rounded half-up
    """
    return round_micros(_to_decimal(amount) * _MICROS)


def from_micros(micros: int) -> Decimal:
    """Convert micro-units back to currency units (exact)."""
    return Decimal(micros) / _MICROS


def dollars_to_micros_ceil(dollars: Decimal | int | float | str) -> int:
    """Convert dollars to micro-units rounding up.

    Used for reservation estimates where under-reserving is worse than
    over-reserving; settlement always refunds the excess.
    """
    return int((_to_decimal(dollars) * _MICROS).to_integral_value(rounding=ROUND_CEILING))


def calculate_flat_rate_cost(
    units: Decimal | int | float | str,
    price_per_unit_micros: int,
) -> int:
    """Cost of a flat-rate API call.

    Linear and exact for integer ``units``; fractional units are rounded
    half-up so ``0.5 * 8_000`` is always ``4_000``.
    """
    return round_micros(_to_decimal(units) * Decimal(price_per_unit_micros))


def calculate_tavily_cost(credits: Decimal | int | float | str = 1) -> int:
    """Cost in micro-units of ``credits`` Tavily credits (8_000 per credit)."""
    return calculate_flat_rate_cost(credits, TAVILY_COST_PER_CREDIT_MICROS)


def apply_markup(micros: int, rate: Decimal | float | str | None = None) -> int:
    """Apply the platform markup to a provider cost, rounding up.

    ``rate`` defaults to the TOOL_MARKUP_RATE setting.
    """
    if rate is None:
        rate = get_settings().TOOL_MARKUP_RATE
    marked = Decimal(micros) * (Decimal(1) + _to_decimal(rate))
    return int(marked.to_integral_value(rounding=ROUND_CEILING))


def calculate_token_cost_micros(  # noqa: PLR0913
    input_tokens: int,
    output_tokens: int,
    input_price_per_million: Decimal,
    output_price_per_million: Decimal,
    reasoning_tokens: int = 0,
    cached_input_tokens: int = 0,
    cached_input_price_per_million: Decimal | None = None,
) -> int:
    """Calculate the cost of an LLM call in micro-units.

    Reasoning tokens are billed at the output price. Cached prompt tokens are
    billed at the cached price when one is given, otherwise at the input price.

    Args:
        input_tokens: Uncached prompt tokens
        output_tokens: Completion tokens
        input_price_per_million: Dollars per million prompt tokens
        output_price_per_million: Dollars per million completion tokens
        reasoning_tokens: Reasoning tokens
        cached_input_tokens: Prompt tokens served from the provider cache
        cached_input_price_per_million: Dollars per million cached tokens

    Returns:
        Cost in micro-units, never negative
    """
    cached_price = (
        cached_input_price_per_million
        if cached_input_price_per_million is not None
        else input_price_per_million
    )
    cost = (
        Decimal(max(0, input_tokens)) * input_price_per_million
        + Decimal(max(0, output_tokens) + max(0, reasoning_tokens)) * output_price_per_million
        + Decimal(max(0, cached_input_tokens)) * cached_price
    ) / _ONE_MILLION
    return max(0, to_micros(cost))


def estimate_tokens(text: str) -> int:
    """Rough token estimate (four characters per token)."""
    return max(1, math.ceil(len(text.strip()) / 4))


def convert_currency(micros: int, rate: Decimal | float | str) -> int:
    """Convert an amount with an exchange rate. Display purposes only."""
    return round_micros(Decimal(micros) * _to_decimal(rate))


def format_micros(micros: int, currency: str = "usd") -> str:
    """Format micro-units for display, e.g. ``-0.004000 USD``."""
    value = from_micros(micros).quantize(Decimal("0.000001"), rounding=ROUND_HALF_UP)
    return f"{value} {currency.upper()}"
