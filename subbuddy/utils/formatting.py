"""
Metric Formatters
=================

Single source of truth for display formatting of snapshot values.

Used by:
- subbuddy/models.py (DashboardData display helpers)
- subbuddy/services/report_generator.py (numbers in the data prompt)

Design principles:
- Pure functions: no side effects
- Currency symbol resolved from the ISO code, falling back to the code itself
- Compact form (k/M) only for the menu-bar label and cards
"""

from typing import Optional

# Symbols as rendered by an en_US currency formatter
CURRENCY_SYMBOLS = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "AUD": "A$",
    "CAD": "CA$",
    "JPY": "¥",
    "BRL": "R$",
    "KRW": "₩",
    "CNY": "CN¥",
    "MXN": "MX$",
}


def currency_symbol(currency: str) -> str:
    return CURRENCY_SYMBOLS.get(currency.upper(), f"{currency.upper()} ")


def fmt_currency(v: Optional[float], currency: str = "USD", decimals: int = 2) -> str:
    """
    Format numeric as currency with thousands separators.

    Examples:
        >>> fmt_currency(1234.56)
        "$1,234.56"

        >>> fmt_currency(1234.56, "EUR", decimals=0)
        "€1,235"

        >>> fmt_currency(None)
        "N/A"
    """
    if v is None:
        return "N/A"
    sign = "-" if v < 0 else ""
    return f"{sign}{currency_symbol(currency)}{abs(v):,.{decimals}f}"


def fmt_compact_currency(v: float, currency: str = "USD") -> str:
    """
    Compact currency for the menu bar: one decimal with k/M suffix above 1,000.

    Examples:
        >>> fmt_compact_currency(1_250_000)
        "$1.2M"

        >>> fmt_compact_currency(4_321)
        "$4.3k"

        >>> fmt_compact_currency(950.4)
        "$950"
    """
    magnitude = abs(v)
    sign = "-" if v < 0 else ""
    symbol = currency_symbol(currency)
    if magnitude >= 1_000_000:
        return f"{sign}{symbol}{magnitude / 1_000_000:,.1f}M"
    if magnitude >= 1_000:
        return f"{sign}{symbol}{magnitude / 1_000:,.1f}k"
    return f"{sign}{symbol}{magnitude:,.0f}"


def fmt_signed_compact_currency(v: float, currency: str = "USD") -> str:
    """Compact currency with an explicit sign: "+$12", "-$1.5k"."""
    prefix = "+" if v >= 0 else "-"
    return prefix + fmt_compact_currency(abs(v), currency)


def fmt_count(v: Optional[float]) -> str:
    """Whole number with thousands separators ("12,345"), "N/A" for None."""
    if v is None:
        return "N/A"
    return f"{int(round(v)):,}"


def fmt_percent(v: Optional[float], decimals: int = 1) -> str:
    """Value already expressed in percent units: 4.2 -> "4.2%"."""
    if v is None:
        return "N/A"
    return f"{v:.{decimals}f}%"
