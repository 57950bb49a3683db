# ==== JURISDICTION TAX ENGINE ==== #

"""
Jurisdiction tax engine for OrderDesk.

Pure functions computing sales tax breakdowns for Canadian provinces and
territories, forward (from a subtotal) and reverse (from a tax-inclusive
total). All amounts are integers in minor currency units; every component
is rounded half-up to a whole minor unit, so components always sum to the
total tax and subtotal + total tax always equals the total.

A jurisdiction uses either a single combined rate (HST) or a primary plus
secondary pair (GST + PST/RST/QST), never both.
"""

from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from app.business.errors import ValidationError


# ==== RATE TABLE ==== #


@dataclass(frozen=True)
class TaxRates:
    """Rate triple for one jurisdiction."""

    primary_rate: Decimal = Decimal("0")
    secondary_rate: Decimal = Decimal("0")
    combined_rate: Decimal = Decimal("0")

    def __post_init__(self) -> None:
        if self.combined_rate and (self.primary_rate or self.secondary_rate):
            raise ValueError("combined rate is exclusive with primary/secondary rates")

    @property
    def total_rate(self) -> Decimal:
        return self.primary_rate + self.secondary_rate + self.combined_rate

    def to_dict(self) -> Dict[str, float]:
        return {
            "primary_rate": float(self.primary_rate),
            "secondary_rate": float(self.secondary_rate),
            "combined_rate": float(self.combined_rate),
            "total_rate": float(self.total_rate),
        }


def _split(primary: str, secondary: str = "0") -> TaxRates:
    return TaxRates(primary_rate=Decimal(primary), secondary_rate=Decimal(secondary))


def _combined(rate: str) -> TaxRates:
    return TaxRates(combined_rate=Decimal(rate))


JURISDICTION_TAX_RATES: Dict[str, TaxRates] = {
    # GST only
    "AB": _split("0.05"),
    "NT": _split("0.05"),
    "NU": _split("0.05"),
    "YT": _split("0.05"),
    # GST + provincial sales tax
    "BC": _split("0.05", "0.07"),
    "MB": _split("0.05", "0.07"),
    "SK": _split("0.05", "0.06"),
    "QC": _split("0.05", "0.09975"),
    # Harmonized
    "ON": _combined("0.13"),
    "NB": _combined("0.15"),
    "NL": _combined("0.15"),
    "NS": _combined("0.15"),
    "PE": _combined("0.15"),
}

JURISDICTION_NAMES: Dict[str, str] = {
    "AB": "Alberta",
    "BC": "British Columbia",
    "MB": "Manitoba",
    "NB": "New Brunswick",
    "NL": "Newfoundland and Labrador",
    "NS": "Nova Scotia",
    "NT": "Northwest Territories",
    "NU": "Nunavut",
    "ON": "Ontario",
    "PE": "Prince Edward Island",
    "QC": "Quebec",
    "SK": "Saskatchewan",
    "YT": "Yukon",
}

DEFAULT_JURISDICTION = "AB"

_ONE = Decimal(1)


# ==== BREAKDOWN MODEL ==== #


@dataclass(frozen=True)
class TaxBreakdown:
    """Result of a tax computation, all amounts in minor units."""

    jurisdiction: str
    subtotal: int
    primary: int
    secondary: int
    combined: int
    total_tax: int
    total: int
    effective_rate: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ==== CORE CALCULATIONS ==== #


def round_half_up(value: Decimal) -> int:
    """Round to the nearest whole minor unit, ties away from zero."""
    return int(value.quantize(_ONE, rounding=ROUND_HALF_UP))


def is_supported_jurisdiction(code: Optional[str]) -> bool:
    return bool(code) and code.strip().upper() in JURISDICTION_TAX_RATES


def resolve_jurisdiction(code: Optional[str], default: str = DEFAULT_JURISDICTION) -> str:
    """
    Normalize a jurisdiction code, falling back to the default for unknown codes.

    Args:
        code (Optional[str]): Raw region code, any case
        default (str): Jurisdiction used when the code is missing or unknown

    Returns:
        str: Supported upper-case jurisdiction code
    """
    if is_supported_jurisdiction(code):
        return code.strip().upper()
    fallback = (default or DEFAULT_JURISDICTION).strip().upper()
    if fallback not in JURISDICTION_TAX_RATES:
        fallback = DEFAULT_JURISDICTION
    return fallback


def get_tax_rates(code: Optional[str], default: str = DEFAULT_JURISDICTION) -> TaxRates:
    return JURISDICTION_TAX_RATES[resolve_jurisdiction(code, default)]


def calculate_tax(
    subtotal_minor_units: int,
    jurisdiction: Optional[str] = None,
    default_jurisdiction: str = DEFAULT_JURISDICTION,
) -> TaxBreakdown:
    """
    Calculate the tax breakdown for a subtotal.

    Each component is rounded independently (half-up) and the total tax is
    the sum of the rounded components.

    Args:
        subtotal_minor_units (int): Pre-tax amount in minor units, non-negative
        jurisdiction (Optional[str]): Region code; unknown codes use the default
        default_jurisdiction (str): Configured fallback jurisdiction

    Returns:
        TaxBreakdown: Components, totals and effective rate

    Raises:
        ValidationError: If the subtotal is negative or not an integer
    """
    if isinstance(subtotal_minor_units, bool) or not isinstance(subtotal_minor_units, int):
        raise ValidationError("Subtotal must be an integer amount of minor units")
    if subtotal_minor_units < 0:
        raise ValidationError("Subtotal must be non-negative", subtotal=subtotal_minor_units)

    code = resolve_jurisdiction(jurisdiction, default_jurisdiction)
    rates = JURISDICTION_TAX_RATES[code]
    subtotal = Decimal(subtotal_minor_units)

    primary = secondary = combined = 0
    if rates.combined_rate:
        combined = round_half_up(subtotal * rates.combined_rate)
    else:
        primary = round_half_up(subtotal * rates.primary_rate)
        secondary = round_half_up(subtotal * rates.secondary_rate)

    total_tax = primary + secondary + combined
    effective_rate = total_tax / subtotal_minor_units if subtotal_minor_units else 0.0

    return TaxBreakdown(
        jurisdiction=code,
        subtotal=subtotal_minor_units,
        primary=primary,
        secondary=secondary,
        combined=combined,
        total_tax=total_tax,
        total=subtotal_minor_units + total_tax,
        effective_rate=effective_rate,
    )


def calculate_tax_from_total(
    total_minor_units: int,
    jurisdiction: Optional[str] = None,
    default_jurisdiction: str = DEFAULT_JURISDICTION,
) -> TaxBreakdown:
    """
    Reverse calculation: derive the subtotal from a tax-inclusive total.

    The subtotal is round(total / (1 + sum of rates)) and is then run forward
    through calculate_tax, so the returned total may differ from the input by
    a rounding unit.

    Args:
        total_minor_units (int): Tax-inclusive amount in minor units
        jurisdiction (Optional[str]): Region code; unknown codes use the default
        default_jurisdiction (str): Configured fallback jurisdiction

    Returns:
        TaxBreakdown: Forward breakdown of the derived subtotal
    """
    if isinstance(total_minor_units, bool) or not isinstance(total_minor_units, int):
        raise ValidationError("Total must be an integer amount of minor units")
    if total_minor_units < 0:
        raise ValidationError("Total must be non-negative", total=total_minor_units)

    code = resolve_jurisdiction(jurisdiction, default_jurisdiction)
    rate = JURISDICTION_TAX_RATES[code].total_rate
    subtotal = round_half_up(Decimal(total_minor_units) / (_ONE + rate))
    return calculate_tax(subtotal, code, default_jurisdiction)


def split_tax_inclusive_total(
    total_minor_units: int,
    jurisdiction: Optional[str] = None,
    default_jurisdiction: str = DEFAULT_JURISDICTION,
) -> TaxBreakdown:
    """
    Split an amount actually collected into subtotal and tax.

    The subtotal is derived as in calculate_tax_from_total, but the tax is
    whatever remains of the collected amount, so ``total`` always equals
    the input. For split jurisdictions the tax is apportioned by rate, with
    the primary share rounded half-up and the secondary taking the rest.

    Args:
        total_minor_units (int): Collected, tax-inclusive amount in minor units
        jurisdiction (Optional[str]): Region code; unknown codes use the default
        default_jurisdiction (str): Configured fallback jurisdiction

    Returns:
        TaxBreakdown: Breakdown whose total is exactly ``total_minor_units``
    """
    derived = calculate_tax_from_total(total_minor_units, jurisdiction, default_jurisdiction)
    rates = JURISDICTION_TAX_RATES[derived.jurisdiction]
    subtotal = derived.subtotal
    total_tax = total_minor_units - subtotal

    primary = secondary = combined = 0
    if rates.combined_rate:
        combined = total_tax
    elif rates.total_rate:
        primary = round_half_up(Decimal(total_tax) * rates.primary_rate / rates.total_rate)
        secondary = total_tax - primary

    return TaxBreakdown(
        jurisdiction=derived.jurisdiction,
        subtotal=subtotal,
        primary=primary,
        secondary=secondary,
        combined=combined,
        total_tax=total_tax,
        total=total_minor_units,
        effective_rate=total_tax / subtotal if subtotal else 0.0,
    )


# ==== REFERENCE DATA & DISPLAY ==== #


def get_jurisdiction_name(code: str) -> str:
    return JURISDICTION_NAMES.get(code.strip().upper(), code)


def get_supported_jurisdictions() -> List[Dict[str, Any]]:
    """List every supported jurisdiction with its name and rates."""
    return [
        {"code": code, "name": get_jurisdiction_name(code), **rates.to_dict()}
        for code, rates in sorted(JURISDICTION_TAX_RATES.items())
    ]


def format_minor_units(amount: int) -> str:
    sign = "-" if amount < 0 else ""
    whole, cents = divmod(abs(amount), 100)
    return f"{sign}${whole:,}.{cents:02d}"


def _format_rate(rate: Decimal) -> str:
    percent = f"{rate * 100:.3f}".rstrip("0").rstrip(".")
    return f"{percent}%"


def format_tax_breakdown(breakdown: TaxBreakdown) -> List[Dict[str, str]]:
    """
    Render a breakdown as display lines for invoices and emails.

    Zero components are omitted; the secondary tax is labelled PST except
    in Quebec (QST).

    Args:
        breakdown (TaxBreakdown): Computed breakdown

    Returns:
        List[Dict[str, str]]: Lines of {"label", "amount"}
    """
    rates = JURISDICTION_TAX_RATES[breakdown.jurisdiction]
    secondary_label = "QST" if breakdown.jurisdiction == "QC" else "PST"

    lines = [{"label": "Subtotal", "amount": format_minor_units(breakdown.subtotal)}]
    components = (
        ("GST", rates.primary_rate, breakdown.primary),
        (secondary_label, rates.secondary_rate, breakdown.secondary),
        ("HST", rates.combined_rate, breakdown.combined),
    )
    for label, rate, amount in components:
        if rate:
            lines.append({
                "label": f"{label} ({_format_rate(rate)})",
                "amount": format_minor_units(amount),
            })
    lines.append({"label": "Total", "amount": format_minor_units(breakdown.total)})
    return lines
