"""Tax and shipping policy applied by the checkout before totals are assembled."""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional

from config import GST_HOME_STATE, SHIPPING_METHODS, TAX_RATE
from errors import ValidationFailedError
from services.totals import Amount, to_money

# US state sales tax rates (state level only)
STATE_TAX_RATES: Dict[str, Decimal] = {
    code: Decimal(rate) for code, rate in {
        "AL": "0.04", "AK": "0.00", "AZ": "0.056", "AR": "0.065", "CA": "0.0725",
        "CO": "0.029", "CT": "0.0635", "DE": "0.00", "FL": "0.06", "GA": "0.04",
        "HI": "0.04", "ID": "0.06", "IL": "0.0625", "IN": "0.07", "IA": "0.06",
        "KS": "0.065", "KY": "0.06", "LA": "0.0445", "ME": "0.055", "MD": "0.06",
        "MA": "0.0625", "MI": "0.06", "MN": "0.06875", "MS": "0.07", "MO": "0.04225",
        "MT": "0.00", "NE": "0.055", "NV": "0.0685", "NH": "0.00", "NJ": "0.06625",
        "NM": "0.05125", "NY": "0.04", "NC": "0.0475", "ND": "0.05", "OH": "0.0575",
        "OK": "0.045", "OR": "0.00", "PA": "0.06", "RI": "0.07", "SC": "0.06",
        "SD": "0.045", "TN": "0.07", "TX": "0.0625", "UT": "0.0485", "VT": "0.06",
        "VA": "0.053", "WA": "0.065", "WV": "0.06", "WI": "0.05", "WY": "0.04",
        "DC": "0.06",
    }.items()
}

# Combined state and local rates for ZIP codes we know; these replace the state rate
ZIP_CODE_TAX_RATES: Dict[str, Decimal] = {
    zip_code: Decimal(rate) for zip_code, rate in {
        "10001": "0.04875",  # New York City
        "90001": "0.0975",   # Los Angeles
        "60601": "0.1025",   # Chicago
        "75001": "0.0825",   # Dallas
        "33101": "0.07",     # Miami
        "02101": "0.0625",   # Boston
        "98101": "0.101",    # Seattle
        "80201": "0.084",    # Denver
        "20001": "0.06",     # Washington DC
        "30301": "0.089",    # Atlanta
    }.items()
}

# India GST: intra-state sales split the standard rate into central and state halves
CGST_RATE = Decimal("0.09")
SGST_RATE = Decimal("0.09")
IGST_RATE = Decimal("0.18")

US_COUNTRY_CODES = ("US", "USA")
INDIA_COUNTRY_CODES = ("IN", "IND")


@dataclass(frozen=True)
class TaxAssessment:
    """Tax charged for one destination, with its named components."""
    rate: Decimal
    amount: Decimal
    system: str
    components: Dict[str, Decimal] = field(default_factory=dict)


def _normalize(value: Optional[str]) -> str:
    return value.strip().upper() if value else ""


def tax_rate_for(
    country: Optional[str],
    state: Optional[str] = None,
    postal_code: Optional[str] = None
) -> Decimal:
    """
    Resolve the fractional tax rate for a shipping destination.

    US destinations use the ZIP code rate when the ZIP is known, otherwise the
    state rate. Indian destinations pay the standard GST rate. Everything else
    uses the configured default rate.
    """
    country = _normalize(country)
    if country in US_COUNTRY_CODES:
        zip_rate = ZIP_CODE_TAX_RATES.get((postal_code or "").strip()[:5])
        if zip_rate is not None:
            return zip_rate
        rate = STATE_TAX_RATES.get(_normalize(state))
        if rate is not None:
            return rate
    elif country in INDIA_COUNTRY_CODES:
        return CGST_RATE + SGST_RATE
    return TAX_RATE


def calculate_tax(subtotal: Amount, rate: Decimal) -> Decimal:
    """Tax is a flat percentage of the pre-discount subtotal."""
    return to_money(Decimal(str(subtotal)) * rate)


def calculate_gst(
    subtotal: Amount,
    state: Optional[str],
    home_state: str = GST_HOME_STATE
) -> TaxAssessment:
    """
    Split Indian GST into its central, state or integrated parts.

    A sale is intra-state when the destination state is the seller's home
    state, or, with no home state configured, whenever a state is given.
    Intra-state sales pay CGST plus SGST, each rounded on its own; inter-state
    sales pay IGST.
    """
    state = _normalize(state)
    intra_state = bool(state) and (not home_state or state == home_state)
    if intra_state:
        components = {
            "cgst": calculate_tax(subtotal, CGST_RATE),
            "sgst": calculate_tax(subtotal, SGST_RATE),
        }
        rate = CGST_RATE + SGST_RATE
    else:
        components = {"igst": calculate_tax(subtotal, IGST_RATE)}
        rate = IGST_RATE
    return TaxAssessment(rate=rate, amount=sum(components.values()), system="gst", components=components)


def assess_tax(
    subtotal: Amount,
    country: Optional[str],
    state: Optional[str] = None,
    postal_code: Optional[str] = None
) -> TaxAssessment:
    """Tax owed on the pre-discount subtotal for a shipping destination."""
    if _normalize(country) in INDIA_COUNTRY_CODES:
        return calculate_gst(subtotal, state)
    rate = tax_rate_for(country, state, postal_code)
    system = "us" if _normalize(country) in US_COUNTRY_CODES else "flat"
    return TaxAssessment(rate=rate, amount=calculate_tax(subtotal, rate), system=system)


def shipping_amount_for(method: str) -> Decimal:
    """
    Look up the flat price of a shipping method.

    Raises:
        ValidationFailedError: If the method is unknown
    """
    amount = SHIPPING_METHODS.get(method.strip().lower())
    if amount is None:
        raise ValidationFailedError(
            f"Unknown shipping method '{method}'. "
            f"Choose one of: {', '.join(sorted(SHIPPING_METHODS))}"
        )
    return amount
