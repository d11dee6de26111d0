"""
Default tax configuration for the Nigeria Tax Act 2025 (effective January 1, 2026).

Regimes covered:
- PAYE / PIT: salaried employees, progressive bands after statutory deductions
- Freelancer / self-employed: same bands, pension and business expenses only
- CIT: flat rate selected by company size
- VAT: flat rate selected by transaction type

Every value below is a default. Deployments override any of them through
the TAXLATOR dict in Django settings, e.g.

    TAXLATOR = {
        "CIT_RATES": {"SMALL": "0", "MEDIUM": "0.20", "LARGE": "0.30"},
        "UPSTREAM_ENABLED": True,
    }

Tables are validated once at startup (see CalculatorConfig.ready); a bad
table is a configuration defect and stops the process.
"""

from decimal import Decimal, InvalidOperation

from django.conf import settings

from .errors import ConfigurationError


# =========================
# PERSONAL INCOME TAX BANDS (2026)
# =========================
# (lower_limit_ngn, upper_limit_ngn, marginal_rate) on annual TAXABLE income.
# The first ₦800,000 sits in a 0% band.

PERSONAL_INCOME_TAX_BANDS_2026 = [
    (Decimal("0"), Decimal("800000"), Decimal("0.00")),
    (Decimal("800000"), Decimal("3000000"), Decimal("0.15")),
    (Decimal("3000000"), Decimal("12000000"), Decimal("0.18")),
    (Decimal("12000000"), Decimal("25000000"), Decimal("0.21")),
    (Decimal("25000000"), Decimal("50000000"), Decimal("0.23")),
    (Decimal("50000000"), Decimal("Infinity"), Decimal("0.25")),
]


# =========================
# DEDUCTIONS
# =========================
# Percentages are always taken from GROSS income, never from what is left
# after earlier deductions.

RENT_RELIEF_RATE = Decimal("0.20")       # CRA, PAYE only
PENSION_RATE = Decimal("0.08")
NHF_RATE = Decimal("0.025")              # National Housing Fund
HEALTH_INSURANCE_RATE = Decimal("0.015")  # NHIS


# =========================
# COMPANIES INCOME TAX
# =========================

CIT_RATES = {
    "SMALL": Decimal("0.00"),
    "MEDIUM": Decimal("0.20"),
    "LARGE": Decimal("0.30"),
}


# =========================
# VAT
# =========================
VAT_RATE = Decimal("0.075")  # 7.5%

VAT_RATES = {
    "Domestic sale/Purchase": VAT_RATE,
    "Digital Services": VAT_RATE,
    "Export/International": Decimal("0.00"),
    "Exempt": Decimal("0.00"),
}

# Exempt supplies are outside the VAT base entirely, not zero-rated
VAT_EXEMPT_TYPES = ["Exempt"]


# =========================
# HISTORY
# =========================
HISTORY_CAPACITY = 50
HISTORY_KEY = "taxlator_history_v1"


# =========================
# UPSTREAM SERVICE
# =========================
UPSTREAM_ENABLED = False
UPSTREAM_BASE_URL = "https://gov-taxlator-api.onrender.com"
UPSTREAM_TIMEOUT = 10  # seconds


# =========================
# METADATA
# =========================
TAX_YEAR = 2026

TAX_DISCLAIMER = (
    "These are estimates only and do not constitute official tax filing with FIRS "
    "(Federal Inland Revenue Service). Consult a licensed tax professional for "
    "accurate tax computation and filing."
)


def get_setting(name):
    """
    Look up a configuration value, preferring settings.TAXLATOR[name]
    over the module default.
    """
    overrides = getattr(settings, 'TAXLATOR', None) or {}
    if name in overrides:
        return overrides[name]
    return globals()[name]


def get_decimal(name):
    """Like get_setting, for values that must be numeric."""
    value = get_setting(name)
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ConfigurationError(f"{name} must be numeric, got {value!r}") from e
