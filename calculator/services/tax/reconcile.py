"""
Reconciling a locally computed TaxResult with the remote service's answer.

The remote response is loosely typed. Rather than probing it ad hoc, the
adapter below declares which keys it understands and which TaxResult
field each one feeds. Unknown keys are ignored; known keys with
non-numeric values are treated as absent.

Reconciliation is pick-one: a well-formed upstream result (one with a
numeric total under any alias) wins, and only fields it leaves out are
backfilled from the local result. Disagreeing totals are not arbitrated.
"""
import logging
from dataclasses import replace
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional

from .bands import UNBOUNDED, Band, BandContribution
from .errors import MAX_AMOUNT
from .frequency import FrequencyConverter
from .money import ZERO, quantize_money
from .regimes import TaxResult

logger = logging.getLogger(__name__)

# canonical field -> recognised upstream keys, first match wins
TOTAL_TAX_ALIASES = ('totalTax', 'taxAmount', 'taxPayable', 'totalAnnualTax', 'annualTax', 'tax')
MONTHLY_TAX_ALIASES = ('monthlyTax',)
TAXABLE_INCOME_ALIASES = ('taxableIncome', 'taxableProfit')
GROSS_ALIASES = ('annualGrossIncome', 'grossIncome', 'revenue', 'transactionAmount')
BREAKDOWN_ALIASES = ('breakdown', 'taxBands', 'bands')
DEDUCTIONS_ALIASES = ('deductions',)

EXTRA_ALIASES = {
    'profit': ('profit', 'taxableProfit'),
    'profit_after_tax': ('profitAfterTax', 'netProfit'),
    'rate': ('rate', 'taxRate', 'citRate'),
    'vat_rate': ('vatRate',),
    'vat_amount': ('vatAmount',),
    'excluding_vat': ('excludingVat',),
    'including_vat': ('includingVat',),
}

# breakdown row field -> recognised keys
ROW_MIN_ALIASES = ('min', 'from', 'lower')
ROW_MAX_ALIASES = ('max', 'to', 'upper')
ROW_RATE_ALIASES = ('rate', 'percent')
ROW_AMOUNT_ALIASES = ('taxableAmount', 'amountInBand', 'amount')
ROW_TAX_ALIASES = ('tax', 'taxInBand')


def coerce_number(value: Any) -> Optional[Decimal]:
    """
    Read a number out of an upstream value.

    Numbers and numeric-looking strings ("1,250.00") are accepted;
    booleans, blanks, non-finite values, magnitudes above MAX_AMOUNT and
    anything else give None.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, str):
            cleaned = value.replace(',', '').replace('₦', '').strip()
            if not cleaned:
                return None
            number = Decimal(cleaned)
        elif isinstance(value, (int, float, Decimal)):
            number = Decimal(str(value))
        else:
            return None
    except InvalidOperation:
        return None
    if not number.is_finite() or abs(number) > MAX_AMOUNT:
        return None
    return number


def _non_negative(value: Any) -> Optional[Decimal]:
    # upstream figures are amounts or rates, never negative
    number = coerce_number(value)
    if number is None or number < 0:
        return None
    return number


def _first_number(data: Mapping, aliases) -> Optional[Decimal]:
    for key in aliases:
        if key in data:
            number = _non_negative(data[key])
            if number is not None:
                return number
    return None


def _parse_rate(value: Optional[Decimal]) -> Optional[Decimal]:
    # "15" and 0.15 both mean fifteen percent
    if value is None:
        return None
    if value > 1:
        value = value / 100
    return value if value <= 1 else None


def _parse_breakdown(rows: Any) -> Optional[List[BandContribution]]:
    if not isinstance(rows, list) or not rows:
        return None

    parsed = []
    for row in rows:
        if not isinstance(row, Mapping):
            return None
        tax = _first_number(row, ROW_TAX_ALIASES)
        if tax is None:
            return None
        lower = _first_number(row, ROW_MIN_ALIASES)
        upper = _first_number(row, ROW_MAX_ALIASES)
        rate = _parse_rate(_first_number(row, ROW_RATE_ALIASES))
        amount = _first_number(row, ROW_AMOUNT_ALIASES)
        parsed.append(BandContribution(
            band=Band(
                min=lower if lower is not None else ZERO,
                max=upper if upper is not None else UNBOUNDED,
                rate=rate if rate is not None else ZERO,
            ),
            amount_in_band=quantize_money(amount) if amount is not None else ZERO,
            tax_in_band=quantize_money(tax),
        ))
    return parsed


def _parse_deductions(data: Any) -> Optional[Dict[str, Decimal]]:
    if not isinstance(data, Mapping):
        return None
    applied = {}
    for name, value in data.items():
        number = _non_negative(value)
        if number is not None:
            applied[str(name)] = quantize_money(number)
    return applied or None


def adapt_upstream(payload: Any) -> Dict[str, Any]:
    """
    Map an upstream response onto canonical TaxResult fields.

    Returns:
        dict holding only the fields the payload actually supplied, with
        valid values. An empty dict means nothing usable was found.
    """
    if not isinstance(payload, Mapping):
        return {}

    fields = {}

    for name, aliases in (
        ('total_tax', TOTAL_TAX_ALIASES),
        ('monthly_tax', MONTHLY_TAX_ALIASES),
        ('taxable_income', TAXABLE_INCOME_ALIASES),
        ('gross', GROSS_ALIASES),
    ):
        number = _first_number(payload, aliases)
        if number is not None:
            fields[name] = quantize_money(number)

    for key in BREAKDOWN_ALIASES:
        breakdown = _parse_breakdown(payload.get(key))
        if breakdown is not None:
            fields['breakdown'] = tuple(breakdown)
            break

    for key in DEDUCTIONS_ALIASES:
        deductions = _parse_deductions(payload.get(key))
        if deductions is not None:
            fields['deductions_applied'] = deductions
            break

    extras = {}
    for name, aliases in EXTRA_ALIASES.items():
        number = _first_number(payload, aliases)
        if number is not None:
            extras[name] = _parse_rate(number) if name in ('rate', 'vat_rate') else quantize_money(number)
    if extras:
        fields['extras'] = extras

    return fields


def reconcile(
    local: Optional[TaxResult],
    upstream: Optional[Mapping[str, Any]],
    regime: Optional[str] = None,
) -> TaxResult:
    """
    Pick the result to display.

    Args:
        local: Result computed by this engine, if any
        upstream: Raw response data from the remote service, if any
        regime: Regime tag used when there is no local result to take it from

    Returns:
        TaxResult: upstream values when upstream is well formed (backfilled
        from local where upstream is silent), otherwise local

    Raises:
        ValueError: If neither candidate is usable
    """
    fields = adapt_upstream(upstream) if upstream is not None else {}

    if 'total_tax' not in fields:
        if upstream is not None:
            logger.warning("Upstream result has no numeric total tax; using local result")
        if local is None:
            raise ValueError("reconcile() needs a local result or a well-formed upstream result")
        return local

    total_tax = fields['total_tax']
    monthly_tax = fields.get('monthly_tax', FrequencyConverter.to_monthly(total_tax))

    if local is None:
        if regime is None:
            raise ValueError("regime is required when reconciling without a local result")
        return TaxResult(
            regime=regime,
            gross=fields.get('gross', ZERO),
            taxable_income=fields.get('taxable_income', ZERO),
            total_tax=total_tax,
            monthly_tax=monthly_tax,
            breakdown=fields.get('breakdown', ()),
            deductions_applied=fields.get('deductions_applied', {}),
            tax_bands=fields.get('breakdown', ()),
            extras=fields.get('extras', {}),
        )

    extras = dict(local.extras)
    extras.update(fields.get('extras', {}))

    return replace(
        local,
        gross=fields.get('gross', local.gross),
        taxable_income=fields.get('taxable_income', local.taxable_income),
        total_tax=total_tax,
        monthly_tax=monthly_tax,
        breakdown=fields.get('breakdown', local.breakdown),
        deductions_applied=dict(fields.get('deductions_applied', local.deductions_applied)),
        extras=extras,
    )
