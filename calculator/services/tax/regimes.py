"""
Tax regimes: PAYE/PIT, Freelancer, Companies Income Tax and VAT.

Each regime is a pure function of its TaxInput. Progressive regimes
compose a DeductionPolicy with the PIT band table; CIT and VAT apply a
single flat rate picked from a closed enumeration. All results are on
the annual convention (monthly_tax == total_tax / 12).
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from django.db import models

from . import config
from .bands import UNBOUNDED, Band, BandContribution, BandTable
from .deductions import company_policy, freelancer_policy, paye_policy
from .errors import ConfigurationError, ValidationError, to_money
from .frequency import Frequency, FrequencyConverter
from .money import ZERO, quantize_money
from .progressive import ProgressiveCalculator

logger = logging.getLogger(__name__)


class Regime(models.TextChoices):
    PAYE_PIT = 'PAYE/PIT', 'PAYE / PIT'
    FREELANCER = 'FREELANCER', 'Freelancer'
    CIT = 'CIT', 'Company Income Tax'
    VAT = 'VAT', 'VAT'


class CompanySize(models.TextChoices):
    SMALL = 'SMALL', 'Small Company'
    MEDIUM = 'MEDIUM', 'Medium Company'
    LARGE = 'LARGE', 'Large Company'


class VatCalculationType(models.TextChoices):
    ADD = 'add', 'Add VAT'
    REMOVE = 'remove', 'Remove VAT'


class VatTransactionType(models.TextChoices):
    DOMESTIC = 'Domestic sale/Purchase', 'Domestic sale/Purchase'
    DIGITAL_SERVICES = 'Digital Services', 'Digital Services'
    EXPORT = 'Export/International', 'Export/International'
    EXEMPT = 'Exempt', 'Exempt Items'


# =========================
# INPUT / RESULT
# =========================
@dataclass(frozen=True)
class TaxInput:
    """
    One calculation request. `gross` is gross income (PAYE/PIT, Freelancer),
    revenue (CIT) or the transaction amount (VAT), in the given frequency.
    Values are validated by the regime, not here.
    """
    regime: str
    gross: Any
    frequency: str = Frequency.ANNUAL
    toggles: FrozenSet[str] = frozenset()
    amounts: Mapping[str, Any] = field(default_factory=dict)
    company_size: Optional[str] = None
    transaction_type: Optional[str] = None
    calculation_type: Optional[str] = None

    def __post_init__(self):
        # private copies so later edits to the caller's objects cannot leak in
        object.__setattr__(self, 'toggles', frozenset(self.toggles))
        object.__setattr__(self, 'amounts', dict(self.amounts))

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'tax_type': str(self.regime),
            'gross': str(self.gross) if self.gross is not None else None,
            'frequency': str(self.frequency),
            'deductions': sorted(self.toggles),
            'amounts': {k: str(v) for k, v in self.amounts.items()},
        }
        for name in ('company_size', 'transaction_type', 'calculation_type'):
            value = getattr(self, name)
            if value is not None:
                data[name] = str(value)
        return data


@dataclass(frozen=True)
class TaxResult:
    regime: str
    gross: Decimal
    taxable_income: Decimal
    total_tax: Decimal
    monthly_tax: Decimal
    breakdown: Tuple[BandContribution, ...] = ()
    deductions_applied: Dict[str, Decimal] = field(default_factory=dict)
    # every band of the table, zero rows included, for the illustrative listing
    tax_bands: Tuple[BandContribution, ...] = ()
    extras: Dict[str, Decimal] = field(default_factory=dict)

    @property
    def net_income(self) -> Decimal:
        return max(ZERO, self.gross - self.total_tax)

    @property
    def effective_rate(self) -> Decimal:
        if self.gross <= 0:
            return Decimal("0.0000")
        return (self.total_tax / self.gross).quantize(Decimal("0.0001"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tax_type': str(self.regime),
            'gross': str(self.gross),
            'taxable_income': str(self.taxable_income),
            'total_tax': str(self.total_tax),
            'monthly_tax': str(self.monthly_tax),
            'net_income': str(self.net_income),
            'effective_rate': str(self.effective_rate),
            'breakdown': [c.to_dict() for c in self.breakdown],
            'tax_bands': [c.to_dict() for c in self.tax_bands],
            'deductions_applied': {k: str(v) for k, v in self.deductions_applied.items()},
            'extras': {k: str(v) for k, v in self.extras.items()},
        }


# =========================
# REGIMES
# =========================
class TaxRegime:
    regime = None
    gross_field = 'gross_income'

    def calculate(self, tax_input: TaxInput) -> TaxResult:
        raise NotImplementedError

    def _check_regime(self, tax_input):
        if tax_input.regime != self.regime:
            raise ValidationError(
                'tax_type',
                f"{self.__class__.__name__} cannot calculate {tax_input.regime}",
                tax_input.regime,
            )

    def _annual(self, amount, frequency):
        if frequency not in Frequency.values:
            raise ValidationError('frequency', f"Unknown frequency: {frequency}", frequency)
        return FrequencyConverter.to_annual(amount, frequency)

    def _annual_amounts(self, tax_input):
        amounts = {}
        for name, raw in tax_input.amounts.items():
            if name in tax_input.toggles and raw is not None:
                amounts[name] = self._annual(to_money(raw, name), tax_input.frequency)
        return amounts


class ProgressiveRegime(TaxRegime):
    """Deductions off gross, then progressive bands on what is left."""

    def __init__(self, policy, band_table: BandTable):
        self.policy = policy
        self.band_table = band_table
        self.calculator = ProgressiveCalculator(band_table)

    def calculate(self, tax_input: TaxInput) -> TaxResult:
        self._check_regime(tax_input)

        gross = to_money(tax_input.gross, self.gross_field)
        annual_gross = self._annual(gross, tax_input.frequency)

        taxable_income, applied = self.policy.compute_taxable_income(
            annual_gross,
            tax_input.toggles,
            self._annual_amounts(tax_input),
        )

        total_tax, breakdown = self.calculator.apply(taxable_income, include_zero_bands=False)
        _, tax_bands = self.calculator.apply(taxable_income, include_zero_bands=True)

        return TaxResult(
            regime=self.regime,
            gross=quantize_money(annual_gross),
            taxable_income=taxable_income,
            total_tax=total_tax,
            monthly_tax=FrequencyConverter.to_monthly(total_tax),
            breakdown=tuple(breakdown),
            deductions_applied=applied,
            tax_bands=tuple(tax_bands),
        )


class PayePitRegime(ProgressiveRegime):
    regime = Regime.PAYE_PIT


class FreelancerRegime(ProgressiveRegime):
    regime = Regime.FREELANCER


class CompanyIncomeTaxRegime(TaxRegime):
    """
    Flat CIT on profit (revenue less business expenses), rate picked by
    company size. The breakdown holds a single flat-rate row.
    """
    regime = Regime.CIT
    gross_field = 'revenue'

    def __init__(self, policy, rates: Mapping[str, Decimal]):
        self.policy = policy
        self.rates = dict(rates)

    def calculate(self, tax_input: TaxInput) -> TaxResult:
        self._check_regime(tax_input)

        revenue = to_money(tax_input.gross, self.gross_field)
        if not tax_input.company_size:
            raise ValidationError('company_size', "Select company size")
        if tax_input.company_size not in self.rates:
            raise ValidationError(
                'company_size',
                f"Company size must be one of {', '.join(self.rates)}",
                tax_input.company_size,
            )
        rate = self.rates[tax_input.company_size]

        annual_revenue = self._annual(revenue, tax_input.frequency)
        profit, applied = self.policy.compute_taxable_income(
            annual_revenue,
            tax_input.toggles,
            self._annual_amounts(tax_input),
        )

        tax = quantize_money(profit * rate)
        row = BandContribution(
            band=Band(min=Decimal("0"), max=UNBOUNDED, rate=rate),
            amount_in_band=profit,
            tax_in_band=tax,
        )

        return TaxResult(
            regime=self.regime,
            gross=quantize_money(annual_revenue),
            taxable_income=profit,
            total_tax=tax,
            monthly_tax=FrequencyConverter.to_monthly(tax),
            breakdown=(row,),
            deductions_applied=applied,
            tax_bands=(row,),
            extras={
                'rate': rate,
                'profit': profit,
                'profit_after_tax': max(ZERO, profit - tax),
            },
        )


class VatRegime(TaxRegime):
    """
    VAT on a single transaction.

    add:    amount is VAT-exclusive; vat = amount * rate
    remove: amount is VAT-inclusive; excluding = amount / (1 + rate)

    Exempt supplies are outside the base: no VAT and a zero taxable amount.
    """
    regime = Regime.VAT
    gross_field = 'transaction_amount'

    def __init__(self, rates: Mapping[str, Decimal], exempt_types):
        self.rates = dict(rates)
        self.exempt_types = frozenset(exempt_types)

    def calculate(self, tax_input: TaxInput) -> TaxResult:
        self._check_regime(tax_input)

        amount = quantize_money(to_money(tax_input.gross, self.gross_field))

        transaction_type = tax_input.transaction_type
        if not transaction_type:
            raise ValidationError('transaction_type', "Select a transaction type")
        if transaction_type not in self.rates:
            raise ValidationError(
                'transaction_type',
                f"Transaction type must be one of {', '.join(self.rates)}",
                transaction_type,
            )

        calculation_type = tax_input.calculation_type or VatCalculationType.ADD
        if calculation_type not in VatCalculationType.values:
            raise ValidationError(
                'calculation_type',
                "Calculation type must be 'add' or 'remove'",
                calculation_type,
            )

        rate = self.rates[transaction_type]
        exempt = transaction_type in self.exempt_types

        if exempt:
            vat_amount = ZERO
            excluding_vat = including_vat = amount
        elif calculation_type == VatCalculationType.ADD:
            excluding_vat = amount
            vat_amount = quantize_money(amount * rate)
            including_vat = amount + vat_amount
        else:
            including_vat = amount
            excluding_vat = quantize_money(amount / (1 + rate))
            vat_amount = amount - excluding_vat

        breakdown = ()
        if not exempt:
            breakdown = (BandContribution(
                band=Band(min=Decimal("0"), max=UNBOUNDED, rate=rate),
                amount_in_band=excluding_vat,
                tax_in_band=vat_amount,
            ),)

        return TaxResult(
            regime=self.regime,
            gross=amount,
            taxable_income=ZERO if exempt else excluding_vat,
            total_tax=vat_amount,
            monthly_tax=FrequencyConverter.to_monthly(vat_amount),
            breakdown=breakdown,
            tax_bands=breakdown,
            extras={
                'vat_rate': rate,
                'vat_amount': vat_amount,
                'excluding_vat': excluding_vat,
                'including_vat': including_vat,
            },
        )


# =========================
# CONFIGURED REGIMES
# =========================
def _rate_table(name, allowed):
    table = config.get_setting(name)
    rates = {}
    for key, value in table.items():
        if key not in allowed:
            raise ConfigurationError(
                f"{name} references unknown key {key!r}; expected one of {sorted(allowed)}"
            )
        try:
            rate = Decimal(str(value))
        except ArithmeticError as e:
            raise ConfigurationError(f"{name}[{key!r}] is not a number: {value!r}") from e
        if not rate.is_finite() or not (0 <= rate <= 1):
            raise ConfigurationError(f"{name}[{key!r}] rate {rate} is outside [0, 1]")
        rates[key] = rate

    missing = set(allowed) - set(rates)
    if missing:
        raise ConfigurationError(f"{name} has no rate for {sorted(missing)}")
    return rates


def load_pit_band_table() -> BandTable:
    return BandTable.from_rows(config.get_setting('PERSONAL_INCOME_TAX_BANDS_2026'))


@lru_cache(maxsize=None)
def build_regimes() -> Dict[str, TaxRegime]:
    """
    Build every regime from configuration, once per process.

    Raises:
        ConfigurationError: If any configured table is invalid
    """
    band_table = load_pit_band_table()

    exempt_types = config.get_setting('VAT_EXEMPT_TYPES')
    unknown = set(exempt_types) - set(VatTransactionType.values)
    if unknown:
        raise ConfigurationError(f"VAT_EXEMPT_TYPES references unknown types {sorted(unknown)}")

    return {
        Regime.PAYE_PIT.value: PayePitRegime(paye_policy(), band_table),
        Regime.FREELANCER.value: FreelancerRegime(freelancer_policy(), band_table),
        Regime.CIT.value: CompanyIncomeTaxRegime(
            company_policy(),
            _rate_table('CIT_RATES', CompanySize.values),
        ),
        Regime.VAT.value: VatRegime(
            _rate_table('VAT_RATES', VatTransactionType.values),
            exempt_types,
        ),
    }


def reset_regimes():
    build_regimes.cache_clear()


def calculate(tax_input: TaxInput) -> TaxResult:
    """
    Calculate tax for any supported regime.

    Raises:
        ValidationError: If the input is malformed or out of range
    """
    regime = build_regimes().get(str(tax_input.regime))
    if regime is None:
        raise ValidationError(
            'tax_type',
            f"Tax type must be one of {', '.join(Regime.values)}",
            tax_input.regime,
        )

    result = regime.calculate(tax_input)
    logger.info(
        f"Tax calculated - Type: {result.regime}, Gross: {result.gross}, "
        f"Total tax: {result.total_tax}"
    )
    return result
