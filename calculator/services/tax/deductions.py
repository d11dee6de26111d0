"""
Deduction policies: how each regime gets from gross income to taxable income.

A deduction is either a fixed percentage of GROSS income or an absolute
amount supplied by the user. Percentages never compound: pension at 8%
of a ₦1,000,000 gross is ₦80,000 whether or not rent relief was taken
first.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, Mapping, Optional, Tuple

from . import config
from .errors import ConfigurationError, ValidationError, to_money
from .money import ZERO, quantize_money

PERCENTAGE = 'percentage'
ABSOLUTE = 'absolute'

# Deduction names, shared by toggles, amounts and deductions_applied
RENT_RELIEF = 'rent_relief'
PENSION = 'pension'
NHF = 'nhf'
HEALTH_INSURANCE = 'health_insurance'
BUSINESS_EXPENSES = 'business_expenses'


@dataclass(frozen=True)
class Deduction:
    name: str
    kind: str
    rate: Optional[Decimal] = None

    def __post_init__(self):
        if self.kind not in (PERCENTAGE, ABSOLUTE):
            raise ConfigurationError(f"Unknown deduction kind {self.kind!r} for {self.name}")
        if self.kind == PERCENTAGE:
            if self.rate is None or not self.rate.is_finite() or not (0 <= self.rate <= 1):
                raise ConfigurationError(
                    f"Deduction {self.name} needs a rate in [0, 1], got {self.rate}"
                )

    def amount_for(self, gross: Decimal, amounts: Mapping[str, Decimal]) -> Decimal:
        if self.kind == PERCENTAGE:
            return quantize_money(gross * self.rate)

        if self.name not in amounts or amounts[self.name] is None:
            raise ValidationError(self.name, f"Enter an amount for {self.name.replace('_', ' ')}")
        amount = to_money(amounts[self.name], self.name)
        if amount > gross:
            raise ValidationError(
                self.name,
                f"{self.name.replace('_', ' ').capitalize()} cannot be greater than the income it is deducted from",
                amount,
            )
        return quantize_money(amount)


class DeductionPolicy:
    """Ordered list of deductions one regime allows."""

    def __init__(self, deductions: Iterable[Deduction]):
        self.deductions = tuple(deductions)

    def compute_taxable_income(
        self,
        gross: Decimal,
        toggles: Iterable[str],
        amounts: Mapping[str, Decimal],
    ) -> Tuple[Decimal, Dict[str, Decimal]]:
        """
        Args:
            gross: Annual gross income or revenue (>= 0)
            toggles: Names of the deductions the user switched on; names this
                policy does not know are ignored
            amounts: User-supplied amounts for absolute deductions

        Returns:
            (taxable_income, deductions_applied) with taxable income clamped at 0
            and deductions_applied in policy order

        Raises:
            ValidationError: If an enabled absolute deduction is missing,
                negative or larger than gross
        """
        enabled = set(toggles)
        applied = {}

        for deduction in self.deductions:
            if deduction.name in enabled:
                applied[deduction.name] = deduction.amount_for(gross, amounts)

        taxable_income = max(ZERO, gross - sum(applied.values(), ZERO))
        return quantize_money(taxable_income), applied


def paye_policy() -> DeductionPolicy:
    return DeductionPolicy([
        Deduction(RENT_RELIEF, PERCENTAGE, config.get_decimal('RENT_RELIEF_RATE')),
        Deduction(PENSION, PERCENTAGE, config.get_decimal('PENSION_RATE')),
        Deduction(NHF, PERCENTAGE, config.get_decimal('NHF_RATE')),
        Deduction(HEALTH_INSURANCE, PERCENTAGE, config.get_decimal('HEALTH_INSURANCE_RATE')),
    ])


def freelancer_policy() -> DeductionPolicy:
    return DeductionPolicy([
        Deduction(PENSION, PERCENTAGE, config.get_decimal('PENSION_RATE')),
        Deduction(BUSINESS_EXPENSES, ABSOLUTE),
    ])


def company_policy() -> DeductionPolicy:
    return DeductionPolicy([
        Deduction(BUSINESS_EXPENSES, ABSOLUTE),
    ])
