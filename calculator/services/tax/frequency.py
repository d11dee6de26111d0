from decimal import Decimal

from django.db import models

from .money import MONTHS_PER_YEAR, quantize_money


class Frequency(models.TextChoices):
    ANNUAL = 'annual', 'Annual'
    MONTHLY = 'monthly', 'Monthly'


class FrequencyConverter:
    """Annual <-> monthly normalization. The engine always computes on annual figures."""

    @staticmethod
    def to_annual(amount: Decimal, frequency: str) -> Decimal:
        if frequency == Frequency.MONTHLY:
            return amount * MONTHS_PER_YEAR
        if frequency == Frequency.ANNUAL:
            return amount
        raise ValueError(f"Unknown frequency: {frequency}")

    @staticmethod
    def to_monthly(annual_amount: Decimal) -> Decimal:
        return quantize_money(annual_amount / MONTHS_PER_YEAR)
