from decimal import Decimal
from typing import List, Tuple

from .bands import BandContribution, BandTable
from .money import ZERO, quantize_money


class ProgressiveCalculator:
    """
    Applies a BandTable to an annual taxable income.

    Each band taxes only the slice of income that falls inside it: income
    below a band's floor contributes nothing to it, income above its
    ceiling fills its full width.
    """

    def __init__(self, band_table: BandTable):
        self.band_table = band_table

    def apply(
        self,
        taxable_income: Decimal,
        include_zero_bands: bool = True,
    ) -> Tuple[Decimal, List[BandContribution]]:
        """
        Calculate progressive tax on taxable income.

        Args:
            taxable_income: Annual taxable income in Naira, already clamped to >= 0
            include_zero_bands: Keep every band in the breakdown (illustrative
                band table). When False only the first band and bands that
                actually hold income are kept (itemized listing).

        Returns:
            (total_tax, breakdown) where total_tax is the exact sum of the
            rounded per-band taxes
        """
        if taxable_income < 0:
            raise ValueError("taxable_income must be clamped to >= 0 before applying bands")

        total_tax = ZERO
        breakdown = []

        for index, band in enumerate(self.band_table):
            amount_in_band = max(ZERO, min(taxable_income - band.min, band.width))
            amount_in_band = quantize_money(amount_in_band)
            tax_in_band = quantize_money(amount_in_band * band.rate)
            total_tax += tax_in_band

            if include_zero_bands or index == 0 or amount_in_band > 0:
                breakdown.append(BandContribution(
                    band=band,
                    amount_in_band=amount_in_band,
                    tax_in_band=tax_in_band,
                ))

        return total_tax, breakdown
