from rest_framework import serializers

from .services.tax import (
    CompanySize,
    Frequency,
    Regime,
    TaxInput,
    VatCalculationType,
    VatTransactionType,
)
from .services.tax.deductions import (
    BUSINESS_EXPENSES,
    HEALTH_INSURANCE,
    NHF,
    PENSION,
    RENT_RELIEF,
)


def money_field(**kwargs):
    return serializers.DecimalField(max_digits=20, decimal_places=2, **kwargs)


def rate_field(**kwargs):
    return serializers.DecimalField(max_digits=6, decimal_places=4, **kwargs)


# ======================================================
# Request serializers
# ======================================================
class TaxCalculateSerializer(serializers.Serializer):
    """
    Request body for PAYE/PIT, Freelancer and Company Income Tax.

    Only types are checked here; ranges, required amounts and expenses
    exceeding income are checked by the tax engine itself.
    """
    TOGGLES = [RENT_RELIEF, PENSION, NHF, HEALTH_INSURANCE, BUSINESS_EXPENSES]

    tax_type = serializers.ChoiceField(
        choices=[Regime.PAYE_PIT, Regime.FREELANCER, Regime.CIT],
        help_text="PAYE/PIT, FREELANCER or CIT"
    )
    gross_income = money_field(
        required=False, allow_null=True,
        help_text="Gross income in Naira (PAYE/PIT, FREELANCER)"
    )
    revenue = money_field(
        required=False, allow_null=True,
        help_text="Company revenue in Naira (CIT)"
    )
    frequency = serializers.ChoiceField(
        choices=Frequency.choices, default=Frequency.ANNUAL,
        help_text="Whether the amounts are annual or monthly"
    )
    rent_relief = serializers.BooleanField(
        default=False, help_text="Rent relief / CRA, 20% of gross (PAYE/PIT)"
    )
    pension = serializers.BooleanField(
        default=False, help_text="Pension contribution, 8% of gross"
    )
    nhf = serializers.BooleanField(
        default=False, help_text="National Housing Fund, 2.5% of gross (PAYE/PIT)"
    )
    health_insurance = serializers.BooleanField(
        default=False, help_text="Health insurance, 1.5% of gross (PAYE/PIT)"
    )
    business_expenses = serializers.BooleanField(
        default=False, help_text="Deduct business expenses (FREELANCER, CIT)"
    )
    expenses = money_field(
        required=False, allow_null=True,
        help_text="Total business expenses in Naira"
    )
    company_size = serializers.ChoiceField(
        choices=CompanySize.choices, required=False, allow_null=True,
        help_text="SMALL (0%), MEDIUM (20%) or LARGE (30%) - CIT only"
    )

    def to_tax_input(self) -> TaxInput:
        data = self.validated_data
        regime = data['tax_type']
        amounts = {}
        if data.get('expenses') is not None:
            amounts[BUSINESS_EXPENSES] = data['expenses']

        return TaxInput(
            regime=regime,
            gross=data.get('revenue') if regime == Regime.CIT else data.get('gross_income'),
            frequency=data['frequency'],
            toggles=frozenset(name for name in self.TOGGLES if data.get(name)),
            amounts=amounts,
            company_size=data.get('company_size'),
        )


class VatCalculateSerializer(serializers.Serializer):
    transaction_amount = money_field(
        required=False, allow_null=True,
        help_text="Transaction amount in Naira"
    )
    calculation_type = serializers.ChoiceField(
        choices=VatCalculationType.choices, default=VatCalculationType.ADD,
        help_text="'add' treats the amount as VAT-exclusive, 'remove' as VAT-inclusive"
    )
    transaction_type = serializers.ChoiceField(
        choices=VatTransactionType.choices, required=False, allow_null=True,
        help_text="Selects the VAT rate"
    )

    def to_tax_input(self) -> TaxInput:
        data = self.validated_data
        return TaxInput(
            regime=Regime.VAT,
            gross=data.get('transaction_amount'),
            calculation_type=data['calculation_type'],
            transaction_type=data.get('transaction_type'),
        )


# ======================================================
# Response serializers
# ======================================================
class BandSerializer(serializers.Serializer):
    min = money_field()
    max = serializers.SerializerMethodField()
    rate = rate_field()
    label = serializers.CharField()

    def get_max(self, band):
        return None if band.is_unbounded else str(band.max)


class BandContributionSerializer(serializers.Serializer):
    min = money_field(source='band.min')
    max = serializers.SerializerMethodField()
    rate = rate_field(source='band.rate')
    label = serializers.CharField(source='band.label')
    amount_in_band = money_field()
    tax_in_band = money_field()

    def get_max(self, contribution):
        band = contribution.band
        return None if band.is_unbounded else str(band.max)


class TaxResultSerializer(serializers.Serializer):
    """
    Serializer for a calculated (or reconciled) tax result.

    All monetary values are in Naira, annual unless named monthly.
    `breakdown` itemizes the bands that hold income; `tax_bands` lists
    the whole table for the illustrative band view.
    """
    tax_type = serializers.CharField(source='regime')
    gross = money_field(help_text="Annual gross income, revenue or transaction amount")
    taxable_income = money_field()
    total_tax = money_field(help_text="Total tax (or VAT) due")
    monthly_tax = money_field()
    net_income = money_field()
    effective_rate = rate_field(help_text="Total tax as a fraction of gross")
    deductions_applied = serializers.DictField(child=money_field())
    breakdown = BandContributionSerializer(many=True)
    tax_bands = BandContributionSerializer(many=True)
    extras = serializers.DictField(
        child=serializers.DecimalField(max_digits=20, decimal_places=4),
        help_text="Regime-specific figures (CIT rate and profit, VAT amounts)"
    )


class HistoryEntrySerializer(serializers.Serializer):
    id = serializers.CharField()
    type = serializers.CharField()
    created_at = serializers.CharField()
    input = serializers.JSONField()
    result = serializers.JSONField()
