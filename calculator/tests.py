from decimal import Decimal
from unittest import mock

import requests
from django.contrib.sessions.backends.db import SessionStore
from django.test import SimpleTestCase, TestCase, override_settings
from rest_framework import status
from rest_framework.test import APITestCase

from .services.history import HistoryEntry, HistoryStore
from .services.tax import (
    UNBOUNDED,
    Band,
    BandTable,
    ConfigurationError,
    FrequencyConverter,
    ProgressiveCalculator,
    TaxInput,
    UpstreamUnavailable,
    ValidationError,
    adapt_upstream,
    build_regimes,
    calculate,
    load_pit_band_table,
    reconcile,
)
from .services.tax.deductions import (
    ABSOLUTE,
    PERCENTAGE,
    Deduction,
    DeductionPolicy,
    paye_policy,
)
from .services.tax.errors import to_money
from .services.upstream import (
    ApiSession,
    TaxlatorApiClient,
    build_upstream_payload,
    fetch_upstream_result,
)


def paye(gross, *toggles, **kwargs):
    return TaxInput(regime='PAYE/PIT', gross=gross, toggles=frozenset(toggles), **kwargs)


def freelancer(gross, *toggles, **kwargs):
    return TaxInput(regime='FREELANCER', gross=gross, toggles=frozenset(toggles), **kwargs)


def company(revenue, company_size='MEDIUM', **kwargs):
    return TaxInput(regime='CIT', gross=revenue, company_size=company_size, **kwargs)


def vat(amount, calculation_type='add', transaction_type='Domestic sale/Purchase'):
    return TaxInput(
        regime='VAT',
        gross=amount,
        calculation_type=calculation_type,
        transaction_type=transaction_type,
    )


class BandTableTest(SimpleTestCase):
    """Test band table validation"""

    def test_default_pit_table_is_valid(self):
        table = load_pit_band_table()
        self.assertEqual(len(table), 6)
        self.assertEqual(table[0].min, Decimal('0'))
        self.assertEqual(table[0].rate, Decimal('0'))
        self.assertTrue(table[5].is_unbounded)
        self.assertEqual(table[5].rate, Decimal('0.25'))

    def test_from_rows_accepts_strings_and_none(self):
        table = BandTable.from_rows([
            ('0', '1000', '0.1'),
            ('1000', None, '0.2'),
        ])
        self.assertEqual(table[1].max, UNBOUNDED)
        self.assertEqual(table[1].rate, Decimal('0.2'))

    def test_first_band_must_start_at_zero(self):
        with self.assertRaises(ConfigurationError):
            BandTable.from_rows([(100, None, '0.1')])

    def test_gap_between_bands(self):
        with self.assertRaises(ConfigurationError):
            BandTable.from_rows([(0, 1000, '0.1'), (1500, None, '0.2')])

    def test_overlapping_bands(self):
        with self.assertRaises(ConfigurationError):
            BandTable.from_rows([(0, 1000, '0.1'), (900, None, '0.2')])

    def test_last_band_must_be_unbounded(self):
        with self.assertRaises(ConfigurationError):
            BandTable.from_rows([(0, 1000, '0.1'), (1000, 2000, '0.2')])

    def test_only_last_band_unbounded(self):
        with self.assertRaises(ConfigurationError):
            BandTable.from_rows([(0, None, '0.1'), (1000, None, '0.2')])

    def test_rate_above_one(self):
        with self.assertRaises(ConfigurationError):
            BandTable.from_rows([(0, None, '1.5')])

    def test_negative_rate(self):
        with self.assertRaises(ConfigurationError):
            BandTable.from_rows([(0, None, '-0.1')])

    def test_malformed_row(self):
        with self.assertRaises(ConfigurationError):
            BandTable.from_rows([(0, 'lots', '0.1')])

    def test_empty_table(self):
        with self.assertRaises(ConfigurationError):
            BandTable([])

    def test_band_labels(self):
        table = load_pit_band_table()
        self.assertEqual(table[0].label, "First ₦800,000")
        self.assertEqual(table[1].label, "₦800,000 - ₦3,000,000")
        self.assertEqual(table[5].label, "Above ₦50,000,000")


class ProgressiveCalculatorTest(SimpleTestCase):
    """Test progressive banding"""

    def setUp(self):
        self.calculator = ProgressiveCalculator(load_pit_band_table())

    def test_zero_income(self):
        total, breakdown = self.calculator.apply(Decimal('0'))
        self.assertEqual(total, Decimal('0'))
        self.assertEqual(len(breakdown), 6)
        for row in breakdown:
            self.assertEqual(row.amount_in_band, Decimal('0'))
            self.assertEqual(row.tax_in_band, Decimal('0'))

    def test_income_inside_exempt_band(self):
        total, _ = self.calculator.apply(Decimal('720000'))
        self.assertEqual(total, Decimal('0'))

    def test_five_million(self):
        # 2.2m @ 15% + 2m @ 18%
        total, breakdown = self.calculator.apply(Decimal('5000000'))
        self.assertEqual(total, Decimal('690000.00'))
        self.assertEqual(breakdown[1].amount_in_band, Decimal('2200000.00'))
        self.assertEqual(breakdown[1].tax_in_band, Decimal('330000.00'))
        self.assertEqual(breakdown[2].amount_in_band, Decimal('2000000.00'))
        self.assertEqual(breakdown[2].tax_in_band, Decimal('360000.00'))
        self.assertEqual(breakdown[3].amount_in_band, Decimal('0'))

    def test_every_band_saturated(self):
        total, breakdown = self.calculator.apply(Decimal('60000000'))
        self.assertEqual(total, Decimal('12930000.00'))
        self.assertEqual(breakdown[5].amount_in_band, Decimal('10000000.00'))

    def test_itemized_listing_keeps_first_and_nonzero_bands(self):
        total, breakdown = self.calculator.apply(Decimal('5000000'), include_zero_bands=False)
        self.assertEqual(total, Decimal('690000.00'))
        self.assertEqual(len(breakdown), 3)
        self.assertEqual(breakdown[0].band.min, Decimal('0'))

        total, breakdown = self.calculator.apply(Decimal('0'), include_zero_bands=False)
        self.assertEqual(len(breakdown), 1)

    def test_total_equals_sum_of_bands(self):
        for income in ['0', '1', '799999.99', '800000.01', '3333333.33',
                       '12000000', '24999999.99', '77777777.77']:
            total, breakdown = self.calculator.apply(Decimal(income))
            self.assertEqual(total, sum(row.tax_in_band for row in breakdown))

    def test_tax_never_decreases_with_income(self):
        previous = Decimal('0')
        for step in range(0, 70000001, 250000):
            total, _ = self.calculator.apply(Decimal(step))
            self.assertGreaterEqual(total, previous)
            previous = total

    def test_negative_income_is_rejected(self):
        with self.assertRaises(ValueError):
            self.calculator.apply(Decimal('-1'))


class DeductionPolicyTest(SimpleTestCase):
    """Test deduction composition"""

    def test_percentages_do_not_compound(self):
        taxable, applied = paye_policy().compute_taxable_income(
            Decimal('1000000'), {'rent_relief', 'pension'}, {}
        )
        self.assertEqual(applied['rent_relief'], Decimal('200000.00'))
        self.assertEqual(applied['pension'], Decimal('80000.00'))
        self.assertEqual(taxable, Decimal('720000.00'))

    def test_disabled_deductions_are_not_applied(self):
        taxable, applied = paye_policy().compute_taxable_income(
            Decimal('1000000'), set(), {}
        )
        self.assertEqual(applied, {})
        self.assertEqual(taxable, Decimal('1000000.00'))

    def test_all_paye_deductions(self):
        taxable, applied = paye_policy().compute_taxable_income(
            Decimal('1000000'), {'rent_relief', 'pension', 'nhf', 'health_insurance'}, {}
        )
        self.assertEqual(list(applied), ['rent_relief', 'pension', 'nhf', 'health_insurance'])
        self.assertEqual(applied['nhf'], Decimal('25000.00'))
        self.assertEqual(applied['health_insurance'], Decimal('15000.00'))
        self.assertEqual(taxable, Decimal('680000.00'))

    def test_taxable_income_clamped_at_zero(self):
        policy = DeductionPolicy([
            Deduction('pension', PERCENTAGE, Decimal('0.08')),
            Deduction('business_expenses', ABSOLUTE),
        ])
        taxable, applied = policy.compute_taxable_income(
            Decimal('100000'), {'pension', 'business_expenses'}, {'business_expenses': Decimal('100000')}
        )
        self.assertEqual(applied['business_expenses'], Decimal('100000.00'))
        self.assertEqual(taxable, Decimal('0'))

    def test_absolute_amount_above_gross_is_rejected(self):
        policy = DeductionPolicy([Deduction('business_expenses', ABSOLUTE)])
        with self.assertRaises(ValidationError) as ctx:
            policy.compute_taxable_income(
                Decimal('100'), {'business_expenses'}, {'business_expenses': Decimal('101')}
            )
        self.assertEqual(ctx.exception.field, 'business_expenses')

    def test_enabled_absolute_amount_must_be_given(self):
        policy = DeductionPolicy([Deduction('business_expenses', ABSOLUTE)])
        with self.assertRaises(ValidationError):
            policy.compute_taxable_income(Decimal('100'), {'business_expenses'}, {})

    def test_percentage_rate_must_be_a_fraction(self):
        with self.assertRaises(ConfigurationError):
            Deduction('pension', PERCENTAGE, Decimal('8'))


class PayePitRegimeTest(SimpleTestCase):
    """Test PAYE / PIT calculations"""

    def test_rent_relief_and_pension(self):
        result = calculate(paye('5000000', 'rent_relief', 'pension'))
        self.assertEqual(result.deductions_applied['rent_relief'], Decimal('1000000.00'))
        self.assertEqual(result.deductions_applied['pension'], Decimal('400000.00'))
        self.assertEqual(result.taxable_income, Decimal('3600000.00'))
        # 2.2m @ 15% + 600k @ 18%
        self.assertEqual(result.total_tax, Decimal('438000.00'))
        self.assertEqual(result.monthly_tax, Decimal('36500.00'))
        self.assertEqual(len(result.breakdown), 3)
        self.assertEqual(len(result.tax_bands), 6)
        self.assertEqual(result.net_income, Decimal('4562000.00'))

    def test_non_compounding_scenario(self):
        result = calculate(paye(Decimal('1000000'), 'rent_relief', 'pension'))
        self.assertEqual(result.deductions_applied['rent_relief'], Decimal('200000.00'))
        self.assertEqual(result.deductions_applied['pension'], Decimal('80000.00'))
        self.assertEqual(result.taxable_income, Decimal('720000.00'))
        self.assertEqual(result.total_tax, Decimal('0'))

    def test_monthly_income_is_annualized(self):
        result = calculate(paye('250000', frequency='monthly'))
        self.assertEqual(result.gross, Decimal('3000000.00'))
        self.assertEqual(result.total_tax, Decimal('330000.00'))
        self.assertEqual(result.monthly_tax, Decimal('27500.00'))

    def test_zero_income_is_valid(self):
        result = calculate(paye(0, 'rent_relief'))
        self.assertEqual(result.total_tax, Decimal('0'))
        self.assertEqual(result.taxable_income, Decimal('0'))
        self.assertEqual(result.effective_rate, Decimal('0'))

    def test_calculation_is_idempotent(self):
        tax_input = paye('7250000.55', 'rent_relief', 'nhf')
        self.assertEqual(calculate(tax_input), calculate(tax_input))

    def test_breakdown_sums_to_total(self):
        result = calculate(paye('63000000', 'pension'))
        self.assertEqual(result.total_tax, sum(row.tax_in_band for row in result.breakdown))
        self.assertEqual(result.total_tax, sum(row.tax_in_band for row in result.tax_bands))

    def test_negative_income_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            calculate(paye('-1'))
        self.assertEqual(ctx.exception.field, 'gross_income')

    def test_missing_income_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            calculate(paye(None))
        self.assertEqual(ctx.exception.field, 'gross_income')
        self.assertEqual(ctx.exception.as_dict(), {'gross_income': ['gross_income is required']})

    def test_non_finite_income_rejected(self):
        for value in [Decimal('NaN'), Decimal('Infinity'), float('inf'), 'abc']:
            with self.assertRaises(ValidationError):
                calculate(paye(value))

    def test_unknown_frequency_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            calculate(paye('1000000', frequency='weekly'))
        self.assertEqual(ctx.exception.field, 'frequency')

    def test_input_is_a_private_copy(self):
        amounts = {'business_expenses': Decimal('10')}
        tax_input = freelancer('1000', 'business_expenses', amounts=amounts)
        amounts['business_expenses'] = Decimal('999999')
        self.assertEqual(tax_input.amounts['business_expenses'], Decimal('10'))


class FreelancerRegimeTest(SimpleTestCase):
    """Test freelancer / self-employed calculations"""

    def test_pension_and_expenses(self):
        result = calculate(freelancer(
            '4000000', 'pension', 'business_expenses',
            amounts={'business_expenses': '500000'},
        ))
        self.assertEqual(result.deductions_applied['pension'], Decimal('320000.00'))
        self.assertEqual(result.deductions_applied['business_expenses'], Decimal('500000.00'))
        self.assertEqual(result.taxable_income, Decimal('3180000.00'))
        self.assertEqual(result.total_tax, Decimal('362400.00'))

    def test_rent_relief_not_available(self):
        result = calculate(freelancer('1000000', 'rent_relief'))
        self.assertEqual(result.deductions_applied, {})
        self.assertEqual(result.total_tax, Decimal('30000.00'))

    def test_expenses_ignored_when_toggle_off(self):
        result = calculate(freelancer('1000000', amounts={'business_expenses': '900000'}))
        self.assertEqual(result.taxable_income, Decimal('1000000.00'))

    def test_expenses_above_income_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            calculate(freelancer(
                '1000000', 'business_expenses',
                amounts={'business_expenses': '1000001'},
            ))
        self.assertEqual(ctx.exception.field, 'business_expenses')

    def test_negative_expenses_rejected(self):
        with self.assertRaises(ValidationError):
            calculate(freelancer('1000000', 'business_expenses', amounts={'business_expenses': '-5'}))

    def test_monthly_expenses_are_annualized(self):
        result = calculate(freelancer(
            '400000', 'business_expenses',
            frequency='monthly',
            amounts={'business_expenses': '100000'},
        ))
        self.assertEqual(result.deductions_applied['business_expenses'], Decimal('1200000.00'))
        self.assertEqual(result.taxable_income, Decimal('3600000.00'))


class CompanyIncomeTaxTest(SimpleTestCase):
    """Test flat-rate company income tax"""

    def test_medium_company(self):
        result = calculate(company('10000000', 'MEDIUM'))
        self.assertEqual(result.total_tax, Decimal('2000000.00'))
        self.assertEqual(len(result.breakdown), 1)
        self.assertEqual(result.breakdown[0].band.rate, Decimal('0.20'))
        self.assertEqual(result.breakdown[0].tax_in_band, result.total_tax)
        self.assertEqual(result.extras['profit_after_tax'], Decimal('8000000.00'))

    def test_large_company_with_expenses(self):
        result = calculate(company(
            '10000000', 'LARGE',
            toggles=frozenset({'business_expenses'}),
            amounts={'business_expenses': '4000000'},
        ))
        self.assertEqual(result.taxable_income, Decimal('6000000.00'))
        self.assertEqual(result.extras['profit'], Decimal('6000000.00'))
        self.assertEqual(result.total_tax, Decimal('1800000.00'))

    def test_small_company_pays_nothing(self):
        result = calculate(company('10000000', 'SMALL'))
        self.assertEqual(result.total_tax, Decimal('0'))

    def test_company_size_required(self):
        with self.assertRaises(ValidationError) as ctx:
            calculate(company('10000000', None))
        self.assertEqual(ctx.exception.field, 'company_size')

    def test_unknown_company_size_rejected(self):
        with self.assertRaises(ValidationError):
            calculate(company('10000000', 'HUGE'))

    def test_missing_revenue_reports_revenue_field(self):
        with self.assertRaises(ValidationError) as ctx:
            calculate(company(None))
        self.assertEqual(ctx.exception.field, 'revenue')

    def test_expenses_above_revenue_rejected(self):
        with self.assertRaises(ValidationError):
            calculate(company(
                '100', 'MEDIUM',
                toggles=frozenset({'business_expenses'}),
                amounts={'business_expenses': '200'},
            ))


class VatTest(SimpleTestCase):
    """Test VAT add / remove"""

    def test_add_vat(self):
        result = calculate(vat('200000'))
        self.assertEqual(result.total_tax, Decimal('15000.00'))
        self.assertEqual(result.extras['including_vat'], Decimal('215000.00'))
        self.assertEqual(result.extras['excluding_vat'], Decimal('200000.00'))
        self.assertEqual(result.extras['vat_rate'], Decimal('0.075'))

    def test_remove_vat(self):
        result = calculate(vat('215000', 'remove'))
        self.assertEqual(result.extras['excluding_vat'], Decimal('200000.00'))
        self.assertEqual(result.total_tax, Decimal('15000.00'))

    def test_round_trip(self):
        for amount in ['123456.78', '1', '99999999.99', '0.01']:
            added = calculate(vat(amount, 'add', 'Digital Services'))
            removed = calculate(vat(added.extras['including_vat'], 'remove', 'Digital Services'))
            self.assertLessEqual(
                abs(removed.extras['excluding_vat'] - Decimal(amount)), Decimal('0.01')
            )

    def test_export_is_zero_rated(self):
        result = calculate(vat('200000', 'add', 'Export/International'))
        self.assertEqual(result.total_tax, Decimal('0'))
        self.assertEqual(result.taxable_income, Decimal('200000.00'))
        self.assertEqual(result.extras['including_vat'], Decimal('200000.00'))

    def test_exempt_is_outside_base(self):
        result = calculate(vat('200000', 'add', 'Exempt'))
        self.assertEqual(result.total_tax, Decimal('0'))
        self.assertEqual(result.taxable_income, Decimal('0'))
        self.assertEqual(result.breakdown, ())

    def test_transaction_type_required(self):
        with self.assertRaises(ValidationError) as ctx:
            calculate(vat('200000', 'add', None))
        self.assertEqual(ctx.exception.field, 'transaction_type')

    def test_unknown_calculation_type_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            calculate(vat('200000', 'double'))
        self.assertEqual(ctx.exception.field, 'calculation_type')

    def test_zero_amount(self):
        result = calculate(vat('0'))
        self.assertEqual(result.total_tax, Decimal('0'))


class FrequencyAndMoneyTest(SimpleTestCase):

    def test_to_annual(self):
        self.assertEqual(FrequencyConverter.to_annual(Decimal('100'), 'monthly'), Decimal('1200'))
        self.assertEqual(FrequencyConverter.to_annual(Decimal('100'), 'annual'), Decimal('100'))

    def test_to_monthly_rounds_to_kobo(self):
        self.assertEqual(FrequencyConverter.to_monthly(Decimal('100')), Decimal('8.33'))

    def test_to_money_accepts_separators(self):
        self.assertEqual(to_money('1,200.50', 'amount'), Decimal('1200.50'))

    def test_to_money_rejects_booleans(self):
        with self.assertRaises(ValidationError):
            to_money(True, 'amount')

    def test_unknown_regime(self):
        with self.assertRaises(ValidationError) as ctx:
            calculate(TaxInput(regime='WHT', gross='100'))
        self.assertEqual(ctx.exception.field, 'tax_type')


class ReconcilerTest(SimpleTestCase):
    """Test choosing between local and upstream results"""

    def setUp(self):
        self.local = calculate(paye('5000000', 'rent_relief', 'pension'))

    def test_no_upstream_returns_local(self):
        self.assertIs(reconcile(self.local, None), self.local)

    def test_upstream_total_is_authoritative(self):
        result = reconcile(self.local, {'taxAmount': 600})
        self.assertEqual(result.total_tax, Decimal('600.00'))
        self.assertEqual(result.monthly_tax, Decimal('50.00'))
        self.assertEqual(result.breakdown, self.local.breakdown)
        self.assertEqual(result.deductions_applied, self.local.deductions_applied)

    def test_numeric_strings_are_coerced(self):
        result = reconcile(self.local, {'taxPayable': '1,200.50', 'monthlyTax': '100.04'})
        self.assertEqual(result.total_tax, Decimal('1200.50'))
        self.assertEqual(result.monthly_tax, Decimal('100.04'))

    def test_alias_order(self):
        fields = adapt_upstream({'tax': 1, 'totalTax': 2})
        self.assertEqual(fields['total_tax'], Decimal('2.00'))

    def test_malformed_upstream_falls_back_to_local(self):
        for upstream in [{}, {'totalTax': 'abc'}, {'totalTax': None}, {'totalTax': True},
                         {'message': 'ok'}, ['totalTax', 5], 'nonsense']:
            self.assertIs(reconcile(self.local, upstream), self.local)

    def test_unknown_keys_are_ignored(self):
        fields = adapt_upstream({'totalTax': 10, 'favouriteColour': 'green'})
        self.assertEqual(set(fields), {'total_tax'})

    def test_upstream_breakdown_replaces_local(self):
        result = reconcile(self.local, {
            'totalAnnualTax': 330000,
            'breakdown': [
                {'rate': 0, 'taxableAmount': 800000, 'tax': 0},
                {'rate': 0.15, 'taxableAmount': 2200000, 'tax': 330000},
            ],
        })
        self.assertEqual(len(result.breakdown), 2)
        self.assertEqual(result.breakdown[1].band.rate, Decimal('0.15'))
        self.assertEqual(result.breakdown[1].tax_in_band, Decimal('330000.00'))

    def test_unusable_breakdown_is_backfilled(self):
        result = reconcile(self.local, {'totalTax': 1, 'breakdown': {'pension': 5}})
        self.assertEqual(result.breakdown, self.local.breakdown)

    def test_regime_specific_fields(self):
        local = calculate(vat('200000'))
        result = reconcile(local, {'vatAmount': '15000', 'includingVat': '215000', 'tax': 15000})
        self.assertEqual(result.extras['including_vat'], Decimal('215000.00'))
        self.assertEqual(result.extras['excluding_vat'], Decimal('200000.00'))

    def test_nothing_to_reconcile(self):
        with self.assertRaises(ValueError):
            reconcile(None, None)
        with self.assertRaises(ValueError):
            reconcile(None, {'totalTax': 'n/a'})

    def test_upstream_only(self):
        result = reconcile(None, {'totalTax': 1200, 'taxableIncome': 9000}, regime='PAYE/PIT')
        self.assertEqual(result.total_tax, Decimal('1200.00'))
        self.assertEqual(result.taxable_income, Decimal('9000.00'))
        self.assertEqual(result.breakdown, ())

    def test_oversized_totals_fall_back_to_local(self):
        for upstream in [{'totalTax': '1e30'}, {'taxAmount': 10 ** 40}, {'tax': '-1e30'}]:
            self.assertIs(reconcile(self.local, upstream), self.local)

    def test_oversized_breakdown_rows_are_ignored(self):
        self.assertEqual(adapt_upstream({'breakdown': [{'tax': '1e40'}], 'totalTax': 5}),
                         {'total_tax': Decimal('5.00')})

        result = reconcile(self.local, {'breakdown': [{'tax': '1e40'}], 'totalTax': 5})
        self.assertEqual(result.total_tax, Decimal('5.00'))
        self.assertEqual(result.breakdown, self.local.breakdown)

    def test_negative_total_falls_back_to_local(self):
        result = reconcile(self.local, {'totalTax': -500})
        self.assertIs(result, self.local)
        self.assertLessEqual(result.net_income, result.gross)

    def test_negative_fields_are_backfilled(self):
        result = reconcile(self.local, {
            'totalTax': 700,
            'monthlyTax': -1,
            'taxableIncome': '-3,000',
            'grossIncome': -10,
            'breakdown': [{'rate': 0.15, 'tax': -20}],
            'deductions': {'pension': -5},
        })
        self.assertEqual(result.total_tax, Decimal('700.00'))
        self.assertEqual(result.monthly_tax, Decimal('58.33'))
        self.assertEqual(result.taxable_income, self.local.taxable_income)
        self.assertEqual(result.gross, self.local.gross)
        self.assertEqual(result.breakdown, self.local.breakdown)
        self.assertEqual(result.deductions_applied, self.local.deductions_applied)

    def test_negative_extras_are_ignored(self):
        local = calculate(vat('200000'))
        result = reconcile(local, {'tax': 15000, 'includingVat': -5, 'vatRate': -0.075})
        self.assertEqual(result.extras['including_vat'], Decimal('215000.00'))
        self.assertEqual(result.extras['vat_rate'], Decimal('0.075'))

    def test_out_of_range_row_rate_is_ignored(self):
        fields = adapt_upstream({'totalTax': 5, 'bands': [{'rate': 500, 'tax': 5}]})
        self.assertEqual(fields['breakdown'][0].band.rate, Decimal('0'))

    def test_reconciled_deductions_are_a_copy(self):
        result = reconcile(self.local, {'totalTax': 600})
        self.assertEqual(result.deductions_applied, self.local.deductions_applied)
        self.assertIsNot(result.deductions_applied, self.local.deductions_applied)

        result.deductions_applied['pension'] = Decimal('1')
        self.assertEqual(self.local.deductions_applied['pension'], Decimal('400000.00'))


class HistoryStoreTest(SimpleTestCase):
    """Test the capped history log"""

    def setUp(self):
        self.storage = {}
        self.store = HistoryStore(self.storage)

    def test_add_and_read(self):
        result = calculate(paye('1000000'))
        entry = self.store.add(regime='PAYE/PIT', tax_input=paye('1000000'), result=result)
        self.assertTrue(entry.id)
        self.assertTrue(entry.created_at)
        entries = self.store.read_all()
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0], entry)
        self.assertEqual(entries[0].input['tax_type'], 'PAYE/PIT')
        self.assertEqual(entries[0].result['total_tax'], '30000.00')

    def test_capacity_drops_oldest(self):
        ids = []
        for i in range(60):
            ids.append(self.store.add(regime='VAT', tax_input={'n': i}, result={'n': i}).id)

        entries = self.store.read_all()
        self.assertEqual(len(entries), 50)
        self.assertEqual(entries[0].id, ids[-1])
        self.assertEqual(entries[-1].id, ids[10])
        stored_ids = {entry.id for entry in entries}
        for old_id in ids[:10]:
            self.assertNotIn(old_id, stored_ids)

    def test_unique_ids(self):
        ids = {self.store.add(regime='VAT', tax_input={}, result={}).id for _ in range(20)}
        self.assertEqual(len(ids), 20)

    def test_corrupted_storage_reads_empty(self):
        for raw in ['{not json', '{"a": 1}', '[1, 2]', '[{"id": "x"}]', '42', b'\xff\xfe']:
            self.storage[self.store.key] = raw
            self.assertEqual(self.store.read_all(), [])

    def test_add_recovers_from_corruption(self):
        self.storage[self.store.key] = '{not json'
        self.store.add(regime='VAT', tax_input={}, result={})
        self.assertEqual(len(self.store.read_all()), 1)

    def test_clear_is_idempotent(self):
        self.store.add(regime='VAT', tax_input={}, result={})
        self.store.clear()
        self.store.clear()
        self.assertEqual(self.store.read_all(), [])

    def test_entries_are_snapshots(self):
        source = {'amount': '1'}
        self.store.add(regime='VAT', tax_input=source, result={})
        source['amount'] = '2'

        first = self.store.read_all()
        first[0].input['amount'] = '3'
        first.clear()

        entries = self.store.read_all()
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].input['amount'], '1')

    def test_entry_round_trip_through_dict(self):
        entry = self.store.add(regime='CIT', tax_input={'a': 1}, result={'b': 2})
        self.assertEqual(HistoryEntry.from_dict(entry.to_dict()), entry)

    @override_settings(TAXLATOR={'HISTORY_CAPACITY': 3})
    def test_capacity_from_settings(self):
        store = HistoryStore({})
        for _ in range(5):
            store.add(regime='VAT', tax_input={}, result={})
        self.assertEqual(len(store.read_all()), 3)


class HistorySessionTest(TestCase):
    """Test the history store on a real Django session"""

    def test_persists_across_session_instances(self):
        session = SessionStore()
        HistoryStore(session).add(regime='VAT', tax_input={}, result={'total_tax': '1.00'})
        session.save()

        reloaded = SessionStore(session_key=session.session_key)
        entries = HistoryStore(reloaded).read_all()
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].result['total_tax'], '1.00')


class ConfigurationTest(SimpleTestCase):
    """Test configuration overrides and fail-fast validation"""

    def test_unknown_company_size_in_config(self):
        rates = {'SMALL': '0', 'MEDIUM': '0.2', 'LARGE': '0.3', 'HUGE': '0.5'}
        with override_settings(TAXLATOR={'CIT_RATES': rates}):
            with self.assertRaises(ConfigurationError):
                build_regimes()

    def test_missing_company_size_in_config(self):
        with override_settings(TAXLATOR={'CIT_RATES': {'SMALL': '0'}}):
            with self.assertRaises(ConfigurationError):
                build_regimes()

    def test_invalid_band_table_in_config(self):
        bands = [(0, 1000, '0.1'), (2000, None, '0.2')]
        with override_settings(TAXLATOR={'PERSONAL_INCOME_TAX_BANDS_2026': bands}):
            with self.assertRaises(ConfigurationError):
                build_regimes()

    def test_rate_override(self):
        rates = {'SMALL': '0', 'MEDIUM': '0.25', 'LARGE': '0.3'}
        with override_settings(TAXLATOR={'CIT_RATES': rates}):
            result = calculate(company('10000000', 'MEDIUM'))
        self.assertEqual(result.total_tax, Decimal('2500000.00'))
        # defaults are back once the override ends
        self.assertEqual(calculate(company('10000000', 'MEDIUM')).total_tax, Decimal('2000000.00'))


class UpstreamClientTest(SimpleTestCase):
    """Test the remote calculation client"""

    def make_client(self, body=None, error=None, token=None):
        response = mock.Mock()
        response.raise_for_status.return_value = None
        if isinstance(body, Exception):
            response.json.side_effect = body
        else:
            response.json.return_value = body
        http = mock.Mock()
        if error is not None:
            http.post.side_effect = error
        else:
            http.post.return_value = response
        session = ApiSession(base_url='https://tax.example.com/', token=token, http=http)
        return TaxlatorApiClient(session), http

    def test_success_unwraps_data(self):
        client, http = self.make_client({'success': True, 'data': {'totalTax': 5}}, token='abc123')
        self.assertEqual(client.calculate_tax({'taxType': 'PAYE/PIT'}), {'totalTax': 5})

        args, kwargs = http.post.call_args
        self.assertEqual(args[0], 'https://tax.example.com/api/tax/calculate')
        self.assertEqual(kwargs['headers']['Authorization'], 'Bearer abc123')

    def test_no_token_no_authorization_header(self):
        client, http = self.make_client({'success': True, 'data': {}})
        client.calculate_vat({})
        self.assertNotIn('Authorization', http.post.call_args[1]['headers'])

    def test_unsuccessful_envelope(self):
        client, _ = self.make_client({'success': False, 'message': 'Invalid input'})
        with self.assertRaises(UpstreamUnavailable) as ctx:
            client.calculate_tax({})
        self.assertEqual(ctx.exception.message, 'Invalid input')

    def test_transport_error(self):
        client, _ = self.make_client(error=requests.ConnectionError('down'))
        with self.assertRaises(UpstreamUnavailable):
            client.calculate_tax({})

    def test_non_json_body(self):
        client, _ = self.make_client(ValueError('not json'))
        with self.assertRaises(UpstreamUnavailable):
            client.calculate_tax({})

    def test_paye_payload(self):
        tax_input = paye('1000000', 'rent_relief', 'pension', 'nhf')
        payload = build_upstream_payload(tax_input, calculate(tax_input))
        self.assertEqual(payload, {
            'taxType': 'PAYE/PIT',
            'grossIncome': 1000000,
            'frequency': 'annual',
            'rentRelief': 200000,
            'otherDeductions': 105000,
        })

    def test_vat_payload(self):
        tax_input = vat('200000', 'remove', 'Digital Services')
        payload = build_upstream_payload(tax_input, calculate(tax_input))
        self.assertEqual(payload, {
            'transactionAmount': 200000,
            'calculationType': 'remove',
            'transactionType': 'Digital Services',
        })

    def test_disabled_upstream_is_not_called(self):
        tax_input = company('10000000')
        http = mock.Mock()
        session = ApiSession(http=http)
        self.assertIsNone(fetch_upstream_result(tax_input, calculate(tax_input), session=session))
        http.post.assert_not_called()

    @override_settings(TAXLATOR={'UPSTREAM_ENABLED': True})
    def test_unavailable_upstream_gives_none(self):
        tax_input = company('10000000')
        http = mock.Mock()
        http.post.side_effect = requests.Timeout('slow')
        result = fetch_upstream_result(tax_input, calculate(tax_input), session=ApiSession(http=http))
        self.assertIsNone(result)
        http.post.assert_called_once()


class TaxAPITest(APITestCase):
    """Test the calculation and history endpoints"""

    def test_paye_calculation(self):
        response = self.client.post('/api/tax/calculate/', {
            'tax_type': 'PAYE/PIT',
            'gross_income': '5000000',
            'rent_relief': True,
            'pension': True,
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['tax_type'], 'PAYE/PIT')
        self.assertEqual(response.data['total_tax'], '438000.00')
        self.assertEqual(response.data['monthly_tax'], '36500.00')
        self.assertEqual(response.data['deductions_applied']['rent_relief'], '1000000.00')
        self.assertEqual(len(response.data['breakdown']), 3)
        self.assertEqual(len(response.data['tax_bands']), 6)
        self.assertIsNone(response.data['tax_bands'][5]['max'])

        history = self.client.get('/api/history/')
        self.assertEqual(len(history.data), 1)
        self.assertEqual(history.data[0]['type'], 'PAYE/PIT')

    def test_company_calculation(self):
        response = self.client.post('/api/tax/calculate/', {
            'tax_type': 'CIT',
            'revenue': '10000000',
            'company_size': 'MEDIUM',
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['total_tax'], '2000000.00')

    def test_expenses_above_revenue(self):
        response = self.client.post('/api/tax/calculate/', {
            'tax_type': 'CIT',
            'revenue': '100',
            'company_size': 'SMALL',
            'business_expenses': True,
            'expenses': '500',
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('business_expenses', response.data)
        self.assertEqual(self.client.get('/api/history/').data, [])

    def test_negative_income(self):
        response = self.client.post('/api/tax/calculate/', {
            'tax_type': 'FREELANCER',
            'gross_income': '-10',
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('gross_income', response.data)

    def test_unknown_tax_type(self):
        response = self.client.post('/api/tax/calculate/', {
            'tax_type': 'VAT',
            'gross_income': '10',
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('tax_type', response.data)

    def test_vat_calculation(self):
        response = self.client.post('/api/vat/calculate/', {
            'transaction_amount': '200000',
            'calculation_type': 'add',
            'transaction_type': 'Domestic sale/Purchase',
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['total_tax'], '15000.00')
        self.assertEqual(Decimal(response.data['extras']['including_vat']), Decimal('215000'))

    def test_vat_requires_transaction_type(self):
        response = self.client.post('/api/vat/calculate/', {
            'transaction_amount': '200000',
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('transaction_type', response.data)

    def test_save_false_skips_history(self):
        self.client.post('/api/tax/calculate/?save=false', {
            'tax_type': 'PAYE/PIT',
            'gross_income': '1000000',
        }, format='json')
        self.assertEqual(self.client.get('/api/history/').data, [])

    def test_history_most_recent_first_and_clear(self):
        for amount in ['100', '200']:
            self.client.post('/api/vat/calculate/', {
                'transaction_amount': amount,
                'transaction_type': 'Digital Services',
            }, format='json')

        history = self.client.get('/api/history/')
        self.assertEqual(len(history.data), 2)
        self.assertEqual(history.data[0]['result']['gross'], '200.00')

        response = self.client.delete('/api/history/')
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        self.assertEqual(self.client.get('/api/history/').data, [])
        self.assertEqual(self.client.delete('/api/history/').status_code, status.HTTP_204_NO_CONTENT)

    def test_upstream_result_is_authoritative(self):
        with mock.patch('calculator.apis.fetch_upstream_result', return_value={'taxAmount': 600}):
            response = self.client.post('/api/tax/calculate/', {
                'tax_type': 'PAYE/PIT',
                'gross_income': '5000000',
            }, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['total_tax'], '600.00')
        self.assertEqual(len(response.data['breakdown']), 3)

    def test_unusable_upstream_total_uses_local_result(self):
        for upstream in [{'totalTax': '1e30'}, {'totalTax': -500}]:
            with mock.patch('calculator.apis.fetch_upstream_result', return_value=upstream):
                response = self.client.post('/api/tax/calculate/?save=false', {
                    'tax_type': 'PAYE/PIT',
                    'gross_income': '5000000',
                }, format='json')
            self.assertEqual(response.status_code, status.HTTP_200_OK)
            self.assertEqual(response.data['total_tax'], '690000.00')
            self.assertEqual(response.data['net_income'], '4310000.00')

    def test_tax_bands(self):
        response = self.client.get('/api/tax/bands/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data['bands']), 6)
        self.assertEqual(response.data['bands'][1]['rate'], '0.1500')
        self.assertIsNone(response.data['bands'][5]['max'])
