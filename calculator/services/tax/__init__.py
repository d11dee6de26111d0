from .bands import UNBOUNDED, Band, BandContribution, BandTable
from .deductions import Deduction, DeductionPolicy
from .errors import (
    ConfigurationError,
    StorageCorruption,
    TaxError,
    UpstreamUnavailable,
    ValidationError,
)
from .frequency import Frequency, FrequencyConverter
from .progressive import ProgressiveCalculator
from .reconcile import adapt_upstream, reconcile
from .regimes import (
    CompanySize,
    Regime,
    TaxInput,
    TaxResult,
    VatCalculationType,
    VatTransactionType,
    build_regimes,
    calculate,
    load_pit_band_table,
    reset_regimes,
)
