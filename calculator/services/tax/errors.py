"""
Error taxonomy for the tax engine.

Only ValidationError is meant to reach the user, tied to the field that
failed. The other kinds either degrade to a best-effort result
(UpstreamUnavailable, StorageCorruption) or stop the process at startup
(ConfigurationError).
"""
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List

# Amounts above this are treated as typos rather than real incomes
MAX_AMOUNT = Decimal("1e15")


class TaxError(Exception):
    """Base class for tax engine errors"""
    error_code = 'TAX_ERROR'

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(TaxError):
    """A TaxInput field is missing, malformed or out of range"""
    error_code = 'VALIDATION_ERROR'

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.value = value
        super().__init__(message)

    def as_dict(self) -> Dict[str, List[str]]:
        return {self.field: [self.message]}


class ConfigurationError(TaxError):
    """A configured table breaks its invariants"""
    error_code = 'CONFIGURATION_ERROR'


class UpstreamUnavailable(TaxError):
    """The remote calculation service gave no usable answer"""
    error_code = 'UPSTREAM_UNAVAILABLE'


class StorageCorruption(TaxError):
    """Persisted history could not be decoded"""
    error_code = 'STORAGE_CORRUPTION'


def to_money(value: Any, field: str, required: bool = True) -> Decimal:
    """
    Coerce a raw amount into a non-negative, finite Decimal.

    Args:
        value: int, Decimal, float or numeric string ("1,200.50" is accepted)
        field: Name reported back to the caller on failure
        required: When False, a missing value reads as zero

    Returns:
        Decimal: The amount

    Raises:
        ValidationError: If the value is missing, not a number, not finite,
            negative or unreasonably large
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if not required:
            return Decimal("0")
        raise ValidationError(field, f"{field} is required", value)

    if isinstance(value, bool):
        raise ValidationError(field, f"{field} must be a number", value)

    try:
        if isinstance(value, str):
            amount = Decimal(value.replace(',', '').strip())
        elif isinstance(value, float):
            amount = Decimal(str(value))
        else:
            amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(field, f"{field} must be a valid number", value)

    if not amount.is_finite():
        raise ValidationError(field, f"{field} must be a finite number", value)
    if amount < 0:
        raise ValidationError(field, f"{field} cannot be negative", value)
    if amount > MAX_AMOUNT:
        raise ValidationError(field, f"{field} is unreasonably large", value)

    return amount
