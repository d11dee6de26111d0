from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from .errors import ConfigurationError
from .money import format_naira

UNBOUNDED = Decimal("Infinity")


@dataclass(frozen=True)
class Band:
    """A contiguous income interval taxed at one marginal rate."""
    min: Decimal
    max: Decimal
    rate: Decimal

    @property
    def is_unbounded(self) -> bool:
        return self.max == UNBOUNDED

    @property
    def width(self) -> Decimal:
        return self.max - self.min

    @property
    def label(self) -> str:
        if self.is_unbounded:
            if self.min == 0:
                return "All income"
            return f"Above {format_naira(self.min)}"
        if self.min == 0:
            return f"First {format_naira(self.max)}"
        return f"{format_naira(self.min)} - {format_naira(self.max)}"

    def to_dict(self):
        return {
            'min': str(self.min),
            'max': None if self.is_unbounded else str(self.max),
            'rate': str(self.rate),
            'label': self.label,
        }


@dataclass(frozen=True)
class BandContribution:
    band: Band
    amount_in_band: Decimal
    tax_in_band: Decimal

    def to_dict(self):
        data = self.band.to_dict()
        data['amount_in_band'] = str(self.amount_in_band)
        data['tax_in_band'] = str(self.tax_in_band)
        return data


class BandTable:
    """
    Ordered, immutable table of progressive tax bands.

    Construction validates the table:
    - the first band starts at 0
    - each band ends where the next one starts
    - exactly one band is unbounded and it is the last one
    - every rate lies in [0, 1]

    Any violation raises ConfigurationError; a table that exists is valid.
    """

    def __init__(self, bands):
        self._bands = tuple(bands)
        self._validate()

    @classmethod
    def from_rows(cls, rows):
        """
        Build a table from (lower, upper, rate) rows as found in
        configuration. Values may be Decimals, numbers or strings;
        an upper limit of None means unbounded.
        """
        bands = []
        for index, row in enumerate(rows):
            try:
                lower, upper, rate = row
                bands.append(Band(
                    min=Decimal(str(lower)),
                    max=UNBOUNDED if upper is None else Decimal(str(upper)),
                    rate=Decimal(str(rate)),
                ))
            except (InvalidOperation, TypeError, ValueError) as e:
                raise ConfigurationError(f"Band {index} is malformed: {row!r}") from e
        return cls(bands)

    def _validate(self):
        if not self._bands:
            raise ConfigurationError("Band table is empty")

        if self._bands[0].min != 0:
            raise ConfigurationError(
                f"First band must start at 0, not {self._bands[0].min}"
            )

        for index, band in enumerate(self._bands):
            if band.min.is_nan() or band.max.is_nan() or not band.rate.is_finite():
                raise ConfigurationError(f"Band {index} has a non-numeric limit or rate")
            if not (Decimal("0") <= band.rate <= Decimal("1")):
                raise ConfigurationError(
                    f"Band {index} rate {band.rate} is outside [0, 1]"
                )
            if band.max <= band.min:
                raise ConfigurationError(
                    f"Band {index} upper limit {band.max} is not above its lower limit {band.min}"
                )

            is_last = index == len(self._bands) - 1
            if band.is_unbounded and not is_last:
                raise ConfigurationError(f"Only the last band may be unbounded (band {index})")
            if is_last and not band.is_unbounded:
                raise ConfigurationError("Last band must be unbounded")
            if not is_last and band.max != self._bands[index + 1].min:
                raise ConfigurationError(
                    f"Band {index} ends at {band.max} but band {index + 1} "
                    f"starts at {self._bands[index + 1].min}"
                )

    def __iter__(self):
        return iter(self._bands)

    def __len__(self):
        return len(self._bands)

    def __getitem__(self, index):
        return self._bands[index]

    def __eq__(self, other):
        if not isinstance(other, BandTable):
            return NotImplemented
        return self._bands == other._bands

    def __hash__(self):
        return hash(self._bands)

    def __repr__(self):
        return f"BandTable({list(self._bands)!r})"
