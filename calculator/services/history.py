"""
Capped calculation history.

The log lives in a key/value storage (the Django session in the API,
any MutableMapping in tests) as one JSON document: a list of entries,
most recent first, never longer than the configured capacity. Adding an
entry beyond capacity drops the oldest one.

Reads fail open: storage holding anything other than a well-formed list
of entries reads as an empty history, never as an error.
"""
import copy
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, MutableMapping

from django.core.serializers.json import DjangoJSONEncoder
from django.utils import timezone

from .tax import config
from .tax.errors import StorageCorruption

logger = logging.getLogger(__name__)

ENTRY_FIELDS = ('id', 'type', 'created_at', 'input', 'result')


@dataclass(frozen=True)
class HistoryEntry:
    id: str
    type: str
    created_at: str  # ISO 8601, UTC
    input: Dict[str, Any]
    result: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type,
            'created_at': self.created_at,
            'input': copy.deepcopy(self.input),
            'result': copy.deepcopy(self.result),
        }

    @classmethod
    def from_dict(cls, data: Any) -> 'HistoryEntry':
        if not isinstance(data, dict) or any(name not in data for name in ENTRY_FIELDS):
            raise StorageCorruption(f"Malformed history entry: {data!r:.200}")
        if not isinstance(data['input'], dict) or not isinstance(data['result'], dict):
            raise StorageCorruption(f"History entry {data.get('id')} has no input/result snapshot")
        return cls(
            id=str(data['id']),
            type=str(data['type']),
            created_at=str(data['created_at']),
            input=copy.deepcopy(data['input']),
            result=copy.deepcopy(data['result']),
        )


def _snapshot(value: Any) -> Dict[str, Any]:
    # JSON round trip: a detached copy that only holds plain data
    if hasattr(value, 'to_dict'):
        value = value.to_dict()
    return json.loads(json.dumps(value, cls=DjangoJSONEncoder))


class HistoryStore:
    """
    Ordered, capacity-bounded log of past calculations.

    Assumes a single writer per storage; concurrent writers to the same
    storage are last-write-wins.
    """

    def __init__(self, storage: MutableMapping, key: str = None, capacity: int = None):
        self.storage = storage
        self.key = key or config.get_setting('HISTORY_KEY')
        self.capacity = capacity if capacity is not None else config.get_setting('HISTORY_CAPACITY')
        if self.capacity < 1:
            raise ValueError("History capacity must be at least 1")

    def _load(self) -> List[HistoryEntry]:
        raw = self.storage.get(self.key)
        if not raw:
            return []

        try:
            parsed = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        except ValueError as e:
            raise StorageCorruption(f"History is not valid JSON: {e}") from e

        if not isinstance(parsed, list):
            raise StorageCorruption(f"History is a {type(parsed).__name__}, not a list")

        return [HistoryEntry.from_dict(item) for item in parsed]

    def _save(self, entries: List[HistoryEntry]):
        self.storage[self.key] = json.dumps(
            [entry.to_dict() for entry in entries],
            cls=DjangoJSONEncoder,
        )

    def read_all(self) -> List[HistoryEntry]:
        """
        Return a fresh snapshot of the log, most recent first.
        Corrupted storage reads as empty.
        """
        try:
            return self._load()
        except StorageCorruption as e:
            logger.warning(f"Ignoring corrupted history under {self.key!r}: {e.message}")
            return []

    def add(self, regime: str, tax_input: Any, result: Any) -> HistoryEntry:
        """
        Record a calculation.

        Args:
            regime: Regime tag (PAYE/PIT, FREELANCER, CIT, VAT)
            tax_input: TaxInput (or plain mapping) that produced the result
            result: TaxResult (or plain mapping) that was displayed

        Returns:
            HistoryEntry: The stored entry, with its new id and timestamp
        """
        entry = HistoryEntry(
            id=str(uuid.uuid4()),
            type=str(regime),
            created_at=timezone.now().isoformat(),
            input=_snapshot(tax_input),
            result=_snapshot(result),
        )

        entries = [entry] + self.read_all()
        self._save(entries[:self.capacity])
        return entry

    def clear(self):
        """Remove every entry. Safe to call on an empty store."""
        self.storage.pop(self.key, None)
