"""
Append-only outcome recorder.

The history is the optimizer's only training signal, so it exposes no way to
edit or delete a record. Records are fully built before they are published,
so concurrent readers never see a partial entry.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional, Tuple, Union

import pandas as pd

from .data_types import (
    ExperimentOutcome,
    ExperimentParameters,
    ExperimentRecord,
    resolve_metric,
)
from .errors import InvalidParameter

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class HistoryStore:
    def __init__(self, clock: Callable[[], datetime] = _utc_now):
        self._clock = clock
        self._lock = threading.Lock()
        # Replaced wholesale on append; readers grab the current tuple without locking
        self._records: Tuple[ExperimentRecord, ...] = ()
        self._next_id = 1

    @classmethod
    def from_records(
        cls,
        records: Iterable[Union[ExperimentRecord, Mapping[str, Any]]],
        clock: Callable[[], datetime] = _utc_now,
    ) -> "HistoryStore":
        """
        Build a store seeded with previously persisted records.

        Args:
            records: ExperimentRecord objects or their ``to_dict()`` form, oldest first
            clock: Timestamp source for records appended later

        Returns:
            HistoryStore holding the records with their original ids and timestamps
        """
        store = cls(clock=clock)
        loaded = []
        last_id = 0
        for item in records:
            record = item if isinstance(item, ExperimentRecord) else ExperimentRecord.from_dict(item)
            if record.id <= last_id:
                raise InvalidParameter(
                    f"Record ids must be strictly increasing (got {record.id} after {last_id})"
                )
            last_id = record.id
            loaded.append(record)
        store._records = tuple(loaded)
        store._next_id = last_id + 1
        logger.info(f"Loaded {len(loaded)} historical records")
        return store

    def record(
        self, params: ExperimentParameters, outcome: ExperimentOutcome
    ) -> ExperimentRecord:
        """Append one completed experiment and return its record."""
        if not isinstance(params, ExperimentParameters):
            raise InvalidParameter("params must be ExperimentParameters")
        if not isinstance(outcome, ExperimentOutcome):
            raise InvalidParameter("outcome must be an ExperimentOutcome")

        with self._lock:
            record = ExperimentRecord(
                id=self._next_id,
                parameters=params,
                outcome=outcome,
                completed_at=self._clock(),
            )
            self._records = self._records + (record,)
            self._next_id += 1

        logger.info(
            f"Recorded experiment #{record.id}: diameter={outcome.diameter_nm:g} nm, "
            f"length={outcome.length_um:g} µm, aspect ratio={outcome.aspect_ratio:.1f}"
        )
        return record

    def all(self) -> Tuple[ExperimentRecord, ...]:
        return self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[ExperimentRecord]:
        return iter(self._records)

    def best(self, metric: str) -> Optional[ExperimentRecord]:
        """
        Return the record maximizing ``metric``.

        Records without a value for the metric are skipped. Ties go to the
        earliest timestamp, then the lowest id.
        """
        attribute = resolve_metric(metric)
        best_record = None
        for record in self._records:
            value = getattr(record.outcome, attribute)
            if value is None:
                continue
            if best_record is None:
                best_record = record
                continue
            best_value = getattr(best_record.outcome, attribute)
            if value > best_value or (
                value == best_value and record.completed_at < best_record.completed_at
            ):
                best_record = record
        return best_record

    def to_dataframe(self) -> pd.DataFrame:
        rows = [record.to_dict() for record in self._records]
        return pd.DataFrame(rows)
