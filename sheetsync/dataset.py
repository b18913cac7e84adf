"""Tabular dataset decoding for spreadsheet value ranges.

The read endpoint returns a ``values`` matrix where the first row holds the
field names and every following row holds positional cell values. This module
turns that matrix into immutable :class:`Dataset` objects and validates the
header against the fields a data source depends on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional, Sequence, Tuple

LOGGER = logging.getLogger(__name__)

# Reserved key carrying the 1-based sheet row of each record (row 1 is the header)
ROW_NUMBER_FIELD = "rowNumber"
FIRST_DATA_ROW = 2

Record = Dict[str, str]


class DatasetError(ValueError):
    """Raised when a values matrix cannot be decoded."""


class SchemaMismatchError(DatasetError):
    """Raised when the header row lacks fields a data source relies on."""

    def __init__(self, missing: Sequence[str], header: Sequence[str]) -> None:
        self.missing = tuple(missing)
        self.header = tuple(header)
        super().__init__(
            f"Header is missing required fields {list(self.missing)} "
            f"(received {list(self.header)})"
        )


@dataclass(frozen=True)
class Dataset:
    """Ordered, immutable collection of records sharing one header."""

    header: Tuple[str, ...] = ()
    records: Tuple[Record, ...] = ()

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[Record]:
        return iter(self.records)

    @property
    def is_empty(self) -> bool:
        return not self.records

    def to_payload(self) -> Dict[str, Any]:
        return {
            "header": list(self.header),
            "data": [dict(record) for record in self.records],
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Dataset":
        """Rebuild a dataset from :meth:`to_payload` output.

        Raises:
            DatasetError: If the payload does not have the expected shape
        """
        data = payload.get("data")
        if not isinstance(data, list):
            raise DatasetError("Payload 'data' must be a list of records")

        records: list[Record] = []
        for item in data:
            if not isinstance(item, Mapping):
                raise DatasetError("Payload records must be mappings")
            records.append({str(key): _cell_text(value) for key, value in item.items()})

        header_value = payload.get("header")
        if isinstance(header_value, list):
            header = tuple(str(name) for name in header_value)
        elif records:
            header = tuple(key for key in records[0] if key != ROW_NUMBER_FIELD)
        else:
            header = ()

        return cls(header=header, records=tuple(records))


EMPTY_DATASET = Dataset()


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def validate_header(header: Sequence[str], required_fields: Iterable[str]) -> None:
    """Ensure every required field is present in ``header``.

    Column order is not checked because records are decoded by name.

    Raises:
        SchemaMismatchError: If any required field is absent
    """
    present = set(header)
    missing = [name for name in required_fields if name not in present]
    if missing:
        raise SchemaMismatchError(missing, header)


def decode_values(
    values: Optional[Sequence[Sequence[Any]]],
    *,
    required_fields: Iterable[str] = (),
) -> Dataset:
    """Decode a header + rows matrix into a :class:`Dataset`.

    Short rows are padded with empty strings; cells beyond the header are
    dropped. A matrix with no data rows yields an empty dataset, but the
    header is still validated when present.

    Raises:
        DatasetError: If ``values`` is not a matrix of rows
        SchemaMismatchError: If the header lacks a required field
    """
    if not values:
        return EMPTY_DATASET

    if isinstance(values, (str, bytes)) or not isinstance(values, Sequence):
        raise DatasetError("Values must be a list of rows")

    for index, row in enumerate(values):
        if isinstance(row, (str, bytes)) or not isinstance(row, Sequence):
            raise DatasetError(f"Row {index + 1} is not a list of cells")

    header = tuple(_cell_text(name).strip() for name in values[0])
    validate_header(header, required_fields)

    records: list[Record] = []
    for offset, row in enumerate(values[1:]):
        record: Record = {ROW_NUMBER_FIELD: str(offset + FIRST_DATA_ROW)}
        for position, name in enumerate(header):
            if not name:
                continue
            record[name] = _cell_text(row[position]) if position < len(row) else ""
        records.append(record)

    if len(values) > 1:
        LOGGER.debug("Decoded %d records across %d columns", len(records), len(header))

    return Dataset(header=header, records=tuple(records))
