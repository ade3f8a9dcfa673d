"""Label table: output-vector index -> (tag name, category, default threshold).

Row order in the CSV *is* the model's output column order. The ``tag_id``
column in ``selected_tags.csv`` is a Danbooru id, not an output index, and is
ignored.
"""

from __future__ import annotations

import csv
import logging
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, TextIO, overload

from waifutag.ml.errors import MalformedTableError

if TYPE_CHECKING:
    from typing import Any

logger = logging.getLogger(__name__)


class TagCategory(StrEnum):
    RATING = "rating"
    CHARACTER = "character"
    GENERAL = "general"


# Danbooru category codes used by selected_tags.csv
_CATEGORY_CODES: dict[str, TagCategory] = {
    "0": TagCategory.GENERAL,
    "1": TagCategory.GENERAL,  # artist
    "3": TagCategory.GENERAL,  # copyright
    "4": TagCategory.CHARACTER,
    "5": TagCategory.GENERAL,  # meta
    "9": TagCategory.RATING,
}

DEFAULT_THRESHOLDS: dict[TagCategory, float] = {
    TagCategory.RATING: 0.0,
    TagCategory.CHARACTER: 0.85,
    TagCategory.GENERAL: 0.35,
}

_REQUIRED_COLUMNS = ("name", "category")


def parse_category(value: str) -> TagCategory:
    """Map a CSV category cell (numeric code or name) to a ``TagCategory``."""
    value = value.strip()
    if value in _CATEGORY_CODES:
        return _CATEGORY_CODES[value]
    try:
        return TagCategory(value.lower())
    except ValueError:
        raise ValueError(f"unknown category {value!r}") from None


@dataclass(frozen=True)
class Label:
    """One output class of the model."""

    index: int
    name: str
    category: TagCategory
    default_threshold: float


class LabelTable(Sequence[Label]):
    """Immutable, position-indexed sequence of labels."""

    def __init__(self, labels: Sequence[Label]) -> None:
        if not labels:
            raise MalformedTableError("table has no rows")
        for position, label in enumerate(labels):
            if label.index != position:
                raise MalformedTableError(f"index {label.index} out of order", row=position)
        self._labels: tuple[Label, ...] = tuple(labels)
        self._by_name: dict[str, Label] = {}
        for label in self._labels:
            self._by_name.setdefault(label.name, label)
        self._by_category: dict[TagCategory, tuple[int, ...]] = {
            category: tuple(lab.index for lab in self._labels if lab.category is category) for category in TagCategory
        }

    @classmethod
    def load(
        cls,
        source: Path | str | TextIO,
        default_thresholds: Mapping[TagCategory, float] | None = None,
    ) -> LabelTable:
        """Load a CSV label table from a path or an open text stream.

        Raises:
            MalformedTableError: On a missing column or field, an unknown
                category, a bad threshold, an out-of-order ``index`` column,
                an empty table, or a file that is unreadable or not UTF-8 CSV.
        """
        defaults = {**DEFAULT_THRESHOLDS, **(default_thresholds or {})}
        try:
            if isinstance(source, (str, Path)):
                with open(source, encoding="utf-8", newline="") as fh:
                    labels = _parse_rows(fh, defaults)
            else:
                labels = _parse_rows(source, defaults)
        except OSError as exc:
            raise MalformedTableError(f"cannot read {source}: {exc}") from exc
        except (UnicodeDecodeError, csv.Error) as exc:
            raise MalformedTableError(f"cannot parse CSV: {exc}") from exc

        table = cls(labels)
        logger.info(
            "Loaded %d labels (%d general, %d character, %d rating)",
            len(table),
            len(table.indices(TagCategory.GENERAL)),
            len(table.indices(TagCategory.CHARACTER)),
            len(table.indices(TagCategory.RATING)),
        )
        return table

    def indices(self, category: TagCategory) -> tuple[int, ...]:
        """Output indices of all labels in ``category``, ascending."""
        return self._by_category[category]

    def get(self, name: str) -> Label | None:
        return self._by_name.get(name)

    def __contains__(self, item: object) -> bool:
        if isinstance(item, str):
            return item in self._by_name
        return item in self._labels

    @overload
    def __getitem__(self, index: int) -> Label: ...

    @overload
    def __getitem__(self, index: slice) -> Sequence[Label]: ...

    def __getitem__(self, index: int | slice) -> Label | Sequence[Label]:
        return self._labels[index]

    def __len__(self) -> int:
        return len(self._labels)

    def __iter__(self) -> Iterator[Label]:
        return iter(self._labels)

    def __repr__(self) -> str:
        return f"LabelTable({len(self._labels)} labels)"


def _parse_rows(stream: TextIO, defaults: Mapping[TagCategory, float]) -> list[Label]:
    reader = csv.DictReader(stream)
    columns = [c.strip() for c in reader.fieldnames or []]
    missing = [c for c in _REQUIRED_COLUMNS if c not in columns]
    if missing:
        raise MalformedTableError(f"missing required columns: {', '.join(missing)}")

    labels: list[Label] = []
    # Row numbers are 1-based data rows, header excluded.
    for position, raw in enumerate(reader):
        row: dict[str, Any] = {(k or "").strip(): v for k, v in raw.items()}
        labels.append(_parse_row(row, position, defaults))
    return labels


def _parse_row(row: Mapping[str, Any], position: int, defaults: Mapping[TagCategory, float]) -> Label:
    row_number = position + 1
    name = (row.get("name") or "").strip()
    if not name:
        raise MalformedTableError("missing name", row=row_number)

    category_cell = row.get("category")
    if category_cell is None or not category_cell.strip():
        raise MalformedTableError("missing category", row=row_number)
    try:
        category = parse_category(category_cell)
    except ValueError as exc:
        raise MalformedTableError(str(exc), row=row_number) from None

    index_cell = row.get("index")
    if index_cell is not None and index_cell.strip():
        try:
            declared = int(index_cell)
        except ValueError:
            raise MalformedTableError(f"invalid index {index_cell!r}", row=row_number) from None
        if declared != position:
            raise MalformedTableError(f"index {declared} does not match row position {position}", row=row_number)

    threshold = defaults[category]
    threshold_cell = row.get("threshold")
    if threshold_cell is not None and threshold_cell.strip():
        try:
            threshold = float(threshold_cell)
        except ValueError:
            raise MalformedTableError(f"invalid threshold {threshold_cell!r}", row=row_number) from None
        if not 0.0 <= threshold <= 1.0:
            raise MalformedTableError(f"threshold {threshold} outside [0, 1]", row=row_number)

    return Label(index=position, name=name, category=category, default_threshold=threshold)
