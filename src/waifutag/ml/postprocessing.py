"""Turn a raw score vector into categorized, thresholded tags."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING

import numpy as np

from waifutag.ml.errors import LengthMismatchError
from waifutag.ml.labels import TagCategory

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from waifutag.ml.labels import LabelTable

ThresholdMap = Mapping[TagCategory, float]

# Lower bound for the character MCut threshold.
CHARACTER_MCUT_FLOOR = 0.15

_MCUT_CATEGORIES = (TagCategory.GENERAL, TagCategory.CHARACTER)


def _frozen(mapping: Mapping[str, float] | None = None) -> Mapping[str, float]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class TaggingResult:
    """Tags that passed their thresholds, grouped by category.

    Each mapping is read-only, keyed by tag name, and ordered by label index
    unless score ordering was requested.
    """

    rating: Mapping[str, float] = field(default_factory=_frozen)
    character: Mapping[str, float] = field(default_factory=_frozen)
    general: Mapping[str, float] = field(default_factory=_frozen)

    def __post_init__(self) -> None:
        for name in ("rating", "character", "general"):
            object.__setattr__(self, name, _frozen(getattr(self, name)))

    def __hash__(self) -> int:
        return hash((frozenset(self.rating.items()), frozenset(self.character.items()), frozenset(self.general.items())))

    def __reduce__(self) -> tuple[type[TaggingResult], tuple[dict[str, float], ...]]:
        # mappingproxy cannot be pickled; rebuild from plain dicts.
        return (type(self), (dict(self.rating), dict(self.character), dict(self.general)))

    def category(self, category: TagCategory) -> Mapping[str, float]:
        return getattr(self, category.value)

    def is_empty(self) -> bool:
        return not (self.rating or self.character or self.general)

    def top_rating(self) -> tuple[str, float] | None:
        """Highest-scoring rating that passed its threshold, if any.

        This is a convenience view; the result itself keeps every rating that
        cleared the threshold.
        """
        if not self.rating:
            return None
        return max(self.rating.items(), key=lambda item: item[1])

    def to_caption(self, include_character: bool = True, escape: bool = True) -> str:
        """Comma-joined prompt string, characters first, highest score first.

        Underscores become spaces and, with ``escape``, parentheses are
        backslash-escaped the way prompt syntaxes expect.
        """
        groups = [self.general]
        if include_character:
            groups.insert(0, self.character)
        names: list[str] = []
        for group in groups:
            for name, _score in sorted(group.items(), key=lambda item: item[1], reverse=True):
                text = name.replace("_", " ") if len(name) > 3 else name  # keep kaomoji like ^_^
                if escape:
                    text = text.replace("(", r"\(").replace(")", r"\)")
                names.append(text)
        return ", ".join(names)

    def to_dict(self) -> dict[str, dict[str, float]]:
        return {
            "rating": dict(self.rating),
            "character": dict(self.character),
            "general": dict(self.general),
        }


def mcut_threshold(scores: NDArray[np.float32] | Sequence[float]) -> float:
    """Maximum Cut Thresholding: midpoint of the largest gap between sorted scores.

    A single score is its own cut; an empty input gives ``1.0``.
    """
    values = np.sort(np.asarray(scores, dtype=np.float64))[::-1]
    if values.size == 0:
        return 1.0
    if values.size == 1:
        return float(values[0])
    gaps = values[:-1] - values[1:]
    cut = int(np.argmax(gaps))
    return float((values[cut] + values[cut + 1]) / 2.0)


def postprocess(
    scores: NDArray[np.float32] | Sequence[float],
    table: LabelTable,
    thresholds: ThresholdMap | None = None,
    *,
    sort_by_score: bool = False,
    mcut: bool = False,
) -> TaggingResult:
    """Map a score vector through the label table.

    The effective threshold of each label is the caller's per-category
    override if given; otherwise, with ``mcut``, the MCut threshold of its
    category (general and character only); otherwise the label's default.

    Raises:
        LengthMismatchError: If ``len(scores) != len(table)``.
        ValueError: If an override lies outside ``[0, 1]``.
    """
    values = np.asarray(scores, dtype=np.float32).reshape(-1)
    if values.shape[0] != len(table):
        raise LengthMismatchError(expected=len(table), actual=int(values.shape[0]))

    overrides = _validate_thresholds(thresholds)
    category_cut: dict[TagCategory, float] = {}
    if mcut:
        for category in _MCUT_CATEGORIES:
            if category in overrides:
                continue
            indices = table.indices(category)
            if not indices:
                continue
            cut = mcut_threshold(values[list(indices)])
            if category is TagCategory.CHARACTER:
                cut = max(CHARACTER_MCUT_FLOOR, cut)
            category_cut[category] = cut

    buckets: dict[TagCategory, list[tuple[str, float]]] = {category: [] for category in TagCategory}
    for label in table:
        score = float(values[label.index])
        threshold = overrides.get(label.category)
        if threshold is None:
            threshold = category_cut.get(label.category, label.default_threshold)
        if score >= threshold:
            buckets[label.category].append((label.name, score))

    if sort_by_score:
        for entries in buckets.values():
            # sorted() is stable, so ties keep label-index order.
            entries.sort(key=lambda item: item[1], reverse=True)

    return TaggingResult(
        rating=dict(buckets[TagCategory.RATING]),
        character=dict(buckets[TagCategory.CHARACTER]),
        general=dict(buckets[TagCategory.GENERAL]),
    )


def _validate_thresholds(thresholds: ThresholdMap | None) -> dict[TagCategory, float]:
    if not thresholds:
        return {}
    validated: dict[TagCategory, float] = {}
    for key, value in thresholds.items():
        category = TagCategory(key)
        threshold = float(value)
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"Threshold for {category} must be within [0, 1], got {threshold}")
        validated[category] = threshold
    return validated
