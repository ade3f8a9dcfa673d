"""Tests for the label table."""

from __future__ import annotations

import io
from pathlib import Path

import pytest

from conftest import LABELS_CSV, NUM_LABELS
from waifutag.ml.errors import MalformedTableError
from waifutag.ml.labels import DEFAULT_THRESHOLDS, Label, LabelTable, TagCategory, parse_category


class TestParseCategory:
    @pytest.mark.parametrize(
        ("cell", "expected"),
        [
            ("9", TagCategory.RATING),
            ("4", TagCategory.CHARACTER),
            ("0", TagCategory.GENERAL),
            ("1", TagCategory.GENERAL),
            ("3", TagCategory.GENERAL),
            ("5", TagCategory.GENERAL),
            ("character", TagCategory.CHARACTER),
            (" Rating ", TagCategory.RATING),
        ],
    )
    def test_known_categories(self, cell: str, expected: TagCategory) -> None:
        assert parse_category(cell) is expected

    def test_unknown_category_raises(self) -> None:
        with pytest.raises(ValueError, match="unknown category"):
            parse_category("7")


class TestLoad:
    def test_row_order_is_output_order(self, labels_path: Path) -> None:
        table = LabelTable.load(labels_path)

        assert len(table) == NUM_LABELS
        assert [label.name for label in table[:5]] == ["general", "sensitive", "questionable", "explicit", "1girl"]
        assert [label.index for label in table] == list(range(NUM_LABELS))

    def test_categories_and_default_thresholds(self, labels_path: Path) -> None:
        table = LabelTable.load(labels_path)

        assert table.indices(TagCategory.RATING) == (0, 1, 2, 3)
        assert table.indices(TagCategory.GENERAL) == (4, 5, 6)
        assert table.indices(TagCategory.CHARACTER) == (7,)
        assert table[4].default_threshold == DEFAULT_THRESHOLDS[TagCategory.GENERAL]
        assert table[7].default_threshold == DEFAULT_THRESHOLDS[TagCategory.CHARACTER]

    def test_default_threshold_overrides(self, labels_path: Path) -> None:
        table = LabelTable.load(labels_path, {TagCategory.GENERAL: 0.5})

        assert table[4].default_threshold == 0.5
        assert table[7].default_threshold == DEFAULT_THRESHOLDS[TagCategory.CHARACTER]

    def test_load_from_stream(self) -> None:
        table = LabelTable.load(io.StringIO(LABELS_CSV))
        assert len(table) == NUM_LABELS

    def test_per_label_threshold_column(self) -> None:
        csv_text = "name,category,threshold\n1girl,0,0.6\nsolo,0,\n"
        table = LabelTable.load(io.StringIO(csv_text))

        assert table[0].default_threshold == 0.6
        assert table[1].default_threshold == DEFAULT_THRESHOLDS[TagCategory.GENERAL]

    def test_index_column_matching_rows_is_accepted(self) -> None:
        csv_text = "index,name,category\n0,general,9\n1,1girl,0\n"
        table = LabelTable.load(io.StringIO(csv_text))
        assert table[1] == Label(index=1, name="1girl", category=TagCategory.GENERAL, default_threshold=0.35)

    def test_name_lookup(self, labels_path: Path) -> None:
        table = LabelTable.load(labels_path)

        label = table.get("hatsune_miku")
        assert label is not None
        assert label.index == 7
        assert "hatsune_miku" in table
        assert table.get("missing") is None


class TestMalformed:
    def test_empty_table(self) -> None:
        with pytest.raises(MalformedTableError, match="no rows"):
            LabelTable.load(io.StringIO("tag_id,name,category,count\n"))

    def test_missing_column(self) -> None:
        with pytest.raises(MalformedTableError, match="category"):
            LabelTable.load(io.StringIO("tag_id,name,count\n1,1girl,5\n"))

    def test_missing_name_field(self) -> None:
        with pytest.raises(MalformedTableError) as excinfo:
            LabelTable.load(io.StringIO("tag_id,name,category\n1,1girl,0\n2,,0\n"))
        assert excinfo.value.row == 2

    def test_short_row(self) -> None:
        with pytest.raises(MalformedTableError, match="missing category"):
            LabelTable.load(io.StringIO("tag_id,name,category\n1,1girl\n"))

    def test_unknown_category(self) -> None:
        with pytest.raises(MalformedTableError, match="unknown category"):
            LabelTable.load(io.StringIO("name,category\n1girl,42\n"))

    def test_out_of_order_index(self) -> None:
        with pytest.raises(MalformedTableError, match="row position"):
            LabelTable.load(io.StringIO("index,name,category\n1,1girl,0\n0,solo,0\n"))

    def test_bad_threshold(self) -> None:
        with pytest.raises(MalformedTableError, match="outside"):
            LabelTable.load(io.StringIO("name,category,threshold\n1girl,0,1.5\n"))

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(MalformedTableError, match="cannot read"):
            LabelTable.load(tmp_path / "nope.csv")

    def test_non_utf8_file(self, tmp_path: Path) -> None:
        path = tmp_path / "latin1.csv"
        path.write_bytes(b"tag_id,name,category,count\n1,caf\xe9,0,1\n")
        with pytest.raises(MalformedTableError, match="cannot parse") as excinfo:
            LabelTable.load(path)
        assert isinstance(excinfo.value.__cause__, UnicodeDecodeError)

    def test_csv_error_from_stream(self) -> None:
        oversized = "x" * 200_000
        with pytest.raises(MalformedTableError, match="cannot parse"):
            LabelTable.load(io.StringIO(f'name,category\n"{oversized}",0\n'))

    def test_direct_construction_checks_order(self) -> None:
        labels = [Label(index=1, name="a", category=TagCategory.GENERAL, default_threshold=0.35)]
        with pytest.raises(MalformedTableError):
            LabelTable(labels)
