"""Unit tests for localized number parsing and code normalisation."""

from __future__ import annotations

from decimal import Decimal

import pytest

from sinapicalc.parsing.numbers import (
    classify_category,
    normalize_code,
    normalize_label,
    parse_decimal,
    to_decimal,
)
from sinapicalc.pipeline.types import ResourceCategory


class TestParseDecimal:
    """pt-BR and plain number formats."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("1.234,56", Decimal("1234.56")),
            ("12,5", Decimal("12.5")),
            ("12.5", Decimal("12.5")),
            ("1.234.567", Decimal("1234567")),
            ("R$ 3,10", Decimal("3.10")),
            ("-2,5", Decimal("-2.5")),
            ("  7 ", Decimal("7")),
        ],
    )
    def test_text_formats(self, raw, expected):
        assert parse_decimal(raw) == expected

    def test_lone_dot_is_a_decimal_point(self):
        # "1.234" stays 1.234; only a comma turns dots into thousands separators
        assert parse_decimal("1.234") == Decimal("1.234")
        assert parse_decimal("1.234,0") == Decimal("1234.0")

    def test_blank_and_dash_are_zero(self):
        assert parse_decimal(None) == 0
        assert parse_decimal("") == 0
        assert parse_decimal("-") == 0

    def test_typed_cells(self):
        assert parse_decimal(3) == Decimal("3")
        assert parse_decimal(0.1) == Decimal("0.1")
        assert parse_decimal(Decimal("2.50")) == Decimal("2.50")

    def test_rejects_text(self):
        with pytest.raises(ValueError):
            parse_decimal("abc")
        with pytest.raises(ValueError):
            parse_decimal(True)

    def test_to_decimal_falls_back_to_default(self):
        assert to_decimal("n/a") == 0
        assert to_decimal("n/a", Decimal("-1")) == Decimal("-1")
        assert to_decimal("1,5") == Decimal("1.5")


class TestNormalizeCode:
    def test_float_cell_loses_trailing_zero(self):
        assert normalize_code(88316.0) == "88316"
        assert normalize_code("88316.0") == "88316"

    def test_hyperlink_formula(self):
        formula = '=HYPERLINK("https://example.invalid/88316","88316")'
        assert normalize_code(formula) == "88316"

    def test_plain_text_is_trimmed(self):
        assert normalize_code(" 00123 ") == "00123"
        assert normalize_code(None) == ""


class TestClassifyCategory:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("MÃO DE OBRA", ResourceCategory.LABOR),
            ("mao de obra", ResourceCategory.LABOR),
            ("EQUIPAMENTO", ResourceCategory.EQUIPMENT),
            ("SERVIÇOS", ResourceCategory.SERVICE),
            ("MATERIAL", ResourceCategory.MATERIAL),
            ("", ResourceCategory.MATERIAL),
            (None, ResourceCategory.MATERIAL),
        ],
    )
    def test_substring_heuristic(self, text, expected):
        assert classify_category(text) == expected

    def test_labor_markers_win_over_later_markers(self):
        # "OBRA" is checked before "SERVI"
        assert classify_category("SERVIÇO DE OBRA") == ResourceCategory.LABOR


def test_normalize_label_strips_accents_and_case():
    assert normalize_label("  Código da Composição ") == "codigo da composicao"
    assert normalize_label(None) == ""
