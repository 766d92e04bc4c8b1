"""
Tests for historical EUR conversion.
"""
import json
from datetime import date
from decimal import Decimal

import pytest

from taxfolio.errors import RateUnavailable
from taxfolio.services import CurrencyConverter, RateTable
from taxfolio.services.currency_converter import to_cents


class TestRateTable:
    """Nearest prior observation lookup."""

    def test_exact_date(self, rate_table):
        assert rate_table.lookup("USD", date(2024, 1, 2)) == (date(2024, 1, 2), Decimal("1.0956"))

    def test_weekend_uses_previous_fixing(self, rate_table):
        found_date, rate = rate_table.lookup("usd", date(2024, 1, 6))
        assert found_date == date(2024, 1, 2)
        assert rate == Decimal("1.0956")

    def test_before_first_observation(self, rate_table):
        assert rate_table.lookup("USD", date(2022, 12, 31)) is None

    def test_unknown_currency(self, rate_table):
        assert rate_table.lookup("JPY", date(2024, 1, 2)) is None

    def test_replace_observation(self, rate_table):
        count = len(rate_table)
        rate_table.add_rate("USD", date(2024, 1, 2), Decimal("1.1"))
        assert len(rate_table) == count
        assert rate_table.lookup("USD", date(2024, 1, 2))[1] == Decimal("1.1")

    def test_out_of_order_inserts_stay_sorted(self):
        table = RateTable()
        table.add_rate("USD", date(2024, 3, 1), Decimal("1.08"))
        table.add_rate("USD", date(2024, 1, 1), Decimal("1.10"))
        assert table.lookup("USD", date(2024, 2, 1)) == (date(2024, 1, 1), Decimal("1.10"))

    def test_non_positive_rate_rejected(self):
        with pytest.raises(ValueError):
            RateTable().add_rate("USD", date(2024, 1, 1), Decimal("0"))

    def test_load_ecb_json(self, tmp_path):
        path = tmp_path / "rates.json"
        path.write_text(json.dumps({"root": {"Obs": [
            {"_TIME_PERIOD": "2024-01-02", "_OBS_VALUE": "1.0956", "_CCY": "USD"},
            {"_TIME_PERIOD": "2024-01-02", "_OBS_VALUE": "0.8670", "_CCY": "GBP"},
            {"_TIME_PERIOD": "not a date", "_OBS_VALUE": "1", "_CCY": "USD"},
            {"_TIME_PERIOD": "2024-01-03", "_CCY": "USD"},
        ]}}))
        table = RateTable.from_ecb_json(path)
        assert len(table) == 2
        assert table.currencies() == ["GBP", "USD"]


class TestCurrencyConverter:
    """Conversion into EUR."""

    @pytest.fixture
    def converter(self, rate_table):
        return CurrencyConverter(rate_table)

    def test_eur_is_identity(self, converter):
        converted = converter.convert(Decimal("12.345"), "EUR", date(2000, 1, 1))
        assert converted.rate == Decimal("1")
        assert converted.amount == Decimal("12.35")

    def test_usd(self, converter):
        converted = converter.convert(Decimal("-1095.60"), "USD", date(2024, 1, 3))
        assert converted.rate == Decimal("1.0956")
        assert converted.amount == Decimal("-1000.00")

    def test_missing_rate(self, converter):
        with pytest.raises(RateUnavailable) as exc_info:
            converter.convert(Decimal("1"), "USD", date(2020, 1, 1))
        assert exc_info.value.currency == "USD"
        assert exc_info.value.category == "processing"

    def test_only_eur_reporting(self, rate_table):
        with pytest.raises(ValueError):
            CurrencyConverter(rate_table, reporting_currency="USD")


class TestRounding:
    def test_half_up(self):
        assert to_cents(Decimal("0.125")) == Decimal("0.13")
        assert to_cents(Decimal("-0.125")) == Decimal("-0.13")
