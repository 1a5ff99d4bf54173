"""Tests for PayPeriod and the money helpers."""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from payroll_kernel.domain.values import PayPeriod, as_utc, quantize_money, to_decimal
from payroll_kernel.exceptions import InvalidPeriodError


class TestPayPeriod:

    @pytest.mark.parametrize("text,code", [("2025-01", "2025-01"), ("2025-1", "2025-01"), (" 2024-12 ", "2024-12")])
    def test_parse(self, text, code):
        assert PayPeriod.parse(text).code == code

    @pytest.mark.parametrize("text", ["2025-13", "2025-0", "25-01", "2025/01", "", "0999-01"])
    def test_parse_rejects(self, text):
        with pytest.raises(InvalidPeriodError) as exc_info:
            PayPeriod.parse(text)
        assert exc_info.value.code == "INVALID_PERIOD"

    def test_non_string_rejected(self):
        with pytest.raises(InvalidPeriodError):
            PayPeriod.parse(202501)

    def test_window(self):
        assert PayPeriod(2024, 2).start_date == date(2024, 2, 1)
        assert PayPeriod(2024, 2).end_date == date(2024, 2, 29)
        assert PayPeriod(2025, 2).end_date == date(2025, 2, 28)

    def test_ordering_and_str(self):
        assert PayPeriod(2024, 12) < PayPeriod(2025, 1)
        assert str(PayPeriod(2025, 3)) == "2025-03"


class TestMoney:

    @pytest.mark.parametrize(
        "value,expected",
        [("1.005", "1.01"), ("1.004", "1.00"), ("-1.005", "-1.01"), ("2850", "2850.00")],
    )
    def test_quantize_half_up(self, value, expected):
        assert str(quantize_money(Decimal(value))) == expected

    def test_to_decimal(self):
        assert to_decimal(None) == Decimal("0")
        assert to_decimal(0.1) == Decimal("0.1")
        assert to_decimal("3000.000000000") == Decimal("3000")

    def test_as_utc(self):
        naive = datetime(2025, 1, 31, 12, 0)
        assert as_utc(naive).tzinfo == timezone.utc
        aware = datetime(2025, 1, 31, 12, 0, tzinfo=timezone.utc)
        assert as_utc(aware) is aware
        assert as_utc(None) is None
