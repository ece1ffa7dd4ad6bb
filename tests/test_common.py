from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from common.retry import retry_call, calculate_delay, RetryConfig, DATABASE_RETRY_CONFIG
from common.money import to_cents, from_cents, percent_to_bps, bps_to_percent, apply_bps, apply_percent, format_percent


class TestMoney:
    def test_to_cents_rounds_half_up(self):
        assert to_cents("19.995") == 2000
        assert to_cents(Decimal("0.004")) == 0
        assert to_cents(30) == 3000

    def test_from_cents_has_two_places(self):
        assert str(from_cents(2700)) == "27.00"
        assert str(from_cents(-5)) == "-0.05"

    def test_commission_rounding(self):
        """10% of $30 is exactly $3; 12.5% of $9.99 rounds up to $1.25."""
        assert apply_bps(3000, percent_to_bps(10)) == 300
        assert apply_bps(999, 1250) == 125

    @pytest.mark.parametrize("cents, pct, expected", [(10000, 30, 3000), (1001, "33.33", 334), (1, 50, 1)])
    def test_apply_percent(self, cents, pct, expected):
        assert apply_percent(cents, pct) == expected

    def test_percent_formatting(self):
        assert format_percent(Decimal("30.00")) == "30"
        assert format_percent("33.50") == "33.5"
        assert str(bps_to_percent(1250)) == "12.50"


class TestRetry:
    def test_storage_errors_are_retried(self):
        calls, sleeps = [], []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise OperationalError("UPDATE escrows", {}, Exception("database is locked"))
            return "done"

        assert retry_call(flaky, DATABASE_RETRY_CONFIG, sleep=sleeps.append) == "done"
        assert len(calls) == 3
        assert len(sleeps) == 2

    def test_gives_up_after_max_attempts(self):
        def always_locked():
            raise OperationalError("UPDATE escrows", {}, Exception("database is locked"))

        with pytest.raises(OperationalError):
            retry_call(always_locked, DATABASE_RETRY_CONFIG, sleep=lambda _: None)

    def test_business_errors_are_not_retried(self):
        calls = []

        def rejected():
            calls.append(1)
            raise ValueError("not transient")

        with pytest.raises(ValueError):
            retry_call(rejected, DATABASE_RETRY_CONFIG, sleep=lambda _: None)
        assert calls == [1]

    def test_delay_is_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=4.0, jitter=False)
        assert [calculate_delay(n, config) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 4.0]
