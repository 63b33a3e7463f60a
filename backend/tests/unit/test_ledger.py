from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from marketplace.core.ledger import (
    FULL_REFUND,
    NO_REFUND,
    PARTIAL_REFUND,
    compute_escrow_release_date,
    compute_fees,
    compute_refund_amount,
    compute_refund_percentage,
    from_minor_units,
    hours_until,
    to_minor_units,
    to_money,
)


class TestComputeFees:
    def test_ten_percent_fee_on_round_amount(self) -> None:
        assert compute_fees(Decimal("200.00"), Decimal("0.10")) == (
            Decimal("20.00"),
            Decimal("180.00"),
        )

    def test_fee_rounds_half_up_and_net_absorbs_remainder(self) -> None:
        fee, net = compute_fees("99.99", "0.10")
        assert fee == Decimal("10.00")
        assert net == Decimal("89.99")
        assert fee + net == Decimal("99.99")

    @pytest.mark.parametrize("amount", ["0.01", "0.05", "13.37", "1234.56", "9999.99"])
    def test_fee_plus_net_is_exact(self, amount: str) -> None:
        fee, net = compute_fees(amount, Decimal("0.15"))
        assert fee + net == Decimal(amount)

    def test_zero_rate_keeps_everything_for_provider(self) -> None:
        assert compute_fees(50, 0) == (Decimal("0.00"), Decimal("50.00"))

    @pytest.mark.parametrize("rate", ["-0.01", "1", "1.5"])
    def test_rate_outside_unit_interval_is_rejected(self, rate: str) -> None:
        with pytest.raises(ValueError):
            compute_fees(100, Decimal(rate))

    def test_negative_amount_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            compute_fees(-1, Decimal("0.10"))


class TestRefundPercentage:
    @pytest.mark.parametrize(
        ("hours", "expected"),
        [
            (72, FULL_REFUND),
            (24, FULL_REFUND),
            (23.99, PARTIAL_REFUND),
            (3, PARTIAL_REFUND),
            (2, PARTIAL_REFUND),
            (1.99, NO_REFUND),
            (0, NO_REFUND),
            (-5, NO_REFUND),
        ],
    )
    def test_notice_thresholds(self, hours: float, expected: Decimal) -> None:
        assert compute_refund_percentage(hours) == expected

    def test_refund_amount_for_partial_notice(self) -> None:
        assert compute_refund_amount(Decimal("200.00"), PARTIAL_REFUND) == Decimal("100.00")

    def test_refund_amount_rounds_half_up(self) -> None:
        assert compute_refund_amount(Decimal("0.05"), Decimal("0.5")) == Decimal("0.03")

    def test_refund_fraction_above_one_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            compute_refund_amount(100, Decimal("1.01"))


class TestTime:
    def test_escrow_release_date_defaults_to_fifteen_days(self) -> None:
        completed = datetime(2025, 1, 20, 9, 30, tzinfo=timezone.utc)
        assert compute_escrow_release_date(completed) == completed + timedelta(days=15)

    def test_hours_until_is_negative_after_start(self) -> None:
        start = datetime(2025, 1, 1, 10, tzinfo=timezone.utc)
        assert hours_until(start, start + timedelta(minutes=90)) == -1.5


class TestMinorUnits:
    def test_round_trip_through_centavos(self) -> None:
        assert to_minor_units(Decimal("180.00")) == 18000
        assert from_minor_units(18000) == Decimal("180.00")

    def test_floats_are_converted_through_their_repr(self) -> None:
        assert to_money(0.1) == Decimal("0.10")
        assert to_minor_units("10.005") == 1001
