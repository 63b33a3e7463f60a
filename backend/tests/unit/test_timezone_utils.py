from datetime import datetime, timedelta, timezone

from marketplace.core.timezone_utils import ensure_utc, subtract_months


def test_ensure_utc_assumes_naive_values_are_utc() -> None:
    naive = datetime(2025, 5, 1, 8, 0)
    assert ensure_utc(naive) == datetime(2025, 5, 1, 8, 0, tzinfo=timezone.utc)


def test_ensure_utc_converts_other_offsets() -> None:
    sao_paulo = timezone(timedelta(hours=-3))
    value = datetime(2025, 5, 1, 8, 0, tzinfo=sao_paulo)
    assert ensure_utc(value) == datetime(2025, 5, 1, 11, 0, tzinfo=timezone.utc)


def test_ensure_utc_passes_none_through() -> None:
    assert ensure_utc(None) is None


def test_subtract_months_clamps_to_month_end() -> None:
    value = datetime(2025, 8, 31, 12, 0, tzinfo=timezone.utc)
    assert subtract_months(value, 6) == datetime(2025, 2, 28, 12, 0, tzinfo=timezone.utc)


def test_subtract_months_crosses_year_boundary() -> None:
    value = datetime(2025, 3, 15, tzinfo=timezone.utc)
    assert subtract_months(value, 6) == datetime(2024, 9, 15, tzinfo=timezone.utc)
