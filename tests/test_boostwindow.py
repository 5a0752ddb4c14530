"""Tests for boost activation windows."""

from datetime import datetime, timedelta, timezone

import pytest

from tixgate.boostwindow import (
    compute_boost_window, is_active, is_boost_active, parse_instant,
)

T = datetime(2025, 6, 1, 10, 0, tzinfo=timezone.utc)


class TestHourly:
    def test_window_runs_from_creation(self):
        w = compute_boost_window({
            "durationMode": "hourly",
            "createdAt": T.isoformat(),
            "durationHours": 2,
        })
        assert w.start == T
        assert w.end == T + timedelta(hours=2)
        assert is_active(w, T + timedelta(hours=1))
        assert not is_active(w, T + timedelta(hours=3))

    def test_ignores_start_date(self):
        w = compute_boost_window({
            "duration_mode": "hourly",
            "start_date": "2025-01-01",
            "created_at": "2025-06-01T10:00:00Z",
            "duration_hours": 1,
        })
        assert w.start == T

    def test_missing_hours_collapses_to_instant(self):
        w = compute_boost_window({
            "durationMode": "hourly", "createdAt": "2025-06-01T10:00:00Z",
        })
        assert w.start == w.end == T
        assert is_active(w, T)
        assert not is_active(w, T + timedelta(seconds=1))

    def test_no_created_at_means_no_window(self):
        assert compute_boost_window(
            {"durationMode": "hourly", "durationHours": 3}
        ) is None


class TestDaily:
    def test_date_only_range_covers_whole_days(self):
        w = compute_boost_window({
            "durationMode": "daily",
            "startDate": "2025-06-01",
            "endDate": "2025-06-03",
        })
        assert w.as_dict() == {
            "start": "2025-06-01T00:00:00.000Z",
            "end": "2025-06-03T23:59:59.999Z",
        }

    def test_default_mode_is_daily(self):
        w = compute_boost_window(
            {"startDate": "2025-06-01", "endDate": "2025-06-01"}
        )
        assert is_active(w, "2025-06-01T23:59:59Z")
        assert not is_active(w, "2025-06-02T00:00:00Z")

    def test_time_qualified_dates_are_exact(self):
        w = compute_boost_window({
            "startDate": "2025-06-01T08:30:00+02:00",
            "endDate": "2025-06-01T18:00:00Z",
        })
        assert w.start == datetime(2025, 6, 1, 6, 30, tzinfo=timezone.utc)
        assert w.end == datetime(2025, 6, 1, 18, 0, tzinfo=timezone.utc)

    def test_naive_timestamps_are_utc(self):
        w = compute_boost_window({
            "startDate": "2025-06-01T10:00:00",
            "endDate": "2025-06-01T11:00:00",
        })
        assert w.start == T

    def test_falls_back_to_created_at(self):
        w = compute_boost_window({
            "createdAt": "2025-06-01T10:00:00Z", "durationHours": 5,
        })
        assert w.start == T
        assert w.end == T + timedelta(hours=5)

        w = compute_boost_window({"createdAt": "2025-06-01T10:00:00Z"})
        assert w.start == w.end == T

    def test_end_before_start_is_no_window(self):
        assert compute_boost_window({
            "startDate": "2025-06-03", "endDate": "2025-06-01",
        }) is None

    def test_nothing_to_start_from(self):
        assert compute_boost_window({"endDate": "2025-06-03"}) is None
        assert compute_boost_window({}) is None

    def test_garbage_dates(self):
        assert compute_boost_window({
            "startDate": "soon", "endDate": "2025-06-03",
        }) is None


class TestDeactivation:
    def test_deactivation_cuts_window_short(self):
        record = {
            "startDate": "2025-06-01",
            "endDate": "2025-06-10",
            "deactivatedAt": "2025-06-02T12:00:00Z",
        }
        assert is_boost_active(record, "2025-06-02T11:00:00Z")
        assert not is_boost_active(record, "2025-06-05T00:00:00Z")

    def test_deactivated_before_start(self):
        assert compute_boost_window({
            "startDate": "2025-06-05",
            "endDate": "2025-06-10",
            "deactivatedAt": "2025-06-01T00:00:00Z",
        }) is None


def test_no_window_is_never_active():
    assert not is_active(None, T)


def test_parse_instant_accepts_epoch_seconds():
    assert parse_instant(T.timestamp()) == T
    assert parse_instant("") is None
    assert parse_instant(True) is None


@pytest.mark.parametrize("raw", [
    "2025-06-01 10:00:00.12+00",
    "2025-06-01T12:00:00.120+0200",
    "2025-06-01T10:00:00.1200001Z",
])
def test_parse_instant_reads_database_timestamps(raw):
    assert parse_instant(raw) == T.replace(microsecond=120000)


def test_hourly_window_from_postgres_created_at():
    window = compute_boost_window({
        "durationMode": "hourly",
        "createdAt": "2025-06-01 10:00:00+00",
        "durationHours": 2,
    })
    assert window.start == T
    assert window.end == T + timedelta(hours=2)
