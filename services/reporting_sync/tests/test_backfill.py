"""
Tests for the usage -> bundle instance backfill.
"""

from datetime import date, datetime, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import OperationalError

from services.reporting_sync.backfill import (
    RESET_TOTALS_SQL,
    TRIM_ICCIDS_SQL,
    UPDATE_TOTAL_SQL,
    InstancePeriod,
    UsageAggregate,
    aggregate_date_range,
    bytes_to_mb,
    find_overlapping,
    plan_backfill,
    run_backfill,
)

MB = 1024 * 1024


def ts(year, month, day, hour=0):
    return datetime(year, month, day, hour, tzinfo=timezone.utc)


def instance(id, iccid="8944001", moniker=None, sequence=None, start=None, end=None):
    return InstancePeriod(id=id, iccid=iccid, bundle_moniker=moniker, sequence=sequence,
                          start_time=start, end_time=end)


def usage(day, charged, iccid="8944001", moniker=None, sequence=None):
    return UsageAggregate(iccid=iccid, bundle_moniker=moniker, sequence=sequence,
                          usage_date=day, charged_bytes=charged)


class TestBytesToMb:

    @pytest.mark.parametrize("total,expected", [
        (0, 0),
        (2 * MB, 2),
        (MB // 2, 0),
        (int(1.5 * MB), 2),
        (int(2.5 * MB), 2),
        (int(2.6 * MB), 3),
    ])
    def test_rounding(self, total, expected):
        """Whole MB, rounding half to even."""
        assert bytes_to_mb(total) == expected


class TestPlanBackfill:
    """Test the two matching strategies."""

    def test_exact_match(self):
        instances = [instance(1, moniker="uk1gb", sequence=1, start=ts(2025, 1, 1), end=ts(2025, 1, 31))]
        rows = [
            usage(date(2025, 1, 5), MB, moniker="uk1gb", sequence=1),
            usage(date(2025, 1, 6), MB, moniker="uk1gb", sequence=1),
        ]

        plan = plan_backfill(rows, instances)

        assert plan.exact == {1: 2}
        assert plan.date_range == {}

    def test_exact_takes_precedence_over_date_range(self):
        """An exact-matched instance is not revisited by the date range pass."""
        instances = [instance(1, moniker="uk1gb", sequence=1, start=ts(2025, 1, 1), end=ts(2025, 1, 31))]
        rows = [
            usage(date(2025, 1, 5), 2 * MB, moniker="uk1gb", sequence=1),
            usage(date(2025, 1, 6), 8 * MB),
        ]

        plan = plan_backfill(rows, instances)

        assert plan.exact == {1: 2}
        assert 1 not in plan.date_range
        assert plan.updates() == [{"id": 1, "data_used_mb": 2}]

    def test_date_range_fallback(self):
        instances = [
            instance(1, moniker="uk1gb", sequence=1, start=ts(2025, 1, 1), end=ts(2025, 1, 31)),
            instance(2, start=ts(2025, 2, 1), end=ts(2025, 2, 28)),
        ]
        rows = [
            usage(date(2025, 1, 5), 2 * MB, moniker="uk1gb", sequence=1),
            usage(date(2025, 2, 10), MB),
        ]

        plan = plan_backfill(rows, instances)

        assert plan.exact == {1: 2}
        assert plan.date_range == {2: 1}

    def test_no_usage_leaves_instance_unset(self):
        plan = plan_backfill([], [instance(1, start=ts(2025, 1, 1), end=ts(2025, 1, 31))])
        assert plan.updates() == []


class TestDateRange:

    def test_range_is_inclusive_on_dates(self):
        """Start and end are compared as dates, so boundary days count."""
        periods = [instance(1, start=ts(2025, 1, 1, 18), end=ts(2025, 1, 3, 6))]
        rows = [
            usage(date(2025, 1, 1), 1),
            usage(date(2025, 1, 3), 2),
            usage(date(2025, 1, 4), 4),
        ]
        assert aggregate_date_range(rows, periods) == {1: 3}

    def test_other_iccids_ignored(self):
        periods = [instance(1, start=ts(2025, 1, 1), end=ts(2025, 1, 31))]
        rows = [usage(date(2025, 1, 2), 5, iccid="8944999")]
        assert aggregate_date_range(rows, periods) == {}

    def test_open_period_skipped(self):
        periods = [instance(1, start=ts(2025, 1, 1), end=None)]
        rows = [usage(date(2025, 1, 2), 5)]
        assert aggregate_date_range(rows, periods) == {}


class TestOverlap:
    """Test overlapping period detection."""

    def test_overlapping_periods_flagged(self):
        periods = [
            instance(1, start=ts(2025, 1, 1), end=ts(2025, 1, 20)),
            instance(2, start=ts(2025, 1, 10), end=ts(2025, 1, 31)),
        ]
        rows = [usage(date(2025, 1, 15), MB)]

        plan = plan_backfill(rows, periods)

        # Both instances are credited the shared day; reported, not corrected
        assert plan.date_range == {1: 1, 2: 1}
        assert plan.overlapping == [1, 2]

    def test_overlap_that_skips_a_neighbour(self):
        periods = [
            instance("w", start=ts(2025, 1, 1), end=ts(2025, 3, 31)),
            instance("x", start=ts(2025, 2, 1), end=ts(2025, 2, 5)),
            instance("y", start=ts(2025, 3, 1), end=ts(2025, 3, 5)),
        ]
        assert find_overlapping(periods, ["w", "x", "y"]) == ["w", "x", "y"]

    def test_adjacent_periods_not_flagged(self):
        periods = [
            instance(1, start=ts(2025, 1, 1), end=ts(2025, 1, 31)),
            instance(2, start=ts(2025, 2, 1), end=ts(2025, 2, 28)),
        ]
        assert find_overlapping(periods, [1, 2]) == []


class TestRunBackfill:
    """Test the database pass against a mocked connection."""

    def test_full_pass(self, mock_conn):
        usage_rows = [
            SimpleNamespace(iccid="8944001", bundle_moniker="uk1gb", sequence=1,
                            usage_date=date(2025, 1, 5), charged_bytes=2 * MB),
        ]
        instance_rows = [
            SimpleNamespace(id=10, iccid="8944001", bundle_moniker="uk1gb", sequence=1,
                            start_time=ts(2025, 1, 1), end_time=ts(2025, 1, 31)),
        ]
        mock_conn.execute.side_effect = [
            SimpleNamespace(rowcount=1),
            SimpleNamespace(rowcount=3),
            usage_rows,
            instance_rows,
            SimpleNamespace(rowcount=1),
        ]

        result = run_backfill(mock_conn)

        assert result.error is None
        assert result.iccids_trimmed == 1
        assert result.instances_reset == 3
        assert result.exact_matched == 1
        assert result.date_range_matched == 0
        mock_conn.begin.assert_called_once()

        calls = mock_conn.execute.call_args_list
        assert calls[0][0][0] is TRIM_ICCIDS_SQL
        assert calls[1][0][0] is RESET_TOTALS_SQL
        assert calls[4][0] == (UPDATE_TOTAL_SQL, [{"id": 10, "data_used_mb": 2}])

    def test_no_updates_when_nothing_matches(self, mock_conn):
        mock_conn.execute.side_effect = [
            SimpleNamespace(rowcount=0),
            SimpleNamespace(rowcount=0),
            [],
            [],
        ]

        result = run_backfill(mock_conn)

        assert result.success
        assert mock_conn.execute.call_count == 4

    def test_database_error_is_recorded(self, mock_conn):
        mock_conn.execute.side_effect = OperationalError("UPDATE", {}, Exception("connection lost"))

        result = run_backfill(mock_conn)

        assert not result.success
        assert result.error.startswith("OperationalError")
        assert "error" in result.to_dict()
