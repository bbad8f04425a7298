"""
Tests for watermark selection in the table pipelines.
"""

import pytest

from services.reporting_sync.pipelines import is_newer, safe_watermark

T1 = "2025-01-05T10:00:00+00:00"
T2 = "2025-01-05T11:00:00+00:00"
T3 = "2025-01-05T12:00:00+00:00"


class TestSafeWatermark:
    """Test the cursor value committed after a partial or capped fetch."""

    def test_complete_fetch_uses_last_value(self):
        assert safe_watermark([T1, T2, T3], processed=3) == T3

    def test_capped_fetch_backs_off_last_value(self):
        """Unfetched rows may still carry the last fetched value."""
        assert safe_watermark([T1, T2, T3], processed=3, truncated=True) == T2

    def test_capped_fetch_backs_off_whole_tie(self):
        assert safe_watermark([T1, T2, T2, T2], processed=4, truncated=True) == T1

    def test_all_tied_capped_fetch(self):
        assert safe_watermark([T1, T1, T1], processed=3, truncated=True) is None

    @pytest.mark.parametrize("processed,expected", [
        (1, T1),
        (2, T1),
        (3, T2),
        (4, T3),
    ])
    def test_partial_progress_inside_tie(self, processed, expected):
        """A chunk ending between rows sharing T2 commits the value before them."""
        assert safe_watermark([T1, T2, T2, T3], processed) == expected

    def test_nothing_processed(self):
        assert safe_watermark([T1, T2], processed=0) is None

    def test_missing_values_skipped(self):
        assert safe_watermark([T1, None], processed=2) == T1


class TestIsNewer:

    def test_compares_instants(self):
        assert is_newer("2025-01-05T11:00:00+01:00", "2025-01-05T09:30:00Z") is True
        assert is_newer("2025-01-05T10:00:00+01:00", "2025-01-05T09:30:00Z") is False

    def test_any_fraction_precision(self):
        """Five-digit fractions compare as instants, not strings."""
        assert is_newer("2025-01-05T10:00:00.12345+02:00", "2025-01-05T09:00:00Z") is False
        assert is_newer("2025-01-05T10:00:00.12345+00:00", "2025-01-05T10:00:00.1234+00:00") is True

    @pytest.mark.parametrize("candidate,current,expected", [
        (None, T1, False),
        ("", T1, False),
        (T1, None, True),
        (T1, T1, False),
    ])
    def test_missing_and_equal(self, candidate, current, expected):
        assert is_newer(candidate, current) is expected
