"""
Tests for the schedule calculator.
"""

from datetime import date

import pytest

from taxledger.models.ledger import Frequency
from taxledger.scheduling import first_occurrence_on_or_after, next_occurrence


class TestNextOccurrence:
    """Tests for single calendar steps."""

    @pytest.mark.parametrize("frequency,expected", [
        (Frequency.DAILY, date(2025, 3, 11)),
        (Frequency.WEEKLY, date(2025, 3, 17)),
        (Frequency.BI_WEEKLY, date(2025, 3, 24)),
        (Frequency.MONTHLY, date(2025, 4, 10)),
        (Frequency.QUARTERLY, date(2025, 6, 10)),
        (Frequency.ANNUALLY, date(2026, 3, 10)),
    ])
    def test_each_frequency(self, frequency, expected):
        """Test one step for every frequency."""
        assert next_occurrence(frequency, date(2025, 3, 10)) == expected

    def test_accepts_frequency_string(self):
        """Test that the raw frequency value works as well as the enum."""
        assert next_occurrence("bi-weekly", date(2025, 1, 1)) == date(2025, 1, 15)

    def test_unknown_frequency_rejected(self):
        """Test that an unknown frequency raises instead of guessing."""
        with pytest.raises(ValueError):
            next_occurrence("fortnightly", date(2025, 1, 1))

    def test_month_end_clamps_to_february(self):
        """Test Jan 31 + 1 month lands on the last day of February."""
        assert next_occurrence(Frequency.MONTHLY, date(2025, 1, 31)) == date(2025, 2, 28)
        assert next_occurrence(Frequency.MONTHLY, date(2024, 1, 31)) == date(2024, 2, 29)

    def test_leap_day_annual(self):
        """Test Feb 29 + 1 year lands on Feb 28."""
        assert next_occurrence(Frequency.ANNUALLY, date(2024, 2, 29)) == date(2025, 2, 28)

    def test_quarterly_from_month_end(self):
        """Test Nov 30 + 3 months clamps to the end of February."""
        assert next_occurrence(Frequency.QUARTERLY, date(2024, 11, 30)) == date(2025, 2, 28)

    def test_chained_steps_drift_after_clamp(self):
        """Test that chaining steps from the previous occurrence keeps the clamped day."""
        first = next_occurrence(Frequency.MONTHLY, date(2025, 1, 31))
        second = next_occurrence(Frequency.MONTHLY, first)
        assert (first, second) == (date(2025, 2, 28), date(2025, 3, 28))

    @pytest.mark.parametrize("frequency", list(Frequency))
    def test_always_strictly_later(self, frequency):
        """Test the next occurrence is always after the input."""
        for start in (date(2024, 2, 29), date(2025, 1, 31), date(2025, 12, 31)):
            assert next_occurrence(frequency, start) > start

    @pytest.mark.parametrize("frequency", [Frequency.DAILY, Frequency.WEEKLY, Frequency.BI_WEEKLY])
    def test_fixed_steps_compose(self, frequency):
        """Test that n steps of a fixed-length frequency add up to n times the step."""
        start = date(2025, 1, 1)
        stepped = start
        for _ in range(10):
            stepped = next_occurrence(frequency, stepped)
        single = next_occurrence(frequency, start) - start
        assert stepped - start == single * 10

    def test_pure(self):
        """Test that the same input always gives the same output."""
        results = {next_occurrence(Frequency.MONTHLY, date(2025, 5, 31)) for _ in range(5)}
        assert results == {date(2025, 6, 30)}


class TestFirstOccurrenceOnOrAfter:
    """Tests for seeding next_occurrence."""

    def test_future_start_is_kept(self):
        """Test a start date after today is the first occurrence."""
        assert first_occurrence_on_or_after(
            Frequency.MONTHLY, date(2025, 4, 1), date(2025, 3, 1)
        ) == date(2025, 4, 1)

    def test_start_today(self):
        """Test a start date of today is due today."""
        assert first_occurrence_on_or_after(
            Frequency.WEEKLY, date(2025, 3, 1), date(2025, 3, 1)
        ) == date(2025, 3, 1)

    def test_past_start_walks_forward(self):
        """Test a past start date skips missed occurrences without back-filling."""
        assert first_occurrence_on_or_after(
            Frequency.WEEKLY, date(2025, 1, 1), date(2025, 1, 20)
        ) == date(2025, 1, 22)

    def test_past_month_end_start_follows_chain(self):
        """Test that the walk follows the same clamped chain as processing."""
        assert first_occurrence_on_or_after(
            Frequency.MONTHLY, date(2025, 1, 31), date(2025, 3, 1)
        ) == date(2025, 3, 28)
