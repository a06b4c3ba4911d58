"""Recurring schedule arithmetic."""

from taxledger.scheduling.calculator import (
    FREQUENCY_STEPS,
    first_occurrence_on_or_after,
    next_occurrence,
)

__all__ = ["FREQUENCY_STEPS", "first_occurrence_on_or_after", "next_occurrence"]
