"""
Schedule Calculator

Pure date arithmetic for recurring rules. No I/O, no clock: callers
pass in every date the answer depends on.

Calendar steps use `relativedelta`, which clamps the day of month to
the target month's length (Jan 31 + 1 month -> Feb 28/29, Feb 29 + 1 year
-> Feb 28). Each step starts from the previous occurrence, so a rule
anchored on the 31st drifts to the 28th after February and stays there.
"""

from datetime import date

from dateutil.relativedelta import relativedelta

from taxledger.models.ledger import Frequency


FREQUENCY_STEPS: dict[Frequency, relativedelta] = {
    Frequency.DAILY: relativedelta(days=1),
    Frequency.WEEKLY: relativedelta(weeks=1),
    Frequency.BI_WEEKLY: relativedelta(weeks=2),
    Frequency.MONTHLY: relativedelta(months=1),
    Frequency.QUARTERLY: relativedelta(months=3),
    Frequency.ANNUALLY: relativedelta(years=1),
}


def next_occurrence(frequency: Frequency, from_date: date) -> date:
    """
    The occurrence that follows `from_date`.

    Args:
        frequency: Rule frequency (already validated)
        from_date: The previous occurrence

    Returns:
        The next due date, always strictly after `from_date`
    """
    return from_date + FREQUENCY_STEPS[Frequency(frequency)]


def first_occurrence_on_or_after(frequency: Frequency, anchor: date, today: date) -> date:
    """
    Walk the chain anchored at `anchor` to the first date >= `today`.

    Used to seed `next_occurrence` for a new (or rescheduled) rule so that
    a start date in the past does not back-fill missed occurrences.
    """
    occurrence = anchor
    while occurrence < today:
        occurrence = next_occurrence(frequency, occurrence)
    return occurrence
