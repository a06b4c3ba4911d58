"""Recurring rules and their materialisation."""

from taxledger.recurring.engine import RecurringTransactionEngine

__all__ = ["RecurringTransactionEngine"]
