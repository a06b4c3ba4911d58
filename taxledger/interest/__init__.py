"""Quarterly interest accrual."""

from taxledger.interest.accrual import InterestAccrualJob

__all__ = ["InterestAccrualJob"]
