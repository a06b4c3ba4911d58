"""Withdrawal requests and admin processing."""

from taxledger.withdrawals.processor import (
    WithdrawalAction,
    WithdrawalProcessor,
    withdrawal_reference,
)

__all__ = ["WithdrawalAction", "WithdrawalProcessor", "withdrawal_reference"]
