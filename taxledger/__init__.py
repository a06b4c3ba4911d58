"""
Tax Savings Ledger - Source Package

Savings accounts, recurring transactions, quarterly interest and
subscription billing behind a Paystack checkout.

DESIGN PRINCIPLES:
1. The gateway is the source of truth for payment status
2. Every reference settles at most once
3. Balances only move together with a ledger entry
4. Every money movement must be auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Tax Savings Ledger Team"
