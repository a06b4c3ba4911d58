"""
Interest Accrual Job

Credits quarterly interest to every eligible tax-savings account.

Eligible means: positive balance and no withdrawal this quarter.
Interest = balance x (annual rate / 4), rounded half-up to kobo.

DESIGN DECISION: The job is NOT self-limiting. Running it twice in a
quarter credits twice. Quarter gating belongs to the scheduler that
calls it, and the start-of-quarter flag reset is a separate operation
(`reset_withdrawal_flags`) that this run never calls.

CRITICAL: Each credit is applied with `expected_balance` set to the
balance the interest was computed from. If a deposit lands in between,
the conditional update fails and the account is reported as an error
instead of being credited interest on a stale balance.
"""

from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

import structlog

from taxledger.audit import AuditLogger, create_correlation_id
from taxledger.config import AppSettings
from taxledger.models.audit import AuditEventBuilder
from taxledger.models.ledger import (
    AccrualError,
    EntryType,
    InterestRunResult,
    NewLedgerEntry,
    utcnow,
)
from taxledger.models.money import round_money
from taxledger.services.storage import LedgerStorageInterface


logger = structlog.get_logger("taxledger.interest")


def _percent_label(rate: Decimal) -> str:
    return format((rate * 100).normalize(), "f")


class InterestAccrualJob:
    """Quarterly interest credit over all eligible accounts."""

    def __init__(
        self,
        storage: LedgerStorageInterface,
        settings: AppSettings,
        audit_logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._storage = storage
        self._settings = settings
        self._audit_logger = audit_logger
        self._clock = clock

    async def run(self) -> InterestRunResult:
        """
        Credit one quarter's interest to every eligible account.

        Never fails wholesale: an account that can't be credited is listed
        in `errors` and the run continues.
        """
        correlation_id = create_correlation_id()
        rate = self._settings.quarterly_interest_rate
        description = f"Quarterly interest payment ({_percent_label(rate)}%)"

        accounts = await self._storage.list_interest_eligible_accounts()
        result = InterestRunResult(ran_at=self._clock())
        total = Decimal("0.00")

        logger.info("interest_run_started", eligible=len(accounts), rate=str(rate))

        for account in accounts:
            interest = round_money(account.balance * rate)
            if interest <= 0:
                # Balance too small to earn a whole kobo
                continue

            entry = NewLedgerEntry(
                type=EntryType.INTEREST,
                amount=interest,
                description=description,
                metadata={
                    "rate": str(rate),
                    "balance_at_calculation": str(account.balance),
                },
            )

            try:
                outcome = await self._storage.apply_entry(
                    account.id,
                    entry,
                    expected_balance=account.balance,
                )
            except Exception as e:
                logger.error("interest_account_failed", account_id=str(account.id), error=str(e))
                result.errors.append(AccrualError(account_id=account.id, error=str(e)))
                if self._audit_logger:
                    await self._audit_logger.log_interest_account_failed(
                        account_id=account.id,
                        error_message=str(e),
                        correlation_id=correlation_id,
                    )
                continue

            applied = outcome.record
            result.processed += 1
            total += interest
            if self._audit_logger and applied is not None:
                await self._audit_logger.log_interest_credited(
                    account_id=account.id,
                    interest=str(interest),
                    balance_after=str(applied.entry.balance_after),
                    rate=str(rate),
                    correlation_id=correlation_id,
                )

        result.total_interest = total
        logger.info(
            "interest_run_completed",
            processed=result.processed,
            failed=len(result.errors),
            total_interest=str(total),
        )
        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.interest_run_completed(
                processed=result.processed,
                failed=len(result.errors),
                total_interest=str(total),
                correlation_id=correlation_id,
            ))
        return result

    async def reset_withdrawal_flags(self) -> int:
        """
        Start-of-quarter maintenance: make every account eligible again.

        Returns:
            Number of accounts whose flag was cleared
        """
        reset_count = await self._storage.reset_withdrawal_flags()
        logger.info("withdrawal_flags_reset", reset_count=reset_count)
        if self._audit_logger:
            await self._audit_logger.log(AuditEventBuilder.withdrawal_flags_reset(reset_count))
        return reset_count
