"""
Tests for the quarterly interest accrual job.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from taxledger.interest import InterestAccrualJob
from taxledger.models.ledger import EntryType, NewLedgerEntry
from taxledger.services.storage import ConcurrentUpdateError, SqlLedgerStorage


async def funded_account(storage, amount: str, reference: str = None):
    account = await storage.get_or_create_account(uuid4())
    await storage.apply_entry(account.id, NewLedgerEntry(
        type=EntryType.DEPOSIT,
        amount=Decimal(amount),
        gateway_reference=reference or f"TAX_SAV_{uuid4().hex[:12]}",
    ))
    return await storage.get_account(account.id)


class RacingLedgerStorage(SqlLedgerStorage):
    """Lands a deposit between reading eligible accounts and crediting them."""

    async def list_interest_eligible_accounts(self):
        accounts = await super().list_interest_eligible_accounts()
        for account in accounts:
            await self.apply_entry(account.id, NewLedgerEntry(
                type=EntryType.DEPOSIT,
                amount=Decimal("1.00"),
                gateway_reference=f"TAX_SAV_race_{account.id.hex[:8]}",
            ))
        return accounts


@pytest.fixture
def job(ledger_storage, settings, audit_logger, clock):
    return InterestAccrualJob(ledger_storage, settings.app, audit_logger=audit_logger, clock=clock)


class TestInterestRun:
    """Tests for a single accrual run."""

    async def test_quarter_of_annual_rate(self, job, ledger_storage):
        """Test 100,000 at 10% a year earns 2,500.00 for the quarter."""
        account = await funded_account(ledger_storage, "100000")

        result = await job.run()

        assert result.processed == 1
        assert result.errors == []
        assert result.total_interest == Decimal("2500.00")

        refreshed = await ledger_storage.get_account(account.id)
        assert refreshed.balance == Decimal("102500.00")
        assert refreshed.total_interest_earned == Decimal("2500.00")
        assert refreshed.last_interest_date is not None

        entries = await ledger_storage.list_entries(account.id)
        interest = [e for e in entries if e.type == EntryType.INTEREST]
        assert len(interest) == 1
        assert interest[0].amount == Decimal("2500.00")
        assert interest[0].balance_after == Decimal("102500.00")
        assert interest[0].description == "Quarterly interest payment (2.5%)"
        assert interest[0].metadata == {"rate": "0.025", "balance_at_calculation": "100000.00"}

    async def test_rounds_half_up(self, job, ledger_storage):
        """Test interest is rounded half-up to kobo."""
        account = await funded_account(ledger_storage, "1234.50")

        await job.run()

        # 1234.50 * 0.025 = 30.8625 -> 30.86
        refreshed = await ledger_storage.get_account(account.id)
        assert refreshed.balance == Decimal("1265.36")

    async def test_skips_accounts_with_withdrawal(self, job, ledger_storage):
        """Test an account that withdrew this quarter earns nothing."""
        account = await funded_account(ledger_storage, "50000")
        await ledger_storage.apply_entry(account.id, NewLedgerEntry(
            type=EntryType.WITHDRAWAL,
            amount=Decimal("1000"),
            reference="WDR_test",
        ))

        result = await job.run()

        assert result.processed == 0
        refreshed = await ledger_storage.get_account(account.id)
        assert refreshed.balance == Decimal("49000.00")

    async def test_skips_empty_and_tiny_balances(self, job, ledger_storage):
        """Test zero balances are not eligible and sub-kobo interest is skipped."""
        await ledger_storage.get_or_create_account(uuid4())
        tiny = await funded_account(ledger_storage, "0.10")

        result = await job.run()

        assert result.processed == 0
        assert result.total_interest == Decimal("0.00")
        assert (await ledger_storage.get_account(tiny.id)).balance == Decimal("0.10")

    async def test_not_self_limiting(self, job, ledger_storage):
        """Test that running twice credits twice (gating is the scheduler's job)."""
        account = await funded_account(ledger_storage, "100000")

        await job.run()
        await job.run()

        refreshed = await ledger_storage.get_account(account.id)
        assert refreshed.balance == Decimal("105062.50")

    async def test_stale_balance_is_reported_not_credited(self, database, settings, clock):
        """Test a deposit racing the run makes that account an error, not a wrong credit."""
        storage = RacingLedgerStorage(database)
        account = await funded_account(storage, "100000")
        job = InterestAccrualJob(storage, settings.app, clock=clock)

        result = await job.run()

        assert result.processed == 0
        assert len(result.errors) == 1
        assert result.errors[0].account_id == account.id
        refreshed = await storage.get_account(account.id)
        assert refreshed.balance == Decimal("100001.00")
        assert refreshed.total_interest_earned == Decimal("0.00")

    async def test_one_failure_does_not_stop_the_run(self, job, ledger_storage, monkeypatch):
        """Test that other accounts are still credited when one fails."""
        good = await funded_account(ledger_storage, "10000")
        bad = await funded_account(ledger_storage, "20000")
        original = ledger_storage.apply_entry

        async def apply_entry(account_id, entry, expected_balance=None):
            if account_id == bad.id:
                raise ConcurrentUpdateError("balance moved")
            return await original(account_id, entry, expected_balance=expected_balance)

        monkeypatch.setattr(ledger_storage, "apply_entry", apply_entry)

        result = await job.run()

        assert result.processed == 1
        assert [e.account_id for e in result.errors] == [bad.id]
        assert (await ledger_storage.get_account(good.id)).balance == Decimal("10250.00")

    async def test_audit_events(self, job, ledger_storage, audit_storage):
        """Test the run leaves per-account and summary audit events under one correlation id."""
        await funded_account(ledger_storage, "100000")

        await job.run()

        credited = [e for e in audit_storage.events if e.event_type.value == "interest_credited"]
        completed = [e for e in audit_storage.events if e.event_type.value == "interest_run_completed"]
        assert len(credited) == 1 and len(completed) == 1
        assert credited[0].correlation_id == completed[0].correlation_id


class TestWithdrawalFlagReset:
    """Tests for the start-of-quarter maintenance task."""

    async def test_reset_restores_eligibility(self, job, ledger_storage, audit_storage):
        """Test clearing the flag makes the account earn interest again."""
        account = await funded_account(ledger_storage, "40000")
        await ledger_storage.apply_entry(account.id, NewLedgerEntry(
            type=EntryType.WITHDRAWAL,
            amount=Decimal("10000"),
            reference="WDR_reset",
        ))

        assert await job.reset_withdrawal_flags() == 1
        assert await job.reset_withdrawal_flags() == 0

        result = await job.run()
        assert result.processed == 1
        assert (await ledger_storage.get_account(account.id)).balance == Decimal("30750.00")
        assert "withdrawal_flags_reset" in audit_storage.types()
