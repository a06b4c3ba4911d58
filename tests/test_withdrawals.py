"""
Tests for withdrawal requests and admin processing.
"""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from taxledger.errors import (
    AccountNotFoundError,
    ForbiddenError,
    InsufficientFundsError,
    NotFoundError,
    ValidationError,
)
from taxledger.models.ledger import EntryType, NewLedgerEntry, WithdrawalStatus
from taxledger.services.identity import Principal
from taxledger.withdrawals import WithdrawalProcessor, withdrawal_reference


BANK_DETAILS = {
    "bank_name": "First Bank",
    "account_number": "0123456789",
    "account_name": "Ada Saver",
}


@pytest.fixture
def processor(ledger_storage, audit_logger, clock):
    return WithdrawalProcessor(ledger_storage, audit_logger=audit_logger, clock=clock)


@pytest.fixture
async def account(ledger_storage, user_id):
    account = await ledger_storage.get_or_create_account(user_id)
    await ledger_storage.apply_entry(account.id, NewLedgerEntry(
        type=EntryType.DEPOSIT,
        amount=Decimal("20000"),
        gateway_reference="TAX_SAV_seed",
    ))
    return account


@pytest.fixture
async def admin(ledger_storage):
    admin_id = uuid4()
    await ledger_storage.grant_role(admin_id, "admin")
    return Principal(user_id=admin_id, email="admin@example.com")


class TestRequestWithdrawal:
    """Tests for filing a request."""

    async def test_creates_pending_request(self, processor, user, account, ledger_storage):
        """Test a valid request is stored as pending and moves no money."""
        request = await processor.request_withdrawal(user, {"amount": "5000", **BANK_DETAILS})

        assert request.status == WithdrawalStatus.PENDING
        assert request.account_id == account.id
        assert request.amount == Decimal("5000.00")
        assert (await ledger_storage.get_account(account.id)).balance == Decimal("20000.00")

    async def test_more_than_balance(self, processor, user, account):
        """Test a request larger than the balance is refused."""
        with pytest.raises(InsufficientFundsError):
            await processor.request_withdrawal(user, {"amount": "20000.01", **BANK_DETAILS})

    async def test_bank_transfer_needs_bank_details(self, processor, user, account):
        """Test that a bank transfer without an account number is invalid."""
        with pytest.raises(ValidationError):
            await processor.request_withdrawal(user, {"amount": "100", "bank_name": "First Bank"})

    async def test_tax_payment_without_bank_details(self, processor, user, account):
        """Test a tax payment withdrawal needs no bank details."""
        request = await processor.request_withdrawal(
            user, {"amount": "100", "withdrawal_type": "tax_payment"}
        )
        assert request.bank_name is None

    async def test_no_account(self, processor, user):
        """Test a user without an account can't request a withdrawal."""
        with pytest.raises(AccountNotFoundError):
            await processor.request_withdrawal(user, {"amount": "100", **BANK_DETAILS})


class TestProcessWithdrawal:
    """Tests for admin decisions."""

    @pytest.fixture
    async def pending(self, processor, user, account):
        return await processor.request_withdrawal(user, {"amount": "5000", **BANK_DETAILS})

    async def test_approve_debits_once(self, processor, admin, pending, account, ledger_storage, clock):
        """Test approval debits the balance, writes the entry and completes the request."""
        processed = await processor.process_withdrawal(admin, pending.id, "approve", "paid out")

        assert processed.status == WithdrawalStatus.COMPLETED
        assert processed.processed_by == admin.user_id
        assert processed.processed_at == clock()
        assert processed.notes == "paid out"

        refreshed = await ledger_storage.get_account(account.id)
        assert refreshed.balance == Decimal("15000.00")
        assert refreshed.total_withdrawals == Decimal("5000.00")
        assert refreshed.has_withdrawal_this_quarter is True

        entry = await ledger_storage.find_entry_by_reference(withdrawal_reference(pending.id))
        assert entry.type == EntryType.WITHDRAWAL
        assert entry.description == "Withdrawal - Bank Transfer"
        assert entry.metadata["withdrawal_id"] == str(pending.id)
        assert entry.balance_after == Decimal("15000.00")

    async def test_approve_twice(self, processor, admin, pending, account, ledger_storage):
        """Test a second approval is refused and nothing moves again."""
        await processor.process_withdrawal(admin, pending.id, "approve")

        with pytest.raises(ValidationError):
            await processor.process_withdrawal(admin, pending.id, "approve")

        assert (await ledger_storage.get_account(account.id)).balance == Decimal("15000.00")

    async def test_reject(self, processor, admin, pending, account, ledger_storage, audit_storage):
        """Test rejection cancels the request with a default note."""
        processed = await processor.process_withdrawal(admin, pending.id, "reject")

        assert processed.status == WithdrawalStatus.CANCELLED
        assert processed.notes == "Rejected by admin"
        assert (await ledger_storage.get_account(account.id)).balance == Decimal("20000.00")
        assert "withdrawal_rejected" in audit_storage.types()

    async def test_balance_dropped_since_request(self, processor, admin, user, account, ledger_storage):
        """Test approval fails when the balance no longer covers the request."""
        first = await processor.request_withdrawal(user, {"amount": "15000", **BANK_DETAILS})
        second = await processor.request_withdrawal(user, {"amount": "15000", **BANK_DETAILS})
        await processor.process_withdrawal(admin, first.id, "approve")

        with pytest.raises(InsufficientFundsError):
            await processor.process_withdrawal(admin, second.id, "approve")

        assert (await ledger_storage.get_withdrawal_request(second.id)).status == WithdrawalStatus.PENDING
        assert (await ledger_storage.get_account(account.id)).balance == Decimal("5000.00")

    async def test_requires_admin(self, processor, user, pending):
        """Test non-admins can't decide on requests."""
        with pytest.raises(ForbiddenError):
            await processor.process_withdrawal(user, pending.id, "approve")

    async def test_invalid_action(self, processor, admin, pending):
        """Test that only approve and reject are accepted."""
        with pytest.raises(ValidationError):
            await processor.process_withdrawal(admin, pending.id, "escalate")

    async def test_unknown_request(self, processor, admin):
        """Test processing a missing request is not found."""
        with pytest.raises(NotFoundError):
            await processor.process_withdrawal(admin, uuid4(), "reject")

    async def test_reject_lands_during_approve(
        self, processor, admin, pending, account, ledger_storage, monkeypatch
    ):
        """Test an approval that loses to a concurrent reject moves no money."""
        complete = ledger_storage.complete_withdrawal_request

        async def rejected_first(withdrawal_id, *args, **kwargs):
            await ledger_storage.close_withdrawal_request(
                withdrawal_id,
                status=WithdrawalStatus.CANCELLED,
                processed_by=admin.user_id,
                processed_at=datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc),
                notes="Rejected by admin",
            )
            return await complete(withdrawal_id, *args, **kwargs)

        monkeypatch.setattr(ledger_storage, "complete_withdrawal_request", rejected_first)

        with pytest.raises(ValidationError):
            await processor.process_withdrawal(admin, pending.id, "approve")

        request = await ledger_storage.get_withdrawal_request(pending.id)
        assert request.status == WithdrawalStatus.CANCELLED
        assert (await ledger_storage.get_account(account.id)).balance == Decimal("20000.00")
        assert await ledger_storage.find_entry_by_reference(withdrawal_reference(pending.id)) is None
