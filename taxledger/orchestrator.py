"""
Main Orchestrator for the Tax Savings Ledger

This module wires every component together once, at startup:
1. Storage (SQL ledger/recurring/billing stores, optional Sheets audit log)
2. External services (Paystack, identity provider)
3. Services (settlement guard, subscriptions, recurring engine,
   interest job, withdrawals)

DESIGN DECISION: This is the only place that reads global settings.
Everything below it receives its configuration and collaborators
explicitly, so tests can build any piece in isolation.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from taxledger.audit import AuditLogger
from taxledger.config import Settings, get_settings
from taxledger.interest import InterestAccrualJob
from taxledger.recurring import RecurringTransactionEngine
from taxledger.services.gateway import PaymentGatewayInterface, PaystackGateway
from taxledger.services.identity import IdentityProviderInterface, SupabaseIdentityProvider
from taxledger.services.storage import (
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    SqlBillingStorage,
    SqlDatabase,
    SqlLedgerStorage,
    SqlRecurringStorage,
)
from taxledger.settlement import PaymentSettlementGuard, SubscriptionBilling
from taxledger.withdrawals import WithdrawalProcessor


logger = structlog.get_logger("taxledger.orchestrator")


@dataclass
class AppComponents:
    """Everything a request handler or scheduler needs."""

    settings: Settings
    database: SqlDatabase
    audit_logger: AuditLogger
    identity: IdentityProviderInterface
    settlement: PaymentSettlementGuard
    subscriptions: SubscriptionBilling
    recurring: RecurringTransactionEngine
    interest: InterestAccrualJob
    withdrawals: WithdrawalProcessor
    sheets_client: Optional[GoogleSheetsClient] = None

    def close(self) -> None:
        self.database.dispose()


def _create_audit_logger(settings: Settings) -> tuple[AuditLogger, Optional[GoogleSheetsClient]]:
    if not settings.google_sheets.enabled:
        # Storage not configured - local structured logging only
        return AuditLogger(), None

    # Connects lazily; a Sheets outage later only costs audit rows
    sheets_client = GoogleSheetsClient(settings.google_sheets)
    return AuditLogger(GoogleSheetsAuditStorage(sheets_client)), sheets_client


def create_app_components(
    settings: Optional[Settings] = None,
    database: Optional[SqlDatabase] = None,
    gateway: Optional[PaymentGatewayInterface] = None,
    identity: Optional[IdentityProviderInterface] = None,
    audit_logger: Optional[AuditLogger] = None,
) -> AppComponents:
    """
    Factory function to create all application components.

    Args:
        settings: Defaults to the cached environment settings
        database: Pre-built database (tests pass an in-memory one)
        gateway: Payment gateway; defaults to Paystack
        identity: Token resolver; defaults to Supabase GoTrue
        audit_logger: Defaults to Sheets-backed when configured, else local-only

    Returns:
        AppComponents
    """
    settings = settings or get_settings()

    database = database or SqlDatabase(settings.database)
    if settings.database.create_schema:
        database.create_schema()

    sheets_client = None
    if audit_logger is None:
        audit_logger, sheets_client = _create_audit_logger(settings)

    ledger_storage = SqlLedgerStorage(database)
    recurring_storage = SqlRecurringStorage(database)
    billing_storage = SqlBillingStorage(database)

    gateway = gateway or PaystackGateway(settings.paystack)
    identity = identity or SupabaseIdentityProvider(settings.auth)

    subscriptions = SubscriptionBilling(
        billing_storage,
        settings.app,
        audit_logger=audit_logger,
    )
    settlement = PaymentSettlementGuard(
        ledger_storage,
        billing_storage,
        gateway,
        settings,
        subscriptions,
        audit_logger=audit_logger,
    )
    recurring = RecurringTransactionEngine(
        recurring_storage,
        audit_logger=audit_logger,
        tz=settings.app.tzinfo,
    )
    interest = InterestAccrualJob(
        ledger_storage,
        settings.app,
        audit_logger=audit_logger,
    )
    withdrawals = WithdrawalProcessor(ledger_storage, audit_logger=audit_logger)

    logger.info(
        "components_created",
        environment=settings.app.app_environment,
        audit_sheets=sheets_client is not None,
    )

    return AppComponents(
        settings=settings,
        database=database,
        audit_logger=audit_logger,
        identity=identity,
        settlement=settlement,
        subscriptions=subscriptions,
        recurring=recurring,
        interest=interest,
        withdrawals=withdrawals,
        sheets_client=sheets_client,
    )
