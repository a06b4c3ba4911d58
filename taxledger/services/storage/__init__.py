"""
Storage Services Package

Provides abstract interfaces and concrete implementations for data storage.
The ledger lives in SQL (sqlite or PostgreSQL); the audit trail can be
mirrored to Google Sheets.
"""

from taxledger.services.storage.interface import (
    AuditStorageInterface,
    BillingStorageInterface,
    ConcurrentUpdateError,
    DuplicateError,
    LedgerStorageInterface,
    RecordNotFoundError,
    RecurringStorageInterface,
    StorageError,
    StoreUnavailableError,
)
from taxledger.services.storage.sql import (
    SqlBillingStorage,
    SqlDatabase,
    SqlLedgerStorage,
    SqlRecurringStorage,
)
from taxledger.services.storage.google_sheets import (
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "BillingStorageInterface",
    "LedgerStorageInterface",
    "RecurringStorageInterface",
    # Exceptions
    "ConcurrentUpdateError",
    "DuplicateError",
    "RecordNotFoundError",
    "StorageError",
    "StoreUnavailableError",
    # SQL implementation
    "SqlBillingStorage",
    "SqlDatabase",
    "SqlLedgerStorage",
    "SqlRecurringStorage",
    # Google Sheets audit log
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
]
