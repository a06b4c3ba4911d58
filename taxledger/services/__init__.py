"""Services package."""

from taxledger.services.gateway import (
    PaymentGatewayInterface,
    PaystackGateway,
)
from taxledger.services.identity import (
    IdentityProviderInterface,
    Principal,
    SupabaseIdentityProvider,
)
from taxledger.services.storage import (
    AuditStorageInterface,
    BillingStorageInterface,
    ConcurrentUpdateError,
    DuplicateError,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    LedgerStorageInterface,
    RecordNotFoundError,
    RecurringStorageInterface,
    SqlBillingStorage,
    SqlDatabase,
    SqlLedgerStorage,
    SqlRecurringStorage,
    StorageError,
    StoreUnavailableError,
)

__all__ = [
    # Gateway
    "PaymentGatewayInterface",
    "PaystackGateway",
    # Identity
    "IdentityProviderInterface",
    "Principal",
    "SupabaseIdentityProvider",
    # Storage services
    "AuditStorageInterface",
    "BillingStorageInterface",
    "ConcurrentUpdateError",
    "DuplicateError",
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "LedgerStorageInterface",
    "RecordNotFoundError",
    "RecurringStorageInterface",
    "SqlBillingStorage",
    "SqlDatabase",
    "SqlLedgerStorage",
    "SqlRecurringStorage",
    "StorageError",
    "StoreUnavailableError",
]
