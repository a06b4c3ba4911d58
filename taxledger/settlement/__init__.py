"""Payment settlement and subscription billing."""

from taxledger.settlement.guard import PaymentSettlementGuard
from taxledger.settlement.subscription import SubscriptionBilling

__all__ = ["PaymentSettlementGuard", "SubscriptionBilling"]
