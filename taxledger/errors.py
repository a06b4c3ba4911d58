"""
Error Taxonomy for the Ledger and Billing Engine

Every failure a caller can see is one of these exceptions.
The HTTP layer maps each class to a status code and the uniform
`{success, error}` envelope.

DESIGN DECISION: "already processed" is NOT an exception.
A duplicate settlement is a success and is reported through
`SettlementResult.already_processed`.
"""

from typing import Optional, TypeVar, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError


class LedgerError(Exception):
    """Base exception for every error raised by the engine."""

    retryable: bool = False


class ValidationError(LedgerError):
    """Bad input: missing fields, invalid plan/frequency, amount below floor."""
    pass


class BelowMinimumError(ValidationError):
    """Deposit amount is under the configured minimum."""

    def __init__(self, amount, minimum):
        self.amount = amount
        self.minimum = minimum
        super().__init__(f"Minimum deposit amount is NGN {minimum:,.2f}")


class InvalidPlanError(ValidationError):
    """Subscription plan is not one of the purchasable plans."""

    def __init__(self, plan: str):
        self.plan = plan
        super().__init__(f"Invalid plan: {plan}. Choose 'monthly' or 'annual'")


class InsufficientFundsError(ValidationError):
    """A withdrawal would take the balance below zero."""
    pass


class UnauthorizedError(LedgerError):
    """Caller has no resolvable identity."""
    pass


class ForbiddenError(LedgerError):
    """Caller is authenticated but lacks the required role."""
    pass


class NotFoundError(LedgerError):
    """Rule, account, subscription or withdrawal request is missing."""
    pass


class AccountNotFoundError(NotFoundError):
    """The caller has no tax-savings account."""
    pass


class GatewayError(LedgerError):
    """
    The payment provider was unreachable or rejected the call.

    No ledger writes have happened when this is raised, so the
    caller can always retry.
    """

    retryable = True


class PaymentNotSuccessfulError(LedgerError):
    """The gateway reports the payment in a state other than success."""

    def __init__(self, status: str, reference: Optional[str] = None):
        self.status = status
        self.reference = reference
        super().__init__(f"Payment {status}")


M = TypeVar("M", bound=BaseModel)


def validated(model: type[M], data: Union[M, dict, None]) -> M:
    """
    Parse caller input into `model`.

    pydantic failures become a ValidationError carrying the first problem,
    e.g. "frequency: Input should be 'daily', 'weekly', ...".
    """
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data or {})
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        message = first.get("msg", "Invalid input")
        raise ValidationError(f"{location}: {message}" if location else message) from e
