"""
HTTP Endpoints for the Tax Savings Ledger

Thin FastAPI layer over the orchestrator's components. Every route is a
POST that answers with the same envelope:

    {"success": true, "data": {...}}
    {"success": false, "error": "..."}

DESIGN PRINCIPLES:
1. No business rules here: handlers parse, call one service, wrap
2. Every caller presents a bearer credential
3. Domain errors map to status codes in one place (ERROR_STATUS)

Run with:
    uvicorn app.main:create_app --factory
"""

from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

import structlog
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from taxledger import __version__
from taxledger.config import get_settings, validate_all_settings
from taxledger.errors import (
    ForbiddenError,
    GatewayError,
    LedgerError,
    NotFoundError,
    PaymentNotSuccessfulError,
    UnauthorizedError,
    ValidationError,
)
from taxledger.models.billing import PaymentPurpose, SubscriptionPlan
from taxledger.models.ledger import RecurringRulePatch, RecurringRuleTemplate, WithdrawalRequestCreate
from taxledger.orchestrator import AppComponents, create_app_components
from taxledger.services.identity import Principal
from taxledger.services.storage import StoreUnavailableError


logger = structlog.get_logger("taxledger.api")

CORS_ALLOW_HEADERS = ["authorization", "x-client-info", "apikey", "content-type"]

# Checked in order: subclasses before their parents
ERROR_STATUS: list[tuple[type[LedgerError], int]] = [
    (ValidationError, 400),
    (UnauthorizedError, 401),
    (PaymentNotSuccessfulError, 402),
    (ForbiddenError, 403),
    (NotFoundError, 404),
    (GatewayError, 502),
    (StoreUnavailableError, 503),
]


def status_for_error(error: LedgerError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 500


def envelope(data: Any = None, message: Optional[str] = None) -> dict:
    body: dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    return body


# =============================================================================
# REQUEST BODIES
# =============================================================================

class DepositInitRequest(BaseModel):
    amount: Decimal
    email: Optional[str] = None
    callback_url: Optional[str] = None


class SubscribeRequest(BaseModel):
    plan: SubscriptionPlan = SubscriptionPlan.ANNUAL
    email: Optional[str] = None
    callback_url: Optional[str] = None


class VerifyRequest(BaseModel):
    reference: str = ""


class ProcessRecurringRequest(BaseModel):
    rule_id: Optional[UUID] = None


class RuleUpdateRequest(BaseModel):
    rule_id: UUID
    changes: RecurringRulePatch


class RuleRequest(BaseModel):
    rule_id: UUID


class RuleActiveRequest(BaseModel):
    rule_id: UUID
    is_active: bool


class ProcessWithdrawalRequest(BaseModel):
    withdrawal_id: UUID
    action: str
    notes: Optional[str] = Field(default=None, max_length=500)


# =============================================================================
# DEPENDENCIES
# =============================================================================

bearer_scheme = HTTPBearer(auto_error=False)


def get_components(request: Request) -> AppComponents:
    return request.app.state.components


async def get_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    components: AppComponents = Depends(get_components),
) -> Principal:
    """Resolve the bearer credential; missing or malformed -> 401."""
    if credentials is None or not credentials.credentials:
        raise UnauthorizedError("Unauthorized")
    return await components.identity.resolve(credentials.credentials)


async def require_service(principal: Principal = Depends(get_principal)) -> Principal:
    """Batch and maintenance endpoints are for the scheduler only."""
    if not principal.is_service:
        raise ForbiddenError("Service credential required")
    return principal


router = APIRouter()


# =============================================================================
# PAYMENTS
# =============================================================================

@router.post("/paystack-initialize")
async def paystack_initialize(
    body: DepositInitRequest,
    principal: Principal = Depends(get_principal),
    components: AppComponents = Depends(get_components),
):
    session = await components.settlement.initialize_deposit(
        principal,
        body.amount,
        callback_url=body.callback_url,
        email=body.email,
    )
    return envelope(session.model_dump(mode="json", exclude={"amount_minor"}))


@router.post("/paystack-verify")
async def paystack_verify(
    body: VerifyRequest,
    principal: Principal = Depends(get_principal),
    components: AppComponents = Depends(get_components),
):
    result = await components.settlement.verify_and_settle(
        principal, body.reference, PaymentPurpose.DEPOSIT
    )
    message = "Payment already processed" if result.already_processed else None
    return envelope(result.to_response(), message)


@router.post("/subscribe")
async def subscribe(
    body: SubscribeRequest,
    principal: Principal = Depends(get_principal),
    components: AppComponents = Depends(get_components),
):
    session = await components.settlement.initialize_subscription(
        principal,
        body.plan,
        callback_url=body.callback_url,
        email=body.email,
    )
    data = session.model_dump(mode="json", exclude={"amount_minor"})
    if session.amount is not None:
        data["amount"] = float(session.amount)
    return envelope(data)


@router.post("/verify-subscription")
async def verify_subscription(
    body: VerifyRequest,
    principal: Principal = Depends(get_principal),
    components: AppComponents = Depends(get_components),
):
    result = await components.settlement.verify_and_settle(
        principal, body.reference, PaymentPurpose.SUBSCRIPTION
    )
    message = "Payment already processed" if result.already_processed else None
    return envelope(result.to_response(), message)


# =============================================================================
# SCHEDULED JOBS
# =============================================================================

@router.post("/calculate-interest")
async def calculate_interest(
    principal: Principal = Depends(require_service),
    components: AppComponents = Depends(get_components),
):
    result = await components.interest.run()
    return envelope(
        result.model_dump(mode="json"),
        f"Interest calculated for {result.processed} accounts",
    )


@router.post("/reset-withdrawal-flags")
async def reset_withdrawal_flags(
    principal: Principal = Depends(require_service),
    components: AppComponents = Depends(get_components),
):
    reset_count = await components.interest.reset_withdrawal_flags()
    return envelope({"reset": reset_count})


@router.post("/process-recurring")
async def process_recurring(
    body: Optional[ProcessRecurringRequest] = None,
    principal: Principal = Depends(get_principal),
    components: AppComponents = Depends(get_components),
):
    """
    With a rule_id: process that rule (owner, or the scheduler).
    Without one: batch over every due rule (scheduler only).
    """
    rule_id = body.rule_id if body else None

    if rule_id is not None:
        user_id = None if principal.is_service else principal.require_user()
        result = await components.recurring.process_due(rule_id, user_id=user_id)
        return envelope(result.model_dump(mode="json"))

    if not principal.is_service:
        raise ForbiddenError("Service credential required for batch processing")
    batch = await components.recurring.process_all_due()
    return envelope(
        batch.model_dump(mode="json"),
        f"Processed {batch.created} transactions",
    )


# =============================================================================
# RECURRING RULES
# =============================================================================

@router.post("/recurring-rules/create")
async def create_rule(
    body: RecurringRuleTemplate,
    principal: Principal = Depends(get_principal),
    components: AppComponents = Depends(get_components),
):
    rule = await components.recurring.create(principal.require_user(), body)
    return envelope(rule.model_dump(mode="json"))


@router.post("/recurring-rules/update")
async def update_rule(
    body: RuleUpdateRequest,
    principal: Principal = Depends(get_principal),
    components: AppComponents = Depends(get_components),
):
    rule = await components.recurring.update(principal.require_user(), body.rule_id, body.changes)
    return envelope(rule.model_dump(mode="json"))


@router.post("/recurring-rules/delete")
async def delete_rule(
    body: RuleRequest,
    principal: Principal = Depends(get_principal),
    components: AppComponents = Depends(get_components),
):
    await components.recurring.delete(principal.require_user(), body.rule_id)
    return envelope({"rule_id": str(body.rule_id), "deleted": True})


@router.post("/recurring-rules/set-active")
async def set_rule_active(
    body: RuleActiveRequest,
    principal: Principal = Depends(get_principal),
    components: AppComponents = Depends(get_components),
):
    rule = await components.recurring.set_active(principal.require_user(), body.rule_id, body.is_active)
    return envelope(rule.model_dump(mode="json"))


# =============================================================================
# WITHDRAWALS
# =============================================================================

@router.post("/request-withdrawal")
async def request_withdrawal(
    body: WithdrawalRequestCreate,
    principal: Principal = Depends(get_principal),
    components: AppComponents = Depends(get_components),
):
    request = await components.withdrawals.request_withdrawal(principal, body)
    return envelope(request.model_dump(mode="json"))


@router.post("/process-withdrawal")
async def process_withdrawal(
    body: ProcessWithdrawalRequest,
    principal: Principal = Depends(get_principal),
    components: AppComponents = Depends(get_components),
):
    request = await components.withdrawals.process_withdrawal(
        principal, body.withdrawal_id, body.action, body.notes
    )
    message = (
        "Withdrawal approved and processed" if body.action == "approve"
        else "Withdrawal rejected"
    )
    return envelope(request.model_dump(mode="json"), message)


# =============================================================================
# APPLICATION
# =============================================================================

async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    status_code = status_for_error(exc)
    log = logger.error if status_code >= 500 else logger.info
    log(
        "request_failed",
        path=request.url.path,
        status_code=status_code,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": str(exc)},
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": f"{location}: {message}" if location else message},
    )


def create_app(components: Optional[AppComponents] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        components: Pre-built components (tests); defaults to the
                   orchestrator's environment-configured set
    """
    components = components or create_app_components()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configured = validate_all_settings(components.settings)
        missing = sorted(name for name, ok in configured.items() if not ok)
        if missing:
            logger.warning("services_not_configured", services=missing)
        logger.info("api_started", version=__version__)
        yield
        components.close()

    app = FastAPI(title="Tax Savings Ledger", version=__version__, lifespan=lifespan)
    app.state.components = components

    app.add_middleware(
        CORSMiddleware,
        allow_origins=components.settings.app.cors_origins_list,
        allow_methods=["POST", "OPTIONS"],
        allow_headers=CORS_ALLOW_HEADERS,
    )
    app.add_exception_handler(LedgerError, ledger_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(router)
    return app


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "app.main:create_app",
        factory=True,
        host=settings.app.api_host,
        port=settings.app.api_port,
    )
