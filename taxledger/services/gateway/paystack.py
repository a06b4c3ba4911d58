"""
Payment Gateway Client (Paystack)

DESIGN DECISION: The gateway is the single source of truth for whether a
payment succeeded. We never trust amounts or statuses sent by the browser;
every settlement re-verifies the reference server-side.

This service handles:
1. Initializing a checkout (amount in kobo, reference, channels, metadata)
2. Verifying a reference and parsing the authoritative transaction view

CRITICAL: A timeout or transport failure is a GatewayError (retryable),
never "payment failed". The caller has written nothing when it sees one.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Optional
from urllib.parse import quote

import requests
import structlog
from pydantic import ValidationError as PydanticValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from taxledger.config import PaystackSettings
from taxledger.errors import GatewayError
from taxledger.models.billing import CheckoutSession, GatewayTransaction


logger = structlog.get_logger("taxledger.gateway")

# Failures where the request never reached Paystack; safe to resend
CONNECT_FAILURES = (requests.ConnectionError, requests.ConnectTimeout)
# Verify is a read, so a read timeout is safe to retry as well
READ_FAILURES = CONNECT_FAILURES + (requests.Timeout,)


class PaymentGatewayInterface(ABC):
    """
    Abstract interface for the payment provider.
    """

    @abstractmethod
    async def initialize_transaction(
        self,
        *,
        email: str,
        amount_minor: int,
        reference: str,
        callback_url: Optional[str],
        metadata: dict[str, Any],
        channels: list[str],
    ) -> CheckoutSession:
        """
        Start a checkout.

        Args:
            email: Payer email (required by the provider)
            amount_minor: Amount in kobo
            reference: Our reference for this payment
            callback_url: Where the provider redirects after payment
            metadata: Echoed back on verify; carries user_id and type
            channels: Payment channels to offer

        Returns:
            CheckoutSession with the authorization URL

        Raises:
            GatewayError: Provider unreachable or rejected the request
        """
        pass

    @abstractmethod
    async def verify_transaction(self, reference: str) -> GatewayTransaction:
        """
        Fetch the provider's view of a reference.

        Raises:
            GatewayError: Provider unreachable, timed out or returned garbage
        """
        pass


class PaystackGateway(PaymentGatewayInterface):
    """
    Paystack REST client built on a `requests.Session`.

    Every call carries an explicit timeout; transport failures are retried
    with exponential backoff up to `max_attempts`. The blocking HTTP call
    runs on a worker thread and the backoff sleeps without holding the loop.
    """

    def __init__(
        self,
        settings: PaystackSettings,
        session: Optional[requests.Session] = None,
    ):
        self._settings = settings
        self._session = session or requests.Session()

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._settings.secret_key}",
            "Content-Type": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        retry_on: tuple[type[Exception], ...],
        **kwargs,
    ) -> dict[str, Any]:
        """Send one API call and return the `data` object of the envelope."""
        url = f"{self._settings.base_url.rstrip('/')}{path}"
        retryer = AsyncRetrying(
            retry=retry_if_exception_type(retry_on),
            stop=stop_after_attempt(self._settings.max_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
            reraise=True,
        )

        try:
            # requests blocks, so each attempt runs on a worker thread
            response = await retryer(
                asyncio.to_thread,
                self._session.request,
                method,
                url,
                headers=self._headers(),
                timeout=self._settings.timeout_seconds,
                **kwargs,
            )
        except requests.Timeout as e:
            logger.warning("paystack_timeout", path=path, error=str(e))
            raise GatewayError(f"Paystack timed out: {path}") from e
        except requests.RequestException as e:
            logger.warning("paystack_unreachable", path=path, error=str(e))
            raise GatewayError(f"Paystack unreachable: {e}") from e

        try:
            payload = response.json()
        except ValueError as e:
            raise GatewayError(
                f"Paystack returned a non-JSON response (HTTP {response.status_code})"
            ) from e

        if not response.ok or not isinstance(payload, dict) or not payload.get("status"):
            message = payload.get("message") if isinstance(payload, dict) else None
            logger.warning(
                "paystack_rejected",
                path=path,
                http_status=response.status_code,
                message=message,
            )
            raise GatewayError(message or f"Paystack request failed (HTTP {response.status_code})")

        return payload.get("data") or {}

    async def initialize_transaction(
        self,
        *,
        email: str,
        amount_minor: int,
        reference: str,
        callback_url: Optional[str],
        metadata: dict[str, Any],
        channels: list[str],
    ) -> CheckoutSession:
        body: dict[str, Any] = {
            "email": email,
            "amount": amount_minor,
            "reference": reference,
            "metadata": metadata,
            "channels": channels,
        }
        if callback_url:
            body["callback_url"] = callback_url

        data = await self._request("POST", "/transaction/initialize", CONNECT_FAILURES, json=body)

        try:
            return CheckoutSession(
                authorization_url=data["authorization_url"],
                access_code=data.get("access_code"),
                reference=data.get("reference") or reference,
                amount_minor=amount_minor,
            )
        except (KeyError, PydanticValidationError) as e:
            raise GatewayError(f"Malformed initialize response: {e}") from e

    async def verify_transaction(self, reference: str) -> GatewayTransaction:
        path = f"/transaction/verify/{quote(reference, safe='')}"
        data = await self._request("GET", path, READ_FAILURES)
        return parse_verify_data(data, reference)


def _parse_metadata(raw: Any) -> dict[str, Any]:
    # Paystack echoes metadata as an object, a JSON string, or "" when unset
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def parse_verify_data(data: dict[str, Any], reference: str) -> GatewayTransaction:
    """
    Build a GatewayTransaction from the `data` object of a verify response.

    Raises:
        GatewayError: If the amount or status is missing or malformed
    """
    customer = data.get("customer") or {}
    subscriptions = (data.get("plan_object") or {}).get("subscriptions") or []
    subscription_code = subscriptions[0].get("subscription_code") if subscriptions else None

    try:
        return GatewayTransaction(
            reference=data.get("reference") or reference,
            status=str(data["status"]),
            amount_minor=int(data["amount"]),
            currency=data.get("currency"),
            channel=data.get("channel"),
            paid_at=data.get("paid_at") or data.get("paidAt"),
            metadata=_parse_metadata(data.get("metadata")),
            customer_code=customer.get("customer_code"),
            subscription_code=subscription_code,
        )
    except (KeyError, TypeError, ValueError, PydanticValidationError) as e:
        raise GatewayError(f"Malformed verify response for {reference}: {e}") from e
