"""
Identity Resolution

Turns a bearer credential into a Principal. Two kinds of callers exist:
- end users, whose access token is checked against Supabase GoTrue
- the scheduler, which presents the configured service key

Authentication mechanics stay with the identity provider; this module
only asks it who the token belongs to.
"""

import asyncio
import hmac
from abc import ABC, abstractmethod
from typing import Optional
from uuid import UUID

import requests
import structlog
from pydantic import BaseModel, ConfigDict

from taxledger.config import AuthSettings
from taxledger.errors import GatewayError, UnauthorizedError


logger = structlog.get_logger("taxledger.identity")


class Principal(BaseModel):
    """An authenticated caller."""
    model_config = ConfigDict(frozen=True)

    user_id: Optional[UUID] = None
    email: Optional[str] = None
    is_service: bool = False

    @classmethod
    def service(cls) -> "Principal":
        return cls(is_service=True)

    def require_user(self) -> UUID:
        """The caller's user id; service callers have none."""
        if self.user_id is None:
            raise UnauthorizedError("This operation requires a user session")
        return self.user_id


class IdentityProviderInterface(ABC):
    """
    Abstract interface for resolving bearer tokens.
    """

    @abstractmethod
    async def resolve(self, token: str) -> Principal:
        """
        Resolve a bearer token to a principal.

        Raises:
            UnauthorizedError: Token missing, invalid or expired
            GatewayError: Identity provider unreachable
        """
        pass


class SupabaseIdentityProvider(IdentityProviderInterface):
    """Resolves user tokens with GoTrue's `/auth/v1/user` endpoint."""

    def __init__(
        self,
        settings: AuthSettings,
        session: Optional[requests.Session] = None,
    ):
        self._settings = settings
        self._session = session or requests.Session()

    def _is_service_key(self, token: str) -> bool:
        service_key = self._settings.service_key
        return bool(service_key) and hmac.compare_digest(token, service_key)

    async def resolve(self, token: str) -> Principal:
        if not token:
            raise UnauthorizedError("Unauthorized")
        if self._is_service_key(token):
            return Principal.service()
        if not self._settings.url:
            raise UnauthorizedError("User tokens cannot be checked: identity provider not configured")

        try:
            response = await asyncio.to_thread(
                self._session.get,
                f"{self._settings.url.rstrip('/')}/auth/v1/user",
                headers={
                    "Authorization": f"Bearer {token}",
                    "apikey": self._settings.anon_key,
                },
                timeout=self._settings.timeout_seconds,
            )
        except requests.RequestException as e:
            logger.warning("identity_provider_unreachable", error=str(e))
            raise GatewayError(f"Identity provider unreachable: {e}") from e

        if response.status_code in (401, 403):
            raise UnauthorizedError("Unauthorized")
        if not response.ok:
            raise GatewayError(f"Identity provider returned HTTP {response.status_code}")

        try:
            body = response.json()
            return Principal(user_id=UUID(str(body["id"])), email=body.get("email"))
        except (KeyError, TypeError, ValueError) as e:
            raise UnauthorizedError("Identity provider returned no user") from e
