"""Identity resolution package."""

from taxledger.services.identity.provider import (
    IdentityProviderInterface,
    Principal,
    SupabaseIdentityProvider,
)

__all__ = ["IdentityProviderInterface", "Principal", "SupabaseIdentityProvider"]
