"""FastAPI identity dependencies.

Wallet-challenge authentication happens upstream. By the time a request reaches
these routers, an auth layer has verified the caller and either set
``request.state.user_id`` / ``request.state.wallet_address`` or (behind the
gateway) injected the ``X-User-Id`` / ``X-Wallet-Address`` headers. The core
trusts that pair completely and performs no signature checks of its own.
"""

from dataclasses import dataclass
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Request

from learnchain.config.settings import get_settings


USER_ID_HEADER = "X-User-Id"
WALLET_HEADER = "X-Wallet-Address"


class IdentityMissingError(Exception):
    """Raised when a request carries no verified (user_id, wallet) pair."""


@dataclass(frozen=True)
class Identity:
    """A verified caller, as supplied by the identity collaborator."""

    user_id: UUID
    wallet_address: str


async def _get_identity(request: Request) -> Identity:
    """Resolve the verified identity for the current request.

    Args:
        request: The FastAPI request object

    Returns
    -------
        Identity: The verified (user_id, wallet_address) pair

    Raises
    ------
        IdentityMissingError: If no verified identity is attached to the request.
    """
    user_id = getattr(request.state, "user_id", None)
    wallet = getattr(request.state, "wallet_address", None)

    if (user_id is None or wallet is None) and get_settings().AUTH_TRUST_GATEWAY_HEADERS:
        user_id = user_id or request.headers.get(USER_ID_HEADER)
        wallet = wallet or request.headers.get(WALLET_HEADER)

    if user_id is None or not wallet:
        msg = "Authentication required"
        raise IdentityMissingError(msg)

    try:
        parsed_user_id = user_id if isinstance(user_id, UUID) else UUID(str(user_id))
    except ValueError as e:
        msg = "Malformed user id"
        raise IdentityMissingError(msg) from e

    request.state.user_id = parsed_user_id
    return Identity(user_id=parsed_user_id, wallet_address=wallet.lower())


# Usage: async def my_route(identity: CurrentIdentity) -> Response:
CurrentIdentity = Annotated[Identity, Depends(_get_identity)]
