"""Bearer-token authentication.

Wallet accounts are issued by an external identity provider; this module
only resolves a bearer token to the stable user id that owns swaps.
"""

import hmac
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx
from fastapi import Header, Request

from lnbridge.config import Settings
from lnbridge.swap.errors import AuthenticationError, TransientIntegrationError

logger = logging.getLogger(__name__)


def parse_bearer(authorization: Optional[str]) -> str:
    """Extract the token from an ``Authorization: Bearer <token>`` header.

    Raises:
        AuthenticationError: If the header is missing or malformed
    """
    if not authorization:
        raise AuthenticationError("Authentication required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Authorization header must be 'Bearer <token>'")
    return token.strip()


class IdentityProvider(ABC):
    """Resolves bearer tokens to user ids."""

    @abstractmethod
    async def resolve(self, token: str) -> str:
        """Get the user id for a token.

        Raises:
            AuthenticationError: If the token is unknown or invalid
        """
        raise NotImplementedError()

    async def close(self) -> None:
        return None


class StaticTokenIdentityProvider(IdentityProvider):
    """Token table from configuration, for development and tests."""

    def __init__(self, tokens: dict[str, str]):
        self.tokens = dict(tokens)

    async def resolve(self, token: str) -> str:
        for known, user_id in self.tokens.items():
            if hmac.compare_digest(known, token):
                return user_id
        raise AuthenticationError("Invalid bearer token")


class RemoteIdentityProvider(IdentityProvider):
    """Asks the identity provider's endpoint who a token belongs to.

    The endpoint receives the caller's Authorization header and answers
    ``{"userId": "..."}`` (``200``) or ``401``/``403``.
    """

    def __init__(
        self,
        identity_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.identity_url = identity_url
        self.timeout = timeout
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._http_client

    async def resolve(self, token: str) -> str:
        client = await self._get_client()
        try:
            response = await client.get(
                self.identity_url, headers={"Authorization": f"Bearer {token}"}
            )
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientIntegrationError(f"Identity provider unreachable: {e}") from e

        if response.status_code in (401, 403):
            raise AuthenticationError("Invalid bearer token")
        if response.status_code != 200:
            logger.warning(f"Identity provider returned {response.status_code}")
            raise TransientIntegrationError(
                f"Identity provider returned {response.status_code}"
            )

        data = response.json()
        user_id = data.get("userId") or data.get("user_id") or data.get("sub")
        if not user_id:
            raise AuthenticationError("Token does not identify a user")
        return str(user_id)

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None


def get_identity_provider(settings: Settings) -> IdentityProvider:
    """Get the configured identity provider (static or remote)."""
    provider = settings.identity_provider.lower()

    if provider == "remote":
        if not settings.identity_url:
            raise ValueError("IDENTITY_URL is required for the remote identity provider")
        return RemoteIdentityProvider(settings.identity_url)
    if provider == "static":
        if not settings.static_tokens:
            logger.warning("No AUTH_TOKENS configured - authenticated endpoints will reject all")
        return StaticTokenIdentityProvider(settings.static_tokens)

    raise ValueError(f"Unknown identity provider: {settings.identity_provider}")


async def get_current_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> str:
    """FastAPI dependency resolving the caller's bearer token to a user id."""
    token = parse_bearer(authorization)
    identity: IdentityProvider = request.app.state.identity
    return await identity.resolve(token)
