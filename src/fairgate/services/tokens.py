"""Bearer token lifecycle for the Fairgate API.

Tokens are short-lived ES512-signed JWTs obtained by exchanging an access
key, and renewed by exchanging the refresh token returned alongside them.
The store verifies every new token before keeping it and refreshes ahead
of expiry, so a request never goes out with a token the server already
considers expired.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Protocol

import jwt
from cryptography.hazmat.primitives.serialization import load_pem_public_key
from pydantic import ValidationError

from fairgate.models.errors import (
    InvalidTokenError,
    MissingCredentialError,
    MissingRefreshTokenError,
)
from fairgate.models.tokens import TokenClaims, TokenPair

logger = logging.getLogger(__name__)

# Signing algorithm used by the Fairgate Standard API.
SIGNING_ALGORITHM = "ES512"

DEFAULT_LEEWAY = 120.0


class TokenExchange(Protocol):
    """Network side of the token lifecycle.

    Implemented by the client, which knows the auth endpoints.
    """

    async def create_token(self, access_key: str) -> TokenPair:
        """Exchange an access key for a new token pair."""
        ...

    async def refresh_token(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a new token pair."""
        ...


def load_public_key(key: Any) -> Any:
    """Accept a PEM string/bytes or an already loaded public key."""
    if isinstance(key, str):
        key = key.encode()
    if isinstance(key, bytes):
        return load_pem_public_key(key)
    return key


class TokenStore:
    """Holds the current bearer token, refresh token and verified claims.

    A single ``asyncio.Lock`` covers the whole check-then-refresh sequence.
    Concurrent callers that find the token near expiry queue on the lock;
    the first one refreshes and the rest see the new token, so at most one
    exchange is in flight at a time.
    """

    def __init__(
        self,
        public_key: Any,
        exchange: TokenExchange,
        *,
        access_key: str | None = None,
        algorithm: str = SIGNING_ALGORITHM,
        leeway: float = DEFAULT_LEEWAY,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize an empty token store.

        Args:
            public_key: Key that verifies token signatures (PEM or key object)
            exchange: Performs the issue and refresh HTTP exchanges
            access_key: Key used to issue a token lazily on first use
            algorithm: The only signing algorithm accepted
            leeway: Seconds of clock skew tolerated, and how early to refresh
            clock: Source of the current Unix time in seconds
        """
        self._public_key = load_public_key(public_key)
        self._exchange = exchange
        self._access_key = access_key
        self._algorithm = algorithm
        self._leeway = leeway
        self._clock = clock

        self._lock = asyncio.Lock()
        self._token = ""
        self._refresh_token = ""
        self._claims: TokenClaims | None = None

    @property
    def token(self) -> str:
        return self._token

    @property
    def refresh_token(self) -> str:
        return self._refresh_token

    @property
    def claims(self) -> TokenClaims | None:
        return self._claims

    async def issue(self, access_key: str) -> TokenClaims:
        """Exchange an access key for a fresh token pair.

        Args:
            access_key: Access key to present

        Returns:
            Claims of the newly stored token

        Raises:
            MissingCredentialError: If the access key is empty
            InvalidTokenError: If the returned token fails verification
        """
        async with self._lock:
            return await self._issue(access_key)

    async def ensure_valid(self) -> str:
        """Make sure a usable bearer token is held and return it.

        Issues a token with the configured access key when none is held,
        refreshes it when it expires within the leeway, and does nothing
        otherwise.

        Raises:
            MissingCredentialError: If no token is held and no access key is set
            MissingRefreshTokenError: If a refresh is due but impossible
            InvalidTokenError: If the new token fails verification
        """
        async with self._lock:
            if not self._token:
                await self._issue(self._access_key or "")
                return self._token

            if not self.should_refresh(self._clock()):
                return self._token

            if not self._refresh_token:
                raise MissingRefreshTokenError("no refresh token available")

            logger.debug("Token expires soon, refreshing")
            pair = await self._exchange.refresh_token(self._refresh_token)
            self._update(pair)
            logger.info("Successfully refreshed access token")
            return self._token

    def should_refresh(self, now: float) -> bool:
        """Check whether the held token expires within the leeway."""
        if not self._token or self._claims is None:
            return True

        return now + self._leeway >= self._claims.expires_at

    def validate(self, token: str) -> TokenClaims:
        """Verify a signed token and return its claims.

        Only the configured algorithm is accepted, and expiry is checked
        with the configured leeway. Audience and issued-at claims are not
        verified.

        Raises:
            InvalidTokenError: If the token cannot be verified
        """
        try:
            payload = jwt.decode(
                token,
                self._public_key,
                algorithms=[self._algorithm],
                leeway=self._leeway,
                options={
                    "require": ["exp"],
                    "verify_aud": False,
                    "verify_iat": False,
                },
            )
        except jwt.PyJWTError as e:
            raise InvalidTokenError(f"unable to parse token: {e}") from e

        try:
            return TokenClaims.model_validate(payload)
        except ValidationError as e:
            raise InvalidTokenError(f"token doesn't contain claim details: {e}") from e

    def _update(self, pair: TokenPair) -> TokenClaims:
        """Validate a new token pair and store it.

        State is replaced all at once, and only after validation succeeds.
        A response without a refresh token keeps the previous one.
        Callers must hold the lock.

        Raises:
            InvalidTokenError: If the token fails verification
        """
        claims = self.validate(pair.token)

        self._claims = claims
        self._token = pair.token
        self._refresh_token = pair.refresh_token or self._refresh_token
        return claims

    async def _issue(self, access_key: str) -> TokenClaims:
        if not access_key:
            raise MissingCredentialError("no access key available")

        pair = await self._exchange.create_token(access_key)
        claims = self._update(pair)
        logger.info("Successfully issued access token")
        return claims
