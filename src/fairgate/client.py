"""Async client for the Fairgate Standard API.

https://fsa.fairgate.ch/docs/fsa_openapi3

Every request goes through the same pipeline: wait for the shared rate
gate, make sure a valid bearer token is held, dispatch, then classify the
response. A 429 re-arms the gate from the server's retry-after timestamp
and the request is sent again once the gate opens.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, AsyncIterable, AsyncIterator, Callable

import httpx
from pydantic import TypeAdapter, ValidationError

from fairgate.models.envelope import PageParams, Pagination, decode_envelope
from fairgate.models.errors import (
    DecodeError,
    InvalidRateLimitSignalError,
    MissingCredentialError,
    NonRewindableBodyError,
    RateLimitError,
    TransportError,
    UnexpectedStatusError,
)
from fairgate.models.tokens import (
    CreateTokenRequest,
    RefreshTokenRequest,
    TokenClaims,
    TokenPair,
)
from fairgate.primitives.user_agent import user_agent as default_user_agent
from fairgate.services.pagination import DEFAULT_PAGE_LIMIT, iterate
from fairgate.services.rate_gate import RETRY_AFTER_HEADER, RateGate
from fairgate.services.tokens import DEFAULT_LEEWAY, SIGNING_ALGORITHM, TokenStore

logger = logging.getLogger(__name__)

PRODUCTION_URL = "https://fsa.fairgate.ch/"
TEST_URL = "https://fsa-test.fairgate.ch/"

ACCEPT_LANGUAGE = "en"

RequestContent = bytes | str | AsyncIterable[bytes]


def _encode_body(body: Any) -> bytes:
    return TypeAdapter(type(body)).dump_json(body, by_alias=True)


class _TokenEndpoints:
    """Auth exchanges used by the token store.

    These bypass the request pipeline: no bearer token, no rate gate.
    """

    def __init__(self, client: FairgateClient):
        self._client = client

    async def create_token(self, access_key: str) -> TokenPair:
        path = f"/fsa/v1.1/auth/create/{self._client.oid}/token"
        return await self._client._exchange_token(
            path, CreateTokenRequest(access_key=access_key)
        )

    async def refresh_token(self, refresh_token: str) -> TokenPair:
        path = f"/fsa/v1.1/auth/refresh/{self._client.oid}/token"
        return await self._client._exchange_token(
            path, RefreshTokenRequest(refresh_token=refresh_token)
        )


class FairgateClient:
    """Client for one Fairgate organisation.

    Meant to be created once and shared by concurrent tasks. It owns one
    token store and one rate gate; nothing is process-global.
    """

    def __init__(
        self,
        oid: str,
        public_key: Any,
        *,
        base_url: str | None = None,
        test: bool = False,
        access_key: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        user_agent: str | None = None,
        timeout: float = 30.0,
        algorithm: str = SIGNING_ALGORITHM,
        leeway: float = DEFAULT_LEEWAY,
        max_rate_limit_retries: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the client.

        Args:
            oid: Organisation id used in every API path
            public_key: Key that verifies issued tokens (PEM or key object)
            base_url: API root; defaults to the production endpoint
            test: Use the Fairgate test endpoint instead of production
            access_key: Access key for lazily issuing tokens. Without it,
                token_create() must be called before the first request.
            http_client: Transport to use; one is created when omitted
            user_agent: User-Agent header value
            timeout: HTTP timeout in seconds for the created transport
            algorithm: The only accepted token signing algorithm
            leeway: Token clock-skew tolerance and early-refresh window
            max_rate_limit_retries: Give up after this many consecutive 429
                responses. None retries for as long as the server asks.
            clock: Source of the current Unix time in seconds
        """
        self.oid = oid
        self.base_url = base_url or (TEST_URL if test else PRODUCTION_URL)
        self.user_agent = user_agent or default_user_agent()
        self.max_rate_limit_retries = max_rate_limit_retries

        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

        self.rate_gate = RateGate(clock=clock)
        self.tokens = TokenStore(
            public_key,
            _TokenEndpoints(self),
            access_key=access_key,
            algorithm=algorithm,
            leeway=leeway,
            clock=clock,
        )

    @classmethod
    def from_env(cls, **kwargs: Any) -> FairgateClient:
        """Build a client from FAIRGATE_* environment variables.

        Reads FAIRGATE_OID, FAIRGATE_ACCESS_KEY, FAIRGATE_PUBLIC_KEY (PEM) or
        FAIRGATE_PUBLIC_KEY_FILE, and optionally FAIRGATE_BASE_URL and
        FAIRGATE_TEST. Keyword arguments override the environment.

        Raises:
            MissingCredentialError: If the organisation id or public key is missing
        """
        oid = kwargs.pop("oid", None) or os.getenv("FAIRGATE_OID")
        if not oid:
            raise MissingCredentialError("Missing organisation id. Set FAIRGATE_OID")

        public_key = kwargs.pop("public_key", None) or os.getenv("FAIRGATE_PUBLIC_KEY")
        key_file = os.getenv("FAIRGATE_PUBLIC_KEY_FILE")
        if not public_key and key_file:
            with open(key_file, "rb") as f:
                public_key = f.read()
        if not public_key:
            raise MissingCredentialError(
                "Missing public key. Set FAIRGATE_PUBLIC_KEY or FAIRGATE_PUBLIC_KEY_FILE"
            )

        kwargs.setdefault("access_key", os.getenv("FAIRGATE_ACCESS_KEY"))
        kwargs.setdefault("base_url", os.getenv("FAIRGATE_BASE_URL"))
        kwargs.setdefault(
            "test", os.getenv("FAIRGATE_TEST", "").lower() in ("1", "true", "yes")
        )
        return cls(oid, public_key, **kwargs)

    # ================================
    # Tokens
    # ================================

    async def token_create(self, access_key: str) -> TokenClaims:
        """Exchange an access key for a token pair and store it."""
        return await self.tokens.issue(access_key)

    async def token_refresh(self) -> str:
        """Issue or refresh the bearer token if necessary and return it."""
        return await self.tokens.ensure_valid()

    # ================================
    # Request pipeline
    # ================================

    async def execute(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        content: RequestContent | None = None,
    ) -> httpx.Response:
        """Send an authenticated request and return the 2xx response.

        Args:
            method: HTTP method
            path: Absolute API path, resolved against the base URL
            params: Query parameters
            json: JSON-serializable body (dicts, lists, pydantic models)
            content: Raw body. Bytes and str can be resent after a 429;
                async iterators are consumed on the first send and cannot.

        Returns:
            The successful HTTP response, body not yet decoded

        Raises:
            FairgateError: Token, transport, rate-limit or status failures
        """
        if json is not None:
            content = _encode_body(json)

        request = self._build_request(method, path, params=params, content=content)
        rewindable = content is None or isinstance(content, (bytes, str))
        retries = 0

        while True:
            await self.rate_gate.wait()

            token = await self.tokens.ensure_valid()
            request.headers["Authorization"] = f"Bearer {token}"

            response = await self._send(request)
            if response.status_code != httpx.codes.TOO_MANY_REQUESTS:
                break

            await response.aclose()

            try:
                self.rate_gate.arm_from_header(response.headers.get(RETRY_AFTER_HEADER))
            except InvalidRateLimitSignalError as e:
                raise RateLimitError(f"too many requests: {e}") from e

            try:
                self._rewind_body(rewindable)
            except NonRewindableBodyError as e:
                raise RateLimitError(f"cannot rewind body: {e}") from e

            retries += 1
            if (
                self.max_rate_limit_retries is not None
                and retries > self.max_rate_limit_retries
            ):
                raise RateLimitError(
                    f"still rate limited after {self.max_rate_limit_retries} retries"
                )

            logger.debug(f"Retrying {request.method} {request.url} after rate limit")

        if not response.is_success:
            raise UnexpectedStatusError(response.status_code, response.reason_phrase)

        return response

    async def request(
        self,
        method: str,
        path: str,
        data_type: Any = dict[str, Any],
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        """Send a request and decode the envelope payload as ``data_type``.

        A successful envelope with ``"data": null`` returns None.

        Raises:
            DecodeError: If the body is not a valid envelope
            APIReportedError: If the envelope reports a failure
        """
        response = await self.execute(method, path, params=params, json=json)
        return decode_envelope(response.content, data_type)

    async def get_page(
        self,
        path: str,
        items_key: str,
        item_type: Any,
        page: PageParams,
        *,
        params: dict[str, Any] | None = None,
    ) -> tuple[list[Any], Pagination]:
        """Fetch one page of a list endpoint.

        List payloads carry the pagination fields next to the items, which
        live under an endpoint-specific key.

        Args:
            path: List endpoint path
            items_key: Payload key holding the items
            item_type: Type each item is validated as
            page: Page number and size
            params: Additional query parameters

        Returns:
            The page's items and pagination metadata
        """
        query = {**(params or {}), **page.to_query()}
        data = await self.request("GET", path, dict[str, Any] | None, params=query)
        if data is None:
            return [], Pagination()

        try:
            meta = Pagination.model_validate(data)
            items = TypeAdapter(list[item_type]).validate_python(
                data.get(items_key) or []
            )
        except ValidationError as e:
            raise DecodeError(f"Invalid page payload: {e}") from e

        return items, meta

    def iter_pages(
        self,
        path: str,
        items_key: str,
        item_type: Any,
        *,
        params: dict[str, Any] | None = None,
        page_limit: int = DEFAULT_PAGE_LIMIT,
    ) -> AsyncIterator[Any]:
        """Iterate over all items of a list endpoint, page by page."""

        async def fetch(page: PageParams) -> tuple[list[Any], Pagination]:
            return await self.get_page(path, items_key, item_type, page, params=params)

        return iterate(fetch, page_limit=page_limit)

    async def close(self) -> None:
        """Close the HTTP client if this client created it."""
        if self._owns_http_client and not self._http_client.is_closed:
            await self._http_client.aclose()
            logger.debug("HTTP client closed")

    async def __aenter__(self) -> FairgateClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ================================
    # Helpers
    # ================================

    def _build_request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        content: RequestContent | None = None,
    ) -> httpx.Request:
        url = httpx.URL(self.base_url).join(path)
        headers = {
            "Content-Type": "application/json",
            "Accept-Language": ACCEPT_LANGUAGE,
            "User-Agent": self.user_agent,
        }
        return self._http_client.build_request(
            method, url, params=params, content=content, headers=headers
        )

    async def _send(self, request: httpx.Request) -> httpx.Response:
        logger.debug(f"{request.method} {request.url}")
        try:
            return await self._http_client.send(request)
        except httpx.RequestError as e:
            raise TransportError(
                f"HTTP error during {request.method} {request.url}: {e}"
            ) from e

    def _rewind_body(self, rewindable: bool) -> None:
        # Bytes bodies are replayed by the request's own stream.
        if not rewindable:
            raise NonRewindableBodyError(
                "request body is a one-shot stream and cannot be replayed"
            )

    async def _exchange_token(self, path: str, body: Any) -> TokenPair:
        request = self._build_request("POST", path, content=_encode_body(body))
        response = await self._send(request)

        if not response.is_success:
            raise UnexpectedStatusError(response.status_code, response.reason_phrase)

        return decode_envelope(response.content, TokenPair) or TokenPair()
