"""Tests for bearer token issue, validation and refresh.

High-impact tests covering the token lifecycle:
- Early refresh inside the leeway window
- Signature, algorithm and expiry verification
- Atomic state updates
- A single refresh for many concurrent callers
"""

import asyncio
import time
from unittest.mock import AsyncMock

import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from fairgate.models.errors import (
    InvalidTokenError,
    MissingCredentialError,
    MissingRefreshTokenError,
)
from fairgate.models.tokens import TokenClaims, TokenPair
from fairgate.services.tokens import TokenStore


def make_exchange() -> AsyncMock:
    exchange = AsyncMock()
    exchange.create_token = AsyncMock()
    exchange.refresh_token = AsyncMock()
    return exchange


class TestShouldRefresh:
    NOW = 1_700_000_000.0

    @pytest.fixture
    def store(self, public_key):
        return TokenStore(public_key, make_exchange(), clock=lambda: self.NOW)

    def test_empty_store_should_refresh(self, store):
        assert store.should_refresh(self.NOW)

    @pytest.mark.parametrize(
        "expires_in, want_refresh",
        [
            (60, True),
            (120, True),
            (121, False),
            (300, False),
            (600, False),
            (-60, True),
        ],
    )
    def test_refresh_window(self, store, expires_in, want_refresh):
        # Arrange
        store._token = "test-token"
        store._claims = TokenClaims(exp=self.NOW + expires_in)

        # Act & Assert
        assert store.should_refresh(self.NOW) is want_refresh

    def test_token_without_claims_should_refresh(self, store):
        store._token = "test-token"

        assert store.should_refresh(self.NOW)


class TestValidate:
    @pytest.fixture
    def store(self, public_key):
        return TokenStore(public_key, make_exchange())

    def test_valid_token(self, store, make_token):
        # Act
        claims = store.validate(make_token(expires_in=3600))

        # Assert
        assert claims.fsa_id == "test-fsa-id"
        assert claims.uniq_id == "test-uniq-id"
        assert claims.expires_at > time.time()

    def test_expired_within_leeway_is_accepted(self, store, make_token):
        claims = store.validate(make_token(expires_in=-60))

        assert claims.fsa_id == "test-fsa-id"

    def test_expired_beyond_leeway_is_rejected(self, store, make_token):
        with pytest.raises(InvalidTokenError):
            store.validate(make_token(expires_in=-300))

    @pytest.mark.parametrize("token", ["", "not-a-jwt-token", "header.payload"])
    def test_malformed_token_is_rejected(self, store, token):
        with pytest.raises(InvalidTokenError):
            store.validate(token)

    def test_wrong_signing_method_is_rejected(self, store):
        # Arrange
        token = jwt.encode(
            {"fsa_id": "x", "exp": int(time.time()) + 3600},
            "a-sufficiently-long-shared-secret-for-hs256",
            algorithm="HS256",
        )

        # Act & Assert
        with pytest.raises(InvalidTokenError):
            store.validate(token)

    def test_token_from_other_key_is_rejected(self, store):
        # Arrange
        other_key = ec.generate_private_key(ec.SECP521R1())
        token = jwt.encode(
            {"exp": int(time.time()) + 3600}, other_key, algorithm="ES512"
        )

        # Act & Assert
        with pytest.raises(InvalidTokenError):
            store.validate(token)

    def test_token_without_expiry_is_rejected(self, store, private_key):
        token = jwt.encode({"fsa_id": "x"}, private_key, algorithm="ES512")

        with pytest.raises(InvalidTokenError):
            store.validate(token)

    def test_audience_claim_is_not_checked(self, store, private_key):
        # Arrange
        token = jwt.encode(
            {"exp": int(time.time()) + 3600, "aud": "fsa", "fsa_id": "x"},
            private_key,
            algorithm="ES512",
        )

        # Act
        claims = store.validate(token)

        # Assert
        assert claims.fsa_id == "x"

    def test_future_issued_at_is_not_checked(self, store, private_key):
        now = int(time.time())
        token = jwt.encode(
            {"exp": now + 3600, "iat": now + 900}, private_key, algorithm="ES512"
        )

        assert store.validate(token).iat == now + 900

    def test_accepts_pem_public_key(self, public_key, make_token):
        # Arrange
        pem = public_key.public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode()
        store = TokenStore(pem, make_exchange())

        # Act
        claims = store.validate(make_token())

        # Assert
        assert claims.uniq_id == "test-uniq-id"


class TestUpdate:
    @pytest.fixture
    def store(self, public_key):
        return TokenStore(public_key, make_exchange())

    def test_update_sets_all_fields(self, store, make_token):
        # Arrange
        token = make_token()

        # Act
        store._update(TokenPair(token=token, refresh_token="refresh-token-123"))

        # Assert
        assert store.token == token
        assert store.refresh_token == "refresh-token-123"
        assert store.claims is not None
        assert store.claims.fsa_id == "test-fsa-id"

    def test_invalid_token_leaves_state_untouched(self, store, make_token):
        # Arrange
        good = make_token()
        store._update(TokenPair(token=good, refresh_token="refresh-1"))
        claims = store.claims

        # Act
        with pytest.raises(InvalidTokenError):
            store._update(TokenPair(token="invalid-token", refresh_token="refresh-2"))

        # Assert
        assert store.token == good
        assert store.refresh_token == "refresh-1"
        assert store.claims is claims

    def test_invalid_token_on_empty_store(self, store):
        with pytest.raises(InvalidTokenError):
            store._update(TokenPair(token="invalid-token", refresh_token="r"))

        assert store.token == ""
        assert store.claims is None

    def test_missing_refresh_token_keeps_previous(self, store, make_token):
        # Arrange
        store._update(TokenPair(token=make_token(), refresh_token="refresh-1"))

        # Act
        store._update(TokenPair(token=make_token(), refresh_token=""))

        # Assert
        assert store.refresh_token == "refresh-1"


class TestIssue:
    async def test_issue_stores_token(self, public_key, make_token):
        # Arrange
        exchange = make_exchange()
        token = make_token()
        exchange.create_token.return_value = TokenPair(token=token, refresh_token="r")
        store = TokenStore(public_key, exchange)

        # Act
        claims = await store.issue("access-key")

        # Assert
        exchange.create_token.assert_awaited_once_with("access-key")
        assert store.token == token
        assert claims.fsa_id == "test-fsa-id"

    async def test_empty_access_key(self, public_key):
        # Arrange
        exchange = make_exchange()
        store = TokenStore(public_key, exchange)

        # Act & Assert
        with pytest.raises(MissingCredentialError):
            await store.issue("")

        exchange.create_token.assert_not_awaited()

    async def test_invalid_issued_token(self, public_key):
        # Arrange
        exchange = make_exchange()
        exchange.create_token.return_value = TokenPair(token="garbage")
        store = TokenStore(public_key, exchange)

        # Act & Assert
        with pytest.raises(InvalidTokenError):
            await store.issue("access-key")

        assert store.token == ""


class TestEnsureValid:
    async def test_issues_with_configured_access_key(self, public_key, make_token):
        # Arrange
        exchange = make_exchange()
        token = make_token()
        exchange.create_token.return_value = TokenPair(token=token, refresh_token="r")
        store = TokenStore(public_key, exchange, access_key="configured-key")

        # Act
        result = await store.ensure_valid()

        # Assert
        assert result == token
        exchange.create_token.assert_awaited_once_with("configured-key")

    async def test_no_token_and_no_access_key(self, public_key):
        store = TokenStore(public_key, make_exchange())

        with pytest.raises(MissingCredentialError):
            await store.ensure_valid()

    async def test_fresh_token_makes_no_network_call(self, public_key, make_token):
        # Arrange
        exchange = make_exchange()
        store = TokenStore(public_key, exchange)
        token = make_token(expires_in=600)
        store._update(TokenPair(token=token, refresh_token="r"))

        # Act
        result = await store.ensure_valid()

        # Assert
        assert result == token
        exchange.create_token.assert_not_awaited()
        exchange.refresh_token.assert_not_awaited()

    async def test_near_expiry_token_is_refreshed(self, public_key, make_token):
        # Arrange
        exchange = make_exchange()
        new_token = make_token(expires_in=3600, uniq_id="refreshed")
        exchange.refresh_token.return_value = TokenPair(
            token=new_token, refresh_token="refresh-2"
        )
        store = TokenStore(public_key, exchange)
        store._update(TokenPair(token=make_token(expires_in=90), refresh_token="refresh-1"))

        # Act
        result = await store.ensure_valid()

        # Assert
        exchange.refresh_token.assert_awaited_once_with("refresh-1")
        assert result == new_token
        assert store.refresh_token == "refresh-2"
        assert store.claims.uniq_id == "refreshed"

    async def test_near_expiry_without_refresh_token(self, public_key, make_token):
        # Arrange
        exchange = make_exchange()
        store = TokenStore(public_key, exchange)
        store._update(TokenPair(token=make_token(expires_in=30), refresh_token=""))

        # Act & Assert
        with pytest.raises(MissingRefreshTokenError):
            await store.ensure_valid()

        exchange.refresh_token.assert_not_awaited()

    async def test_failed_refresh_keeps_previous_token(self, public_key, make_token):
        # Arrange
        exchange = make_exchange()
        exchange.refresh_token.return_value = TokenPair(token="garbage")
        store = TokenStore(public_key, exchange)
        old = make_token(expires_in=60)
        store._update(TokenPair(token=old, refresh_token="refresh-1"))

        # Act & Assert
        with pytest.raises(InvalidTokenError):
            await store.ensure_valid()

        assert store.token == old
        assert store.refresh_token == "refresh-1"

    async def test_concurrent_callers_share_one_refresh(self, public_key, make_token):
        # Arrange
        new_token = make_token(expires_in=3600)
        calls = 0

        async def slow_refresh(refresh_token: str) -> TokenPair:
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return TokenPair(token=new_token, refresh_token="refresh-2")

        exchange = make_exchange()
        exchange.refresh_token = slow_refresh
        store = TokenStore(public_key, exchange)
        store._update(TokenPair(token=make_token(expires_in=60), refresh_token="refresh-1"))

        # Act
        results = await asyncio.gather(*(store.ensure_valid() for _ in range(20)))

        # Assert
        assert calls == 1
        assert results == [new_token] * 20

    async def test_cancelled_refresh_releases_lock(self, public_key, make_token):
        # Arrange
        started = asyncio.Event()

        async def hanging_refresh(refresh_token: str) -> TokenPair:
            started.set()
            await asyncio.sleep(3600)
            raise AssertionError("unreachable")

        exchange = make_exchange()
        exchange.refresh_token = hanging_refresh
        store = TokenStore(public_key, exchange)
        old = make_token(expires_in=60)
        store._update(TokenPair(token=old, refresh_token="refresh-1"))

        task = asyncio.create_task(store.ensure_valid())
        await started.wait()

        # Act
        task.cancel()

        # Assert
        with pytest.raises(asyncio.CancelledError):
            await task
        assert store.token == old
        assert not store._lock.locked()
