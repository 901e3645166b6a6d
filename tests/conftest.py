import time
from typing import Any, Callable

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import ec


@pytest.fixture(scope="session")
def private_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP521R1())


@pytest.fixture(scope="session")
def public_key(private_key) -> ec.EllipticCurvePublicKey:
    return private_key.public_key()


@pytest.fixture(scope="session")
def make_token(private_key) -> Callable[..., str]:
    """Sign an ES512 token expiring ``expires_in`` seconds from now."""

    def _make_token(expires_in: float = 3600, **claims: Any) -> str:
        now = time.time()
        payload = {
            "fsa_id": "test-fsa-id",
            "uniq_id": "test-uniq-id",
            "iat": int(now),
            "exp": int(now + expires_in),
            **claims,
        }
        return jwt.encode(payload, private_key, algorithm="ES512")

    return _make_token


def _envelope(data: Any = None, *, success: bool = True, **fields: Any) -> dict:
    return {
        "success": success,
        "code": fields.pop("code", 200 if success else 400),
        "message": fields.pop("message", ""),
        "data": data,
        "errors": fields.pop("errors", []),
    }


@pytest.fixture(scope="session")
def envelope() -> Callable[..., dict]:
    """Build a Fairgate response envelope."""
    return _envelope
