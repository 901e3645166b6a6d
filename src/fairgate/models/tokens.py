"""Token exchange payloads and verified token claims."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class CreateTokenRequest(BaseModel):
    """Body of the access-key exchange."""

    access_key: str


class RefreshTokenRequest(BaseModel):
    """Body of the refresh-token exchange."""

    refresh_token: str


class TokenPair(BaseModel):
    """Bearer and refresh token returned by both auth exchanges."""

    token: str = ""
    refresh_token: str = ""


class TokenClaims(BaseModel):
    """Verified claims of a Fairgate bearer token.

    ``fsa_id`` and ``uniq_id`` identify the subject; ``exp`` is required
    by the verifier, so it is always set on a stored token.
    """

    model_config = ConfigDict(extra="allow")

    exp: float
    iat: float | None = None
    fsa_id: str = ""
    uniq_id: str = ""

    @property
    def expires_at(self) -> float:
        return self.exp
