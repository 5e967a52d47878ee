"""Session data models.

``AuthState`` holds the secrets of a login that is waiting for its callback.
``StoredSession`` holds the tokens of a completed login together with the DPoP key
pair they are bound to. Both are stored as JSON in Redis.
"""

from typing import Any, Dict, Optional
from pydantic import BaseModel


class AuthState(BaseModel):
    """In-flight authorization request, keyed by ``state`` and consumed once."""

    state: str
    code_verifier: str
    dpop_private_jwk: Dict[str, Any]
    dpop_public_jwk: Dict[str, Any]
    dpop_nonce: Optional[str] = None
    created_at: int
    """Creation time in epoch milliseconds."""


class StoredSession(BaseModel):
    """Completed session with DPoP-bound tokens.

    The key pair is fixed for the lifetime of the session. A refresh replaces the
    tokens, nonce and expiry in place.
    """

    access_token: str
    refresh_token: Optional[str] = None
    dpop_private_jwk: Dict[str, Any]
    dpop_public_jwk: Dict[str, Any]
    dpop_nonce: Optional[str] = None
    did: str
    handle: Optional[str] = None
    pds_url: Optional[str] = None
    expires_at: int
    """Access token expiry in epoch milliseconds."""

    created_at: int
    """Creation time in epoch milliseconds."""

    def dpop_key_material(self) -> Dict[str, Dict[str, Any]]:
        return {
            "private_jwk": self.dpop_private_jwk,
            "public_jwk": self.dpop_public_jwk,
        }
