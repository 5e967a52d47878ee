"""
JWT and DPoP utilities for ATProto authentication.

Generates, serializes and restores the per-session DPoP key pairs, and builds the
signed, single-use proof tokens (RFC 9449) that bind every token-endpoint call and
every authenticated repository write to that key.
"""

import hashlib
import secrets
from datetime import datetime, timezone
from typing import Dict, Any, Optional, Tuple
from jwcrypto import jwt, jwk
from jwcrypto.common import JWException, base64url_encode
from ulid import ULID

from dev.stevedylan.edge.errors import FormatError


def generate_dpop_key() -> Tuple[jwk.JWK, Dict[str, Any]]:
    """Generate a new DPoP key pair for token binding.

    Creates an ECDSA P-256 key pair suitable for DPoP JWT signing with a unique
    key identifier. A fresh pair is generated for every login attempt and is never
    shared between identities.

    Returns:
        Tuple[jwk.JWK, Dict[str, Any]]: A tuple containing:
            - dpop_key: The complete JWK including private key for signing
            - public_key_dict: The public key portion as a dictionary for JWT headers
    """
    dpop_key = jwk.JWK.generate(kty="EC", crv="P-256", kid=str(ULID()), alg="ES256")
    public_key_dict = dpop_key.export_public(as_dict=True)
    return dpop_key, public_key_dict


def export_dpop_key(dpop_key: jwk.JWK) -> Dict[str, Dict[str, Any]]:
    """Export both halves of a DPoP key pair as JSON Web Keys.

    The result is plain JSON data and can be stored as text alongside a session.

    Args:
        dpop_key: Key pair created by generate_dpop_key() or import_dpop_key()

    Returns:
        Dict with ``private_jwk`` and ``public_jwk`` entries.
    """
    return {
        "private_jwk": dpop_key.export(private_key=True, as_dict=True),
        "public_jwk": dpop_key.export_public(as_dict=True),
    }


def import_dpop_key(serialized: Dict[str, Any]) -> jwk.JWK:
    """Reconstruct a DPoP key pair from its stored JSON Web Keys.

    Args:
        serialized: Mapping with ``private_jwk`` and ``public_jwk`` as produced by
            export_dpop_key()

    Returns:
        jwk.JWK: Key usable for signing proofs

    Raises:
        FormatError: If either JWK is structurally invalid, is not an EC P-256 key,
            lacks private key material, or the halves do not belong together.
    """
    private_jwk = serialized.get("private_jwk") if isinstance(serialized, dict) else None
    public_jwk = serialized.get("public_jwk") if isinstance(serialized, dict) else None
    if not isinstance(private_jwk, dict) or not isinstance(public_jwk, dict):
        raise FormatError.invalid_jwk("private_jwk and public_jwk are required")

    try:
        dpop_key = jwk.JWK(**private_jwk)
        public_key = jwk.JWK(**public_jwk)
    except (JWException, ValueError, TypeError) as e:
        raise FormatError.invalid_jwk(str(e)) from e

    if dpop_key.get("kty") != "EC" or dpop_key.get("crv") != "P-256":
        raise FormatError.invalid_jwk("expected an EC P-256 key")

    if not dpop_key.has_private:
        raise FormatError.invalid_jwk("private key material missing")

    derived = dpop_key.export_public(as_dict=True)
    if derived.get("x") != public_key.get("x") or derived.get("y") != public_key.get("y"):
        raise FormatError.invalid_jwk("public key does not match private key")

    return dpop_key


def access_token_hash(access_token: str) -> str:
    """Return the ``ath`` value for an access token.

    This is the unpadded base64url encoding of the SHA-256 digest of the token.
    """
    return base64url_encode(hashlib.sha256(access_token.encode("ascii")).digest())


def create_dpop_header(public_key_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Create DPoP JWT header with embedded public key.

    Args:
        public_key_dict: Public key dictionary from generate_dpop_key()

    Returns:
        Dict[str, Any]: DPoP JWT header ready for use with jwcrypto
    """
    return {
        "alg": "ES256",
        "jwk": public_key_dict,
        "typ": "dpop+jwt",
    }


def create_dpop_claims(
    http_method: str,
    http_uri: str,
    issued_at: Optional[datetime] = None,
    expires_in_seconds: int = 30,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
) -> Dict[str, Any]:
    """Create DPoP JWT claims for request binding.

    Binds the proof to a specific HTTP method and URI. The URI is used verbatim,
    query string included, because servers compare it byte for byte.

    Args:
        http_method: HTTP method (e.g., "POST", "GET")
        http_uri: Target HTTP URI for the request
        issued_at: Token issuance time (defaults to current UTC time)
        expires_in_seconds: Token validity period in seconds (default: 30)
        nonce: Optional server-issued nonce
        access_token: Optional access token; when given the ``ath`` claim is added

    Returns:
        Dict[str, Any]: DPoP JWT claims ready for use with jwcrypto
    """
    if issued_at is None:
        issued_at = datetime.now(timezone.utc)

    claims = {
        "htm": http_method.upper(),
        "htu": http_uri,
        "iat": int(issued_at.timestamp()),
        "exp": int(issued_at.timestamp()) + expires_in_seconds,
    }

    if nonce is not None:
        claims["nonce"] = nonce

    if access_token is not None:
        claims["ath"] = access_token_hash(access_token)

    return claims


def create_dpop_jwt(
    dpop_key: jwk.JWK,
    http_method: str,
    http_uri: str,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
    issued_at: Optional[datetime] = None,
    expires_in_seconds: int = 30,
) -> str:
    """Create a complete DPoP proof for one HTTP request.

    Every call produces a new ``jti``, so a proof is never reused, including
    when a request is replayed with a server-issued nonce.

    Args:
        dpop_key: Private key for signing the JWT
        http_method: HTTP method for request binding
        http_uri: Target URI for request binding
        nonce: Optional server-issued nonce
        access_token: Access token to bind via ``ath`` for resource requests
        issued_at: Token issuance time (defaults to current UTC time)
        expires_in_seconds: Token validity period in seconds (default: 30)

    Returns:
        str: Compact serialized JWS ready for use as the ``DPoP`` header value

    Usage:
        ```python
        dpop_key, _ = generate_dpop_key()
        headers["DPoP"] = create_dpop_jwt(dpop_key, "POST", token_endpoint)
        ```
    """
    header = create_dpop_header(dpop_key.export_public(as_dict=True))
    claims = create_dpop_claims(
        http_method, http_uri, issued_at, expires_in_seconds, nonce, access_token
    )

    claims["jti"] = secrets.token_urlsafe(32)

    dpop_jwt = jwt.JWT(header=header, claims=claims)
    dpop_jwt.make_signed_token(dpop_key)

    return dpop_jwt.serialize()
