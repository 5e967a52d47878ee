"""OAuth 2.0 data models for ATProto authentication.

Pydantic models for the documents exchanged with an authorization server during
discovery, pushed authorization requests and token requests.
"""

from typing import List, Optional
from pydantic import BaseModel


class OAuthServerMetadata(BaseModel):
    """Authorization server metadata (RFC 8414) with the endpoints this client needs."""

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    pushed_authorization_request_endpoint: str
    dpop_signing_alg_values_supported: List[str] = []
    scopes_supported: List[str] = []


class PKCEPair(BaseModel):
    """PKCE verifier and its S256 challenge."""

    code_verifier: str
    code_challenge: str


class PARResponse(BaseModel):
    """Pushed authorization request response (RFC 9126)."""

    request_uri: str
    expires_in: int = 60


class TokenResponse(BaseModel):
    """Token endpoint response for both code exchange and refresh.

    ATProto authorization servers include ``sub``, the DID of the authenticated
    account, alongside the standard fields.
    """

    access_token: str
    token_type: str
    expires_in: int = 3600
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    sub: str


class OAuthClientMetadata(BaseModel):
    """
    OAuth 2.0 Client Metadata (RFC 7591) served at the client ID URL.

    Authorization servers fetch this document to validate redirect URIs and to learn
    that the client is public and uses DPoP-bound tokens.
    """

    client_id: str
    """Client identifier URI, the URL this document is served from"""

    client_name: str
    """Human-readable name of the client application"""

    client_uri: str
    """URI of the client's homepage"""

    redirect_uris: List[str]
    """List of allowed redirect URIs for this client"""

    grant_types: List[str]
    """OAuth grant types supported by this client"""

    response_types: List[str]
    """OAuth response types supported by this client"""

    scope: str
    """OAuth scopes requested by this client"""

    token_endpoint_auth_method: str
    """Authentication method for the token endpoint"""

    application_type: str
    """Type of application (web, native)"""

    dpop_bound_access_tokens: bool
    """Whether access tokens are bound to DPoP proofs"""
