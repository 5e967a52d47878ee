"""
Error taxonomy for the edge API.

Every failure that crosses a component boundary is an ``EdgeError``. Each subclass
carries a coarse ``code`` that route handlers turn into the ``error`` query parameter
of a redirect, and each concrete failure is built with a static factory so the
message carries a stable ``error-edge-NNNN`` prefix that can be searched for in logs
and Sentry.
"""

from typing import Optional


class EdgeError(Exception):
    """Base class for all edge API failures."""

    code: str = "callback_failed"


class NetworkError(EdgeError):
    """The remote server could not be reached or did not answer in time."""

    @staticmethod
    def timeout(url: str) -> "NetworkError":
        return NetworkError(f"error-edge-1000 Request timed out: {url}")

    @staticmethod
    def connection(url: str, reason: str = "") -> "NetworkError":
        return NetworkError(f"error-edge-1001 Connection failed: {url} {reason}".rstrip())


class ProtocolError(EdgeError):
    """The remote server answered with something that violates the protocol."""

    @staticmethod
    def unexpected_status(url: str, status: int) -> "ProtocolError":
        return ProtocolError(
            f"error-edge-1100 Unexpected response status {status} from {url}"
        )

    @staticmethod
    def malformed_body(url: str) -> "ProtocolError":
        return ProtocolError(f"error-edge-1101 Malformed response body from {url}")

    @staticmethod
    def missing_field(field: str) -> "ProtocolError":
        return ProtocolError(f"error-edge-1102 Response missing field: {field}")

    @staticmethod
    def nonce_retry_exhausted(url: str) -> "ProtocolError":
        return ProtocolError(
            f"error-edge-1103 Server demanded a new DPoP nonce again: {url}"
        )

    @staticmethod
    def invalid_token_type(token_type: str) -> "ProtocolError":
        return ProtocolError(
            f"error-edge-1104 Expected DPoP token type, received: {token_type}"
        )


class AuthorizationError(EdgeError):
    """The authorization server rejected the request with an OAuth error."""

    def __init__(self, error: str, error_description: Optional[str] = None) -> None:
        self.error = error
        self.error_description = error_description
        message = f"error-edge-1200 Authorization server rejected request: {error}"
        if error_description:
            message = f"{message} ({error_description})"
        super().__init__(message)


class NonceRequired(EdgeError):
    """Internal signal that a request must be replayed with a server-issued nonce."""

    def __init__(self, nonce: str) -> None:
        self.nonce = nonce
        super().__init__("error-edge-1300 DPoP nonce required")


class StateMismatch(EdgeError):
    """The callback did not match an in-flight authorization request."""

    code = "invalid_state"

    @staticmethod
    def not_found() -> "StateMismatch":
        return StateMismatch("error-edge-1400 Unknown or expired state")

    @staticmethod
    def issuer_mismatch(expected: str, received: str) -> "StateMismatch":
        return StateMismatch(
            f"error-edge-1401 Issuer mismatch: expected {expected}, received {received}"
        )


class UnauthorizedSubject(EdgeError):
    """The authenticated identity is not permitted to hold this kind of session."""

    code = "unauthorized"

    @staticmethod
    def not_allowed(did: str) -> "UnauthorizedSubject":
        return UnauthorizedSubject(f"error-edge-1500 Subject not allowed: {did}")


class ResolutionError(EdgeError):
    """A handle or DID could not be resolved to a Personal Data Server."""

    code = "invalid_handle"

    @staticmethod
    def handle_not_resolved(handle: str) -> "ResolutionError":
        return ResolutionError(f"error-edge-1600 Unable to resolve handle: {handle}")

    @staticmethod
    def did_not_resolved(did: str) -> "ResolutionError":
        return ResolutionError(f"error-edge-1601 Unable to resolve DID: {did}")

    @staticmethod
    def unsupported_did(did: str) -> "ResolutionError":
        return ResolutionError(f"error-edge-1602 Unsupported DID method: {did}")

    @staticmethod
    def missing_pds(did: str) -> "ResolutionError":
        return ResolutionError(
            f"error-edge-1603 DID document has no PDS service: {did}"
        )


class SessionNotFound(EdgeError):
    """No live session exists for the given identifier."""

    code = "unauthenticated"

    @staticmethod
    def missing(session_id: str) -> "SessionNotFound":
        # Only a prefix of the identifier is ever included.
        return SessionNotFound(f"error-edge-1700 Session not found: {session_id[:8]}")

    @staticmethod
    def refresh_failed() -> "SessionNotFound":
        return SessionNotFound("error-edge-1701 Session refresh failed")


class FormatError(EdgeError):
    """Stored or received data could not be decoded."""

    @staticmethod
    def invalid_jwk(reason: str) -> "FormatError":
        return FormatError(f"error-edge-1800 Invalid JSON Web Key: {reason}")

    @staticmethod
    def invalid_record(key: str) -> "FormatError":
        return FormatError(f"error-edge-1801 Invalid stored record: {key}")
