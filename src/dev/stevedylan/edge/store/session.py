"""
Redis-backed session storage.

Keys and lifetimes:

- ``auth_state:<state>``: in-flight authorization request, 10 minutes, consumed once
- ``session:<id>``: completed session, 14 days, re-armed on every write
- ``guest_session:<guest id>``: maps a guest-visible ID to a session ID, 14 days
- ``guest_return:<state>`` and ``guest_pds:<state>``: guest login round-trip data,
  10 minutes, consumed once

Values are JSON documents, except the guest records which are plain strings.
Timestamps inside documents are epoch milliseconds.
"""

import logging
import secrets
from time import time
from typing import Optional, Tuple, Union
from jwcrypto import jwk
from pydantic import ValidationError
import redis.asyncio as redis
from redis.exceptions import WatchError

from dev.stevedylan.edge.atproto.jwt import export_dpop_key, import_dpop_key
from dev.stevedylan.edge.errors import FormatError, SessionNotFound
from dev.stevedylan.edge.model.session import AuthState, StoredSession

logger = logging.getLogger(__name__)

SESSION_TTL = 60 * 60 * 24 * 14
AUTH_STATE_TTL = 600
EXPIRY_MARGIN_MS = 60_000

AUTH_STATE_PREFIX = "auth_state:"
SESSION_PREFIX = "session:"
GUEST_SESSION_PREFIX = "guest_session:"
GUEST_RETURN_PREFIX = "guest_return:"
GUEST_PDS_PREFIX = "guest_pds:"

GUEST_ID_PREFIX = "guest_"


def now_ms() -> int:
    return int(time() * 1000)


def new_session_id() -> str:
    return secrets.token_hex(32)


def new_guest_id() -> str:
    """Guest-visible IDs are random and unrelated to the session ID they map to."""
    return f"{GUEST_ID_PREFIX}{secrets.token_hex(32)}"


def is_guest_id(value: str) -> bool:
    return value.startswith(GUEST_ID_PREFIX)


def is_expired(session: StoredSession, now: Optional[int] = None) -> bool:
    """True once ``now`` is within one minute of the access token expiry."""
    if now is None:
        now = now_ms()
    return now >= session.expires_at - EXPIRY_MARGIN_MS


def _text(value: Union[bytes, str, None]) -> Optional[str]:
    if isinstance(value, bytes):
        return value.decode()
    return value


class SessionStore:
    """
    Durable, time-limited storage of authorization state and sessions.

    Args:
        redis_client: Redis client; ``decode_responses`` may be on or off
        session_ttl: Lifetime in seconds of sessions and guest mappings
        auth_state_ttl: Lifetime in seconds of in-flight authorization state
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        session_ttl: int = SESSION_TTL,
        auth_state_ttl: int = AUTH_STATE_TTL,
    ) -> None:
        self.redis_client = redis_client
        self.session_ttl = session_ttl
        self.auth_state_ttl = auth_state_ttl

    async def store_auth_state(
        self,
        state: str,
        code_verifier: str,
        dpop_key: jwk.JWK,
        dpop_nonce: Optional[str] = None,
    ) -> AuthState:
        key_material = export_dpop_key(dpop_key)
        auth_state = AuthState(
            state=state,
            code_verifier=code_verifier,
            dpop_private_jwk=key_material["private_jwk"],
            dpop_public_jwk=key_material["public_jwk"],
            dpop_nonce=dpop_nonce,
            created_at=now_ms(),
        )
        await self.redis_client.set(
            f"{AUTH_STATE_PREFIX}{state}",
            auth_state.model_dump_json(),
            ex=self.auth_state_ttl,
        )
        return auth_state

    async def consume_auth_state(
        self, state: str
    ) -> Optional[Tuple[AuthState, jwk.JWK]]:
        """
        Return and delete the authorization state for ``state``.

        GETDEL makes the read and the delete a single operation, so of two
        concurrent callbacks carrying the same state only one observes it.
        """
        key = f"{AUTH_STATE_PREFIX}{state}"
        raw = _text(await self.redis_client.getdel(key))
        if raw is None:
            return None

        try:
            auth_state = AuthState.model_validate_json(raw)
        except ValidationError as e:
            raise FormatError.invalid_record(AUTH_STATE_PREFIX) from e

        dpop_key = import_dpop_key(
            {
                "private_jwk": auth_state.dpop_private_jwk,
                "public_jwk": auth_state.dpop_public_jwk,
            }
        )
        return auth_state, dpop_key

    async def create_session(
        self,
        access_token: str,
        refresh_token: Optional[str],
        dpop_key: jwk.JWK,
        dpop_nonce: Optional[str],
        did: str,
        expires_in: int,
        handle: Optional[str] = None,
        pds_url: Optional[str] = None,
    ) -> str:
        session_id = new_session_id()
        key_material = export_dpop_key(dpop_key)
        created_at = now_ms()
        session = StoredSession(
            access_token=access_token,
            refresh_token=refresh_token,
            dpop_private_jwk=key_material["private_jwk"],
            dpop_public_jwk=key_material["public_jwk"],
            dpop_nonce=dpop_nonce,
            did=did,
            handle=handle,
            pds_url=pds_url,
            expires_at=created_at + expires_in * 1000,
            created_at=created_at,
        )
        await self.redis_client.set(
            f"{SESSION_PREFIX}{session_id}",
            session.model_dump_json(),
            ex=self.session_ttl,
        )
        logger.debug("Created session for %s", did)
        return session_id

    async def get_session(
        self, session_id: str
    ) -> Optional[Tuple[StoredSession, jwk.JWK]]:
        raw = _text(await self.redis_client.get(f"{SESSION_PREFIX}{session_id}"))
        if raw is None:
            return None

        try:
            session = StoredSession.model_validate_json(raw)
        except ValidationError as e:
            raise FormatError.invalid_record(SESSION_PREFIX) from e

        return session, import_dpop_key(session.dpop_key_material())

    async def update_session(
        self,
        session_id: str,
        access_token: str,
        refresh_token: Optional[str],
        dpop_nonce: Optional[str],
        expires_in: int,
        expected_refresh_token: Optional[str] = None,
    ) -> bool:
        """
        Replace the tokens, nonce and expiry of a session and re-arm its TTL.

        The key pair, DID, handle and PDS URL are never changed. When the server
        did not issue a new refresh token the stored one is kept.

        When ``expected_refresh_token`` is given the write only happens if the stored
        refresh token still equals it. This lets two requests refresh the same
        session concurrently without the loser clobbering the winner's tokens.

        Returns:
            True when the session was written, False when the compare failed.

        Raises:
            SessionNotFound: If the session does not exist.
        """
        key = f"{SESSION_PREFIX}{session_id}"

        async with self.redis_client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = _text(await pipe.get(key))
                    if raw is None:
                        raise SessionNotFound.missing(session_id)

                    try:
                        session = StoredSession.model_validate_json(raw)
                    except ValidationError as e:
                        raise FormatError.invalid_record(SESSION_PREFIX) from e

                    if (
                        expected_refresh_token is not None
                        and session.refresh_token != expected_refresh_token
                    ):
                        return False

                    updated = session.model_copy(
                        update={
                            "access_token": access_token,
                            "refresh_token": refresh_token or session.refresh_token,
                            "dpop_nonce": dpop_nonce,
                            "expires_at": now_ms() + expires_in * 1000,
                        }
                    )

                    pipe.multi()
                    pipe.set(key, updated.model_dump_json(), ex=self.session_ttl)
                    await pipe.execute()
                    return True
                except WatchError:
                    if expected_refresh_token is not None:
                        return False
                    continue

    async def update_nonce(self, session_id: str, dpop_nonce: Optional[str]) -> None:
        """
        Persist a new server nonce without touching tokens or expiry.

        Runs under WATCH so a refresh committed in between is never overwritten.
        """
        key = f"{SESSION_PREFIX}{session_id}"

        async with self.redis_client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = _text(await pipe.get(key))
                    if raw is None:
                        return

                    try:
                        session = StoredSession.model_validate_json(raw)
                    except ValidationError as e:
                        raise FormatError.invalid_record(SESSION_PREFIX) from e

                    if session.dpop_nonce == dpop_nonce:
                        return

                    updated = session.model_copy(update={"dpop_nonce": dpop_nonce})
                    pipe.multi()
                    pipe.set(key, updated.model_dump_json(), ex=self.session_ttl)
                    await pipe.execute()
                    return
                except WatchError:
                    continue

    async def delete_session(self, session_id: str) -> None:
        await self.redis_client.delete(f"{SESSION_PREFIX}{session_id}")

    def is_expired(self, session: StoredSession, now: Optional[int] = None) -> bool:
        return is_expired(session, now)

    async def map_guest_session(self, guest_id: str, session_id: str) -> None:
        await self.redis_client.set(
            f"{GUEST_SESSION_PREFIX}{guest_id}", session_id, ex=self.session_ttl
        )

    async def resolve_guest_session(self, guest_id: str) -> Optional[str]:
        return _text(await self.redis_client.get(f"{GUEST_SESSION_PREFIX}{guest_id}"))

    async def delete_guest_session(self, guest_id: str) -> None:
        await self.redis_client.delete(f"{GUEST_SESSION_PREFIX}{guest_id}")

    async def store_guest_flow(self, state: str, return_to: str, pds_url: str) -> None:
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.set(f"{GUEST_RETURN_PREFIX}{state}", return_to, ex=self.auth_state_ttl)
            pipe.set(f"{GUEST_PDS_PREFIX}{state}", pds_url, ex=self.auth_state_ttl)
            await pipe.execute()

    async def consume_guest_flow(self, state: str) -> Tuple[Optional[str], Optional[str]]:
        """Return and delete the ``(return_to, pds_url)`` recorded for a guest login."""
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.getdel(f"{GUEST_RETURN_PREFIX}{state}")
            pipe.getdel(f"{GUEST_PDS_PREFIX}{state}")
            return_to, pds_url = await pipe.execute()
        return _text(return_to), _text(pds_url)
