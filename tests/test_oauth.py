"""
Tests for the OAuth client: PKCE, client metadata, discovery, and the init,
complete and refresh stages run against the fake authorization server.
"""

import base64
import hashlib
from urllib.parse import parse_qs, urlparse

import pytest
import pytest_asyncio
from aiohttp import ClientSession

from dev.stevedylan.edge.atproto.oauth import (
    FlowState,
    OAuthClient,
    build_authorization_url,
    generate_pkce,
    oauth_complete,
    oauth_init,
    oauth_refresh,
)
from dev.stevedylan.edge.atproto.pds import fetch_server_metadata
from dev.stevedylan.edge.errors import (
    AuthorizationError,
    ProtocolError,
    SessionNotFound,
    StateMismatch,
    UnauthorizedSubject,
)
from dev.stevedylan.edge.model.oauth import OAuthServerMetadata

from conftest import OWNER_DID


@pytest_asyncio.fixture
async def http_session():
    async with ClientSession() as session:
        yield session


async def complete_login(http_session, session_store, fake_server, client):
    flow = await oauth_init(http_session, session_store, fake_server.base_url, client)
    state = fake_server.par_requests[-1]["state"]
    return await oauth_complete(
        http_session,
        session_store,
        fake_server.base_url,
        client,
        "code-1",
        state,
        fake_server.base_url,
    ), flow


async def stored_login(http_session, session_store, fake_server, client):
    completed, _ = await complete_login(http_session, session_store, fake_server, client)
    token_response = completed.token_response
    session_id = await session_store.create_session(
        token_response.access_token,
        token_response.refresh_token,
        completed.dpop_key,
        completed.dpop_nonce,
        token_response.sub,
        token_response.expires_in,
    )
    session, dpop_key = await session_store.get_session(session_id)
    return session_id, session, dpop_key


class TestPkce:
    """Test PKCE generation."""

    def test_challenge_is_s256_of_verifier(self):
        """The challenge is the unpadded base64url SHA-256 of the verifier."""
        pkce = generate_pkce()

        digest = hashlib.sha256(pkce.code_verifier.encode("ascii")).digest()
        expected = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
        assert pkce.code_challenge == expected
        assert len(pkce.code_verifier) == 43

    def test_verifiers_are_unique(self):
        """Every pair has a fresh verifier."""
        assert generate_pkce().code_verifier != generate_pkce().code_verifier


class TestOAuthClient:
    """Test the owner and guest client descriptors."""

    def test_owner_metadata(self, settings):
        """The owner client is public, DPoP-bound, and served under /auth."""
        metadata = OAuthClient.owner(settings).metadata()

        assert metadata.client_id == "http://localhost:8787/auth/client-metadata.json"
        assert metadata.redirect_uris == ["http://localhost:8787/auth/callback"]
        assert metadata.grant_types == ["authorization_code", "refresh_token"]
        assert metadata.response_types == ["code"]
        assert metadata.scope == "atproto transition:generic"
        assert metadata.token_endpoint_auth_method == "none"
        assert metadata.application_type == "web"
        assert metadata.dpop_bound_access_tokens is True

    def test_guest_metadata(self, settings):
        """The guest client has its own URLs and a narrower scope."""
        metadata = OAuthClient.guest(settings).metadata()

        assert metadata.client_id.endswith("/guest-auth/client-metadata.json")
        assert metadata.redirect_uris == ["http://localhost:8787/guest-auth/callback"]
        assert "transition:generic" not in metadata.scope


class TestAuthorizationUrl:
    """Test build_authorization_url."""

    def test_existing_query_is_kept(self):
        """Existing query parameters on the endpoint survive."""
        metadata = OAuthServerMetadata(
            issuer="https://as.example",
            authorization_endpoint="https://as.example/authorize?prompt=login",
            token_endpoint="https://as.example/token",
            pushed_authorization_request_endpoint="https://as.example/par",
        )

        url = build_authorization_url(metadata, "urn:req", "https://client/meta.json")

        query = parse_qs(urlparse(url).query)
        assert query["prompt"] == ["login"]
        assert query["request_uri"] == ["urn:req"]
        assert query["client_id"] == ["https://client/meta.json"]


class TestDiscovery:
    """Test authorization server discovery."""

    @pytest.mark.asyncio
    async def test_fetch_server_metadata(self, http_session, fake_server):
        """Metadata is discovered through the protected resource document."""
        metadata = await fetch_server_metadata(http_session, fake_server.base_url)

        assert metadata.issuer == fake_server.base_url
        assert metadata.token_endpoint == f"{fake_server.base_url}/oauth/token"

    @pytest.mark.asyncio
    async def test_unreachable_metadata(self, http_session, fake_server):
        """A PDS without metadata raises ProtocolError."""
        with pytest.raises(ProtocolError):
            await fetch_server_metadata(http_session, f"{fake_server.base_url}/nothing")


class TestOAuthInit:
    """Test oauth_init."""

    @pytest.mark.asyncio
    async def test_init_pushes_request_and_stores_state(
        self, http_session, session_store, fake_server, settings
    ):
        """PAR is sent with S256 PKCE and the state is stored with the nonce."""
        client = OAuthClient.owner(settings)

        flow = await oauth_init(
            http_session,
            session_store,
            fake_server.base_url,
            client,
            login_hint="owner.example.com",
        )

        assert flow.state == FlowState.AWAITING_CALLBACK
        par_request = fake_server.par_requests[-1]
        assert par_request["code_challenge_method"] == "S256"
        assert par_request["client_id"] == client.client_id
        assert par_request["redirect_uri"] == client.redirect_uri
        assert par_request["login_hint"] == "owner.example.com"
        assert par_request["state"] == flow.oauth_state
        assert "code_verifier" not in par_request

        query = parse_qs(urlparse(flow.authorization_url).query)
        assert query["client_id"] == [client.client_id]
        assert query["request_uri"][0].startswith("urn:ietf:params:oauth:request_uri:")

        consumed = await session_store.consume_auth_state(flow.oauth_state)
        auth_state, dpop_key = consumed
        assert auth_state.dpop_nonce == fake_server.nonce
        assert dpop_key.thumbprint() == flow.dpop_key.thumbprint()
        assert fake_server.proof_errors == []

    @pytest.mark.asyncio
    async def test_init_replays_once_for_nonce(
        self, http_session, session_store, fake_server, settings
    ):
        """The first PAR without nonce is rejected and replayed once."""
        await oauth_init(
            http_session, session_store, fake_server.base_url, OAuthClient.owner(settings)
        )

        par_proofs = [p for p in fake_server.proofs if p["path"] == "/oauth/par"]
        assert len(par_proofs) == 2
        assert "nonce" not in par_proofs[0]["claims"]
        assert par_proofs[1]["claims"]["nonce"] == fake_server.nonce


class TestOAuthComplete:
    """Test oauth_complete."""

    @pytest.mark.asyncio
    async def test_complete_exchanges_code(
        self, http_session, session_store, fake_server, settings
    ):
        """The code is exchanged with the stored verifier and the same key."""
        completed, flow = await complete_login(
            http_session, session_store, fake_server, OAuthClient.owner(settings)
        )

        assert completed.state == FlowState.CODE_EXCHANGED
        assert completed.token_response.sub == OWNER_DID
        assert completed.dpop_key.thumbprint() == flow.dpop_key.thumbprint()

        token_request = fake_server.token_requests[-1]
        assert token_request["grant_type"] == "authorization_code"
        assert token_request["code"] == "code-1"
        assert token_request["code_verifier"]
        assert fake_server.proof_errors == []

    @pytest.mark.asyncio
    async def test_state_is_single_use(
        self, http_session, session_store, fake_server, settings
    ):
        """A replayed callback never reaches the token endpoint."""
        client = OAuthClient.owner(settings)
        await complete_login(http_session, session_store, fake_server, client)
        state = fake_server.par_requests[-1]["state"]
        token_requests = len(fake_server.token_requests)

        with pytest.raises(StateMismatch):
            await oauth_complete(
                http_session, session_store, fake_server.base_url, client, "code-1", state
            )
        assert len(fake_server.token_requests) == token_requests

    @pytest.mark.asyncio
    async def test_unknown_state(self, http_session, session_store, fake_server, settings):
        """An unknown state raises StateMismatch."""
        with pytest.raises(StateMismatch) as exc_info:
            await oauth_complete(
                http_session,
                session_store,
                fake_server.base_url,
                OAuthClient.owner(settings),
                "code-1",
                "unknown",
            )
        assert exc_info.value.code == "invalid_state"

    @pytest.mark.asyncio
    async def test_issuer_mismatch(
        self, http_session, session_store, fake_server, settings
    ):
        """A callback from another issuer raises StateMismatch."""
        client = OAuthClient.owner(settings)
        await oauth_init(http_session, session_store, fake_server.base_url, client)
        state = fake_server.par_requests[-1]["state"]

        with pytest.raises(StateMismatch):
            await oauth_complete(
                http_session,
                session_store,
                fake_server.base_url,
                client,
                "code-1",
                state,
                "https://attacker.example",
            )

    @pytest.mark.asyncio
    async def test_rejected_code(self, http_session, session_store, fake_server, settings):
        """A rejected code raises AuthorizationError with the OAuth error."""
        client = OAuthClient.owner(settings)
        await oauth_init(http_session, session_store, fake_server.base_url, client)
        state = fake_server.par_requests[-1]["state"]

        with pytest.raises(AuthorizationError) as exc_info:
            await oauth_complete(
                http_session, session_store, fake_server.base_url, client, "bad-code", state
            )
        assert exc_info.value.error == "invalid_grant"


class TestOAuthRefresh:
    """Test oauth_refresh."""

    @pytest.mark.asyncio
    async def test_refresh_updates_session(
        self, http_session, session_store, fake_server, settings
    ):
        """A refresh stores the new tokens under the same key pair."""
        client = OAuthClient.owner(settings)
        session_id, session, dpop_key = await stored_login(
            http_session, session_store, fake_server, client
        )

        refreshed = await oauth_refresh(
            http_session,
            session_store,
            session_id,
            session,
            dpop_key,
            fake_server.base_url,
            client,
        )

        assert refreshed.access_token != session.access_token
        assert refreshed.refresh_token != session.refresh_token
        stored, stored_key = await session_store.get_session(session_id)
        assert stored.access_token == refreshed.access_token
        assert stored_key.thumbprint() == dpop_key.thumbprint()
        assert fake_server.proof_errors == []

    @pytest.mark.asyncio
    async def test_concurrent_refresh_loser_adopts_winner(
        self, http_session, session_store, fake_server, settings
    ):
        """A refresh with a rotated-away token returns the winner's session."""
        client = OAuthClient.owner(settings)
        session_id, session, dpop_key = await stored_login(
            http_session, session_store, fake_server, client
        )

        winner = await oauth_refresh(
            http_session,
            session_store,
            session_id,
            session,
            dpop_key,
            fake_server.base_url,
            client,
        )
        loser = await oauth_refresh(
            http_session,
            session_store,
            session_id,
            session,
            dpop_key,
            fake_server.base_url,
            client,
        )

        assert loser.access_token == winner.access_token
        assert loser.refresh_token == winner.refresh_token

    @pytest.mark.asyncio
    async def test_concurrent_refresh_does_not_clobber(
        self, http_session, session_store, fake_server, settings
    ):
        """A late refresh does not overwrite tokens stored by an earlier one."""
        fake_server.rotate_refresh_tokens = False
        client = OAuthClient.owner(settings)
        session_id, session, dpop_key = await stored_login(
            http_session, session_store, fake_server, client
        )

        winner = await oauth_refresh(
            http_session,
            session_store,
            session_id,
            session,
            dpop_key,
            fake_server.base_url,
            client,
        )
        loser = await oauth_refresh(
            http_session,
            session_store,
            session_id,
            session,
            dpop_key,
            fake_server.base_url,
            client,
        )

        assert loser.access_token == winner.access_token
        stored, _ = await session_store.get_session(session_id)
        assert stored.access_token == winner.access_token

    @pytest.mark.asyncio
    async def test_refresh_failure_is_raised(
        self, http_session, session_store, fake_server, settings
    ):
        """A rejected refresh raises and leaves deletion to the caller."""
        client = OAuthClient.owner(settings)
        session_id, session, dpop_key = await stored_login(
            http_session, session_store, fake_server, client
        )
        fake_server.refresh_error = "invalid_grant"

        with pytest.raises(AuthorizationError):
            await oauth_refresh(
                http_session,
                session_store,
                session_id,
                session,
                dpop_key,
                fake_server.base_url,
                client,
            )

    @pytest.mark.asyncio
    async def test_refresh_with_other_subject(
        self, http_session, session_store, fake_server, settings
    ):
        """Tokens issued for another DID are rejected."""
        client = OAuthClient.owner(settings)
        session_id, session, dpop_key = await stored_login(
            http_session, session_store, fake_server, client
        )
        fake_server.sub = "did:plc:someone-else"

        with pytest.raises(UnauthorizedSubject):
            await oauth_refresh(
                http_session,
                session_store,
                session_id,
                session,
                dpop_key,
                fake_server.base_url,
                client,
            )

    @pytest.mark.asyncio
    async def test_refresh_without_refresh_token(
        self, http_session, session_store, fake_server, settings
    ):
        """A session without refresh token cannot be refreshed."""
        client = OAuthClient.owner(settings)
        session_id, session, dpop_key = await stored_login(
            http_session, session_store, fake_server, client
        )
        session = session.model_copy(update={"refresh_token": None})

        with pytest.raises(SessionNotFound):
            await oauth_refresh(
                http_session,
                session_store,
                session_id,
                session,
                dpop_key,
                fake_server.base_url,
                client,
            )
