"""
Tests for DPoP-signed requests and the nonce replay contract.

A small aiohttp server is started per test and scripted to demand nonces, so the
number of requests actually sent can be counted.
"""

from typing import List

import pytest
import pytest_asyncio
from aiohttp import ClientSession, web
from aiohttp.test_utils import TestServer

from dev.stevedylan.edge.atproto.dpop import dpop_request
from dev.stevedylan.edge.atproto.jwt import access_token_hash, generate_dpop_key
from dev.stevedylan.edge.errors import NetworkError, ProtocolError

from conftest import decode_proof


class ScriptedServer:
    """Answers each request with the next scripted response."""

    def __init__(self) -> None:
        self.script: List[web.Response] = []
        self.requests: List[dict] = []
        self.server = None

    async def handle(self, request: web.Request):
        self.requests.append(
            {
                "headers": dict(request.headers),
                "claims": decode_proof(request.headers["DPoP"])[1],
                "url": str(request.url),
            }
        )
        if self.script:
            return self.script.pop(0)
        return web.json_response({"ok": True})

    def url(self, path: str) -> str:
        return str(self.server.make_url(path))


def nonce_demand(nonce: str, status: int = 400) -> web.Response:
    headers = {"DPoP-Nonce": nonce}
    if status == 401:
        headers["WWW-Authenticate"] = 'DPoP error="use_dpop_nonce"'
        return web.json_response({"error": "InvalidToken"}, status=401, headers=headers)
    return web.json_response({"error": "use_dpop_nonce"}, status=status, headers=headers)


@pytest_asyncio.fixture
async def scripted():
    scripted = ScriptedServer()
    app = web.Application()
    app.add_routes([web.route("*", "/{tail:.*}", scripted.handle)])
    scripted.server = TestServer(app)
    await scripted.server.start_server()
    yield scripted
    await scripted.server.close()


@pytest_asyncio.fixture
async def http_session():
    async with ClientSession() as session:
        yield session


class TestDpopRequest:
    """Test dpop_request."""

    @pytest.mark.asyncio
    async def test_single_request_without_demand(self, scripted, http_session):
        """Test that a request is sent once when no nonce is demanded."""
        dpop_key, _ = generate_dpop_key()

        resp = await dpop_request(
            http_session, "POST", scripted.url("/oauth/par"), dpop_key, data={"a": "b"}
        )

        assert resp.status == 200
        assert resp.nonce is None
        assert len(scripted.requests) == 1
        assert "nonce" not in scripted.requests[0]["claims"]

    @pytest.mark.asyncio
    async def test_nonce_demand_replayed_once(self, scripted, http_session):
        """Test that a nonce demand leads to exactly one replay with a new proof."""
        dpop_key, _ = generate_dpop_key()
        scripted.script.append(nonce_demand("server-nonce"))

        resp = await dpop_request(
            http_session, "POST", scripted.url("/oauth/token"), dpop_key, data={"a": "b"}
        )

        assert resp.status == 200
        assert resp.nonce == "server-nonce"
        assert len(scripted.requests) == 2

        first, second = scripted.requests
        assert "nonce" not in first["claims"]
        assert second["claims"]["nonce"] == "server-nonce"
        assert first["claims"]["jti"] != second["claims"]["jti"]

    @pytest.mark.asyncio
    async def test_repeated_demand_is_fatal(self, scripted, http_session):
        """Test that a second nonce demand raises instead of looping."""
        dpop_key, _ = generate_dpop_key()
        scripted.script.extend([nonce_demand("n1"), nonce_demand("n2")])

        with pytest.raises(ProtocolError):
            await dpop_request(
                http_session, "POST", scripted.url("/oauth/token"), dpop_key, data={}
            )

        assert len(scripted.requests) == 2

    @pytest.mark.asyncio
    async def test_resource_server_demand(self, scripted, http_session):
        """Test that a 401 with WWW-Authenticate use_dpop_nonce is replayed."""
        dpop_key, _ = generate_dpop_key()
        scripted.script.append(nonce_demand("pds-nonce", status=401))

        resp = await dpop_request(
            http_session,
            "POST",
            scripted.url("/xrpc/com.atproto.repo.createRecord"),
            dpop_key,
            nonce="stale",
            access_token="access-token",
            json={"repo": "did:plc:owner"},
        )

        assert resp.status == 200
        assert resp.nonce == "pds-nonce"
        assert len(scripted.requests) == 2
        assert scripted.requests[0]["claims"]["nonce"] == "stale"
        assert scripted.requests[1]["claims"]["nonce"] == "pds-nonce"

    @pytest.mark.asyncio
    async def test_access_token_binding(self, scripted, http_session):
        """Test that resource requests carry the DPoP authorization and ath."""
        dpop_key, _ = generate_dpop_key()

        await dpop_request(
            http_session,
            "POST",
            scripted.url("/xrpc/com.atproto.repo.createRecord"),
            dpop_key,
            access_token="access-token",
            json={},
        )

        request = scripted.requests[0]
        assert request["headers"]["Authorization"] == "DPoP access-token"
        assert request["claims"]["ath"] == access_token_hash("access-token")
        assert request["claims"]["htu"] == request["url"]
        assert request["claims"]["htm"] == "POST"

    @pytest.mark.asyncio
    async def test_other_errors_are_returned(self, scripted, http_session):
        """Test that errors other than nonce demands are not replayed."""
        dpop_key, _ = generate_dpop_key()
        scripted.script.append(
            web.json_response({"error": "invalid_grant"}, status=400)
        )

        resp = await dpop_request(
            http_session, "POST", scripted.url("/oauth/token"), dpop_key, data={}
        )

        assert resp.status == 400
        assert resp.error() == "invalid_grant"
        assert len(scripted.requests) == 1

    @pytest.mark.asyncio
    async def test_demand_without_nonce_header_is_not_replayed(
        self, scripted, http_session
    ):
        """Test that use_dpop_nonce without a DPoP-Nonce header is returned as is."""
        dpop_key, _ = generate_dpop_key()
        scripted.script.append(
            web.json_response({"error": "use_dpop_nonce"}, status=400)
        )

        resp = await dpop_request(
            http_session, "POST", scripted.url("/oauth/token"), dpop_key, data={}
        )

        assert resp.status == 400
        assert len(scripted.requests) == 1

    @pytest.mark.asyncio
    async def test_connection_failure(self, http_session):
        """Test that connection failures raise NetworkError."""
        dpop_key, _ = generate_dpop_key()

        with pytest.raises(NetworkError):
            await dpop_request(
                http_session, "POST", "http://127.0.0.1:1/oauth/token", dpop_key
            )
