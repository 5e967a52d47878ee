"""
Shared test configuration and fixtures.

Provides an in-memory Redis, a session store on top of it, test settings, and a
fake authorization server that also plays the part of a PDS. The fake server
verifies every DPoP proof it receives and records what it saw so tests can assert
on the wire contract.
"""

import itertools
import json
from typing import Any, Dict, List, Optional, Set

import fakeredis.aioredis
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer
from jwcrypto import jwk, jws

from dev.stevedylan.edge.app.config import Settings
from dev.stevedylan.edge.atproto.jwt import access_token_hash
from dev.stevedylan.edge.store.session import SessionStore

OWNER_DID = "did:plc:owner"
GUEST_DID = "did:plc:guest"


def decode_proof(token: str):
    """Verify a DPoP proof against the key embedded in its header."""
    parsed = jws.JWS()
    parsed.deserialize(token)
    header = parsed.jose_header
    parsed.verify(jwk.JWK(**header["jwk"]))
    return header, json.loads(parsed.payload)


class FakeAuthorizationServer:
    """
    Authorization server and PDS in one aiohttp application.

    Every DPoP request must carry a proof whose ``htm``/``htu`` match the request
    byte for byte and whose ``jti`` was never seen before. Requests without the
    current nonce are rejected with ``use_dpop_nonce``.
    """

    def __init__(self, sub: str = OWNER_DID) -> None:
        self.sub = sub
        self.nonce = "nonce-1"
        self.require_nonce = True
        self.expires_in = 3600
        self.rotate_refresh_tokens = True
        self.refresh_error: Optional[str] = None

        self.proofs: List[Dict[str, Any]] = []
        self.proof_errors: List[str] = []
        self.seen_jti: Set[str] = set()
        self.par_requests: List[Dict[str, str]] = []
        self.token_requests: List[Dict[str, str]] = []
        self.records: List[Dict[str, Any]] = []
        self.blobs: List[bytes] = []

        self.access_tokens: Set[str] = set()
        self.refresh_tokens: Set[str] = set()
        self._counter = itertools.count(1)

        self.server: Optional[TestServer] = None

    @property
    def base_url(self) -> str:
        return str(self.server.make_url("")).rstrip("/")

    async def start(self) -> None:
        self.server = TestServer(self.application())
        await self.server.start_server()

    async def close(self) -> None:
        await self.server.close()

    def application(self) -> web.Application:
        app = web.Application()
        app.add_routes(
            [
                web.get("/.well-known/oauth-protected-resource", self.protected_resource),
                web.get("/.well-known/oauth-authorization-server", self.metadata),
                web.post("/oauth/par", self.par),
                web.post("/oauth/token", self.token),
                web.post("/xrpc/com.atproto.repo.createRecord", self.create_record),
                web.post("/xrpc/com.atproto.repo.uploadBlob", self.upload_blob),
                web.get("/xrpc/com.atproto.repo.getRecord", self.get_record),
            ]
        )
        return app

    def _nonce_demand(self, status: int) -> web.Response:
        headers = {"DPoP-Nonce": self.nonce}
        if status == 401:
            headers["WWW-Authenticate"] = 'DPoP error="use_dpop_nonce"'
        return web.json_response(
            {"error": "use_dpop_nonce", "error_description": "Nonce required"},
            status=status,
            headers=headers,
        )

    def _check_proof(
        self, request: web.Request, access_token: Optional[str], demand_status: int
    ) -> Optional[web.Response]:
        token = request.headers.get("DPoP")
        if not token:
            self.proof_errors.append(f"{request.path}: missing proof")
            return web.json_response({"error": "invalid_dpop_proof"}, status=400)

        header, claims = decode_proof(token)
        self.proofs.append({"path": request.path, "header": header, "claims": claims})

        if header.get("typ") != "dpop+jwt" or header.get("alg") != "ES256":
            self.proof_errors.append(f"{request.path}: bad header {header}")
        if "d" in header["jwk"]:
            self.proof_errors.append(f"{request.path}: private key in header")
        if claims["htm"] != request.method:
            self.proof_errors.append(f"{request.path}: htm {claims['htm']}")
        if claims["htu"] != str(request.url):
            self.proof_errors.append(f"{request.path}: htu {claims['htu']}")
        if claims["jti"] in self.seen_jti:
            self.proof_errors.append(f"{request.path}: jti reused")
        self.seen_jti.add(claims["jti"])

        if access_token is not None and claims.get("ath") != access_token_hash(
            access_token
        ):
            self.proof_errors.append(f"{request.path}: bad ath")
        if access_token is None and "ath" in claims:
            self.proof_errors.append(f"{request.path}: unexpected ath")

        if self.require_nonce and claims.get("nonce") != self.nonce:
            return self._nonce_demand(demand_status)
        return None

    def _access_token(self, request: web.Request) -> Optional[str]:
        value = request.headers.get("Authorization", "")
        if not value.startswith("DPoP "):
            return None
        return value.removeprefix("DPoP ")

    def _issue_tokens(self) -> Dict[str, Any]:
        n = next(self._counter)
        access_token = f"access-{n}"
        refresh_token = f"refresh-{n}"
        self.access_tokens.add(access_token)
        self.refresh_tokens.add(refresh_token)
        return {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "token_type": "DPoP",
            "expires_in": self.expires_in,
            "scope": "atproto transition:generic",
            "sub": self.sub,
        }

    async def protected_resource(self, request: web.Request):
        return web.json_response(
            {"resource": self.base_url, "authorization_servers": [self.base_url]}
        )

    async def metadata(self, request: web.Request):
        return web.json_response(
            {
                "issuer": self.base_url,
                "authorization_endpoint": f"{self.base_url}/oauth/authorize",
                "token_endpoint": f"{self.base_url}/oauth/token",
                "pushed_authorization_request_endpoint": f"{self.base_url}/oauth/par",
                "dpop_signing_alg_values_supported": ["ES256"],
                "scopes_supported": ["atproto", "transition:generic"],
            }
        )

    async def par(self, request: web.Request):
        form = dict(await request.post())
        rejection = self._check_proof(request, None, 400)
        if rejection is not None:
            return rejection
        self.par_requests.append(form)
        n = next(self._counter)
        return web.json_response(
            {"request_uri": f"urn:ietf:params:oauth:request_uri:req-{n}", "expires_in": 60},
            status=201,
            headers={"DPoP-Nonce": self.nonce},
        )

    async def token(self, request: web.Request):
        form = dict(await request.post())
        rejection = self._check_proof(request, None, 400)
        if rejection is not None:
            return rejection
        self.token_requests.append(form)

        if form.get("grant_type") == "authorization_code":
            if form.get("code") == "bad-code":
                return web.json_response(
                    {"error": "invalid_grant", "error_description": "Unknown code"},
                    status=400,
                )
            return web.json_response(self._issue_tokens())

        if form.get("grant_type") == "refresh_token":
            refresh_token = form.get("refresh_token")
            if self.refresh_error is not None or refresh_token not in self.refresh_tokens:
                return web.json_response(
                    {"error": self.refresh_error or "invalid_grant"}, status=400
                )
            if self.rotate_refresh_tokens:
                self.refresh_tokens.discard(refresh_token)
            return web.json_response(self._issue_tokens())

        return web.json_response({"error": "unsupported_grant_type"}, status=400)

    async def create_record(self, request: web.Request):
        access_token = self._access_token(request)
        if access_token not in self.access_tokens:
            return web.json_response({"error": "InvalidToken"}, status=401)
        rejection = self._check_proof(request, access_token, 401)
        if rejection is not None:
            return rejection

        body = await request.json()
        self.records.append(body)
        n = next(self._counter)
        return web.json_response(
            {
                "uri": f"at://{body['repo']}/{body['collection']}/rkey{n}",
                "cid": f"bafyrecord{n}",
            }
        )

    async def upload_blob(self, request: web.Request):
        access_token = self._access_token(request)
        if access_token not in self.access_tokens:
            return web.json_response({"error": "InvalidToken"}, status=401)
        rejection = self._check_proof(request, access_token, 401)
        if rejection is not None:
            return rejection

        data = await request.read()
        self.blobs.append(data)
        return web.json_response(
            {
                "blob": {
                    "$type": "blob",
                    "ref": {"$link": "bafkblob"},
                    "mimeType": request.content_type,
                    "size": len(data),
                }
            }
        )

    async def get_record(self, request: web.Request):
        repo = request.query["repo"]
        collection = request.query["collection"]
        rkey = request.query["rkey"]
        if rkey == "missing":
            return web.json_response({"error": "RecordNotFound"}, status=400)
        return web.json_response(
            {
                "uri": f"at://{repo}/{collection}/{rkey}",
                "cid": "bafyparent",
                "value": {"$type": collection, "title": "Parent"},
            }
        )


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def session_store(redis_client):
    return SessionStore(redis_client)


@pytest_asyncio.fixture
async def fake_server():
    server = FakeAuthorizationServer()
    await server.start()
    yield server
    await server.close()


@pytest.fixture
def settings(fake_server) -> Settings:
    return Settings(
        api_url="http://localhost:8787",
        client_url="http://localhost:4321",
        pds_url=fake_server.base_url,
        allowed_did=OWNER_DID,
        publication_uri=f"at://{OWNER_DID}/site.standard.publication/self",
        allowed_origins=["http://localhost:4321"],
        metrics_backend="none",
        sentry_dsn=None,
        http_timeout=5.0,
    )
