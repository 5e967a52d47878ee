"""
Edge API for stevedylan.dev

This package implements the companion API of a personal website. Its core is an
authentication subsystem that lets the site owner, and optionally guest commenters,
sign in with their AT Protocol identity and perform signed writes against their
Personal Data Server (PDS).

Key Components:
- app: Web application layer with request handlers and server configuration
- atproto: OAuth, DPoP proofs and signed repository writes against a PDS
- model: Pydantic models for persisted sessions and OAuth server responses
- store: Redis-backed session storage and the session cookie contract
- resolve: Identity resolution for handles and DIDs

Authentication Flow:
1. A fresh DPoP key pair, PKCE pair and state are generated for each login
2. A pushed authorization request is sent and the browser is redirected
3. The callback exchanges the code for DPoP-bound tokens
4. The session and its key pair are stored and referenced by an opaque cookie
5. Expired access tokens are refreshed transparently on the next request
"""
