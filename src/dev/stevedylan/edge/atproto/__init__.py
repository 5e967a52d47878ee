"""
AT Protocol Integration

This package provides the OAuth client and the authenticated write path used to talk
to Personal Data Server (PDS) instances and their authorization servers.

Key Components:
- jwt.py: DPoP key pair management and proof generation
- dpop.py: DPoP-signed requests with the bounded ``use_dpop_nonce`` retry
- pds.py: Authorization server metadata discovery and public record reads
- oauth.py: PKCE, pushed authorization requests, code exchange and refresh
- repo.py: DPoP-bound ``com.atproto.repo`` writes

Every token-endpoint call and every repository write carries a fresh proof. When a
server demands a nonce the request is replayed exactly once with a new proof.
"""
