"""
Identity Resolution

Maps AT Protocol handles and DIDs to the Personal Data Server that hosts them.
Handles are looked up through a directory service, falling back to DNS TXT records
and the HTTPS well-known endpoint. DIDs are resolved through the PLC directory or,
for did:web, the domain's own DID document.
"""
