"""AT Protocol handle and DID resolution utilities.

Resolves handles to DIDs through a directory service, falling back to DNS TXT
records and the HTTPS well-known endpoint, and resolves DIDs to the PDS that hosts
the identity. Supports the did:plc and did:web methods.
"""

import asyncio
import logging
from enum import IntEnum
from urllib.parse import urlencode
from aiohttp import ClientError, ClientSession, ClientTimeout
from pydantic import BaseModel
from aiodns import DNSResolver
from aiodns.error import DNSError
from typing import Optional, Any, Dict
import sentry_sdk

from dev.stevedylan.edge.errors import ResolutionError

logger = logging.getLogger(__name__)


class SubjectType(IntEnum):
    """AT Protocol subject type enumeration.

    Identifies whether a subject is a DID or handle requiring resolution.
    """

    did_method_plc = 1
    did_method_web = 2
    hostname = 3


class ParsedSubject(BaseModel):
    """Parsed AT Protocol subject input.

    Contains the classified subject type and normalized subject string.
    """

    subject_type: SubjectType
    subject: str


class ResolvedSubject(BaseModel):
    """Resolved AT Protocol subject.

    Contains the DID, the handle when the DID document claims one, and the PDS
    endpoint.
    """

    did: str
    handle: Optional[str] = None
    pds: str


async def resolve_handle_directory(
    session: ClientSession, handle_resolver_url: str, handle: str, timeout: float = 10.0
) -> Optional[str]:
    """Resolve a handle with ``com.atproto.identity.resolveHandle`` on a directory service.

    Args:
        session: HTTP client session
        handle_resolver_url: Base URL of the directory service
        handle: AT Protocol handle to resolve
        timeout: Request timeout in seconds

    Returns:
        DID string if found, None if resolution fails
    """
    query = urlencode({"handle": handle})
    url = f"{handle_resolver_url}/xrpc/com.atproto.identity.resolveHandle?{query}"
    try:
        async with session.get(url, timeout=ClientTimeout(total=timeout)) as resp:
            if resp.status != 200:
                return None
            body = await resp.json(content_type=None)
    except (ClientError, asyncio.TimeoutError, ValueError) as e:
        logger.warning("Directory lookup failed for %s: %s", handle, type(e).__name__)
        return None

    did = body.get("did") if isinstance(body, dict) else None
    if isinstance(did, str) and did.startswith("did:"):
        return did
    return None


async def resolve_handle_dns(handle: str) -> Optional[str]:
    """Resolve AT Protocol handle to DID using DNS TXT record.

    Queries _atproto.{handle} TXT record and extracts DID from did= prefix.

    Args:
        handle: AT Protocol handle to resolve

    Returns:
        DID string if found, None if resolution fails
    """
    resolver = DNSResolver()
    try:
        results = await resolver.query(f"_atproto.{handle}", "TXT")
    except DNSError as e:
        sentry_sdk.capture_exception(e)
        return None
    for result in results or []:
        text = result.text
        if isinstance(text, bytes):
            text = text.decode()
        if text.startswith("did="):
            return text.removeprefix("did=")
    return None


async def resolve_handle_http(
    session: ClientSession, handle: str, timeout: float = 10.0
) -> Optional[str]:
    """Resolve AT Protocol handle to DID using HTTPS well-known endpoint.

    Fetches DID from https://{handle}/.well-known/atproto-did endpoint.

    Args:
        session: HTTP client session
        handle: AT Protocol handle to resolve
        timeout: Request timeout in seconds

    Returns:
        DID string if found, None if resolution fails
    """
    try:
        async with session.get(
            f"https://{handle}/.well-known/atproto-did",
            timeout=ClientTimeout(total=timeout),
        ) as resp:
            if resp.status != 200:
                return None
            body = (await resp.text()).strip()
            if body.startswith("did:"):
                return body
            return None
    except (ClientError, asyncio.TimeoutError) as e:
        sentry_sdk.capture_exception(e)
        return None


async def resolve_handle(
    session: ClientSession,
    handle: str,
    handle_resolver_url: Optional[str] = None,
    timeout: float = 10.0,
) -> Optional[str]:
    """Resolve AT Protocol handle to DID.

    Asks the directory service first when one is configured. When that fails, DNS
    TXT and HTTPS well-known resolution are attempted concurrently, preferring DNS.

    Args:
        session: HTTP client session
        handle: AT Protocol handle to resolve
        handle_resolver_url: Optional directory service base URL
        timeout: Request timeout in seconds

    Returns:
        DID string if found via any method, None if all fail
    """
    if handle_resolver_url:
        did = await resolve_handle_directory(session, handle_resolver_url, handle, timeout)
        if did is not None:
            return did

    async with asyncio.TaskGroup() as tg:
        dns_result = tg.create_task(resolve_handle_dns(handle))
        http_result = tg.create_task(resolve_handle_http(session, handle, timeout))
    dns_result = dns_result.result()
    http_result = http_result.result()
    if dns_result is not None:
        return dns_result
    return http_result


def handle_predicate(value: str) -> bool:
    """Check if value is an AT Protocol handle reference.

    Args:
        value: String to check

    Returns:
        True if value starts with at:// prefix
    """
    return value is not None and value.startswith("at://")


def pds_predicate(value: Dict[str, Any]) -> bool:
    """Check if service entry is an AT Protocol PDS.

    The entry is matched by its ``#atproto_pds`` fragment ID or by its
    ``AtprotoPersonalDataServer`` type, and must carry an endpoint.

    Args:
        value: Service dictionary from DID document

    Returns:
        True if service is the PDS entry with an endpoint
    """
    if not isinstance(value, dict) or "serviceEndpoint" not in value:
        return False
    service_id = value.get("id", None) or ""
    return (
        service_id.endswith("#atproto_pds")
        or value.get("type", None) == "AtprotoPersonalDataServer"
    )


def subject_from_did_document(did: str, body: Any) -> Optional[ResolvedSubject]:
    """Extract handle and PDS from a DID document, None if it names no PDS."""
    if not isinstance(body, dict):
        return None
    handle = next(filter(handle_predicate, body.get("alsoKnownAs", None) or []), None)
    pds = next(filter(pds_predicate, body.get("service", None) or []), None)
    if pds is None:
        return None
    return ResolvedSubject(
        did=did,
        handle=handle.removeprefix("at://") if handle is not None else None,
        pds=pds.get("serviceEndpoint"),
    )


async def resolve_did_method_plc(
    plc_directory: str, session: ClientSession, did: str, timeout: float = 10.0
) -> Optional[ResolvedSubject]:
    """Resolve did:plc DID to complete subject information.

    Fetches DID document from PLC directory and extracts handle and PDS.

    Args:
        plc_directory: PLC directory hostname
        session: HTTP client session
        did: did:plc DID to resolve
        timeout: Request timeout in seconds

    Returns:
        ResolvedSubject if successful, None if resolution fails
    """
    async with session.get(
        f"https://{plc_directory}/{did}", timeout=ClientTimeout(total=timeout)
    ) as resp:
        if resp.status != 200:
            return None
        body = await resp.json(content_type=None)
        return subject_from_did_document(did, body)


async def resolve_did_method_web(
    session: ClientSession, did: str, timeout: float = 10.0
) -> Optional[ResolvedSubject]:
    """Resolve did:web DID to complete subject information.

    Constructs did.json URL from DID and extracts handle and PDS. A bare domain
    maps to ``/.well-known/did.json``; additional colon-separated segments map to
    URL path segments.

    Args:
        session: HTTP client session
        did: did:web DID to resolve
        timeout: Request timeout in seconds

    Returns:
        ResolvedSubject if successful, None if resolution fails
    """

    parts = did.removeprefix("did:web:").split(":")
    if len(parts) == 0 or not parts[0]:
        return None

    if len(parts) == 1:
        parts.append(".well-known")

    url = "https://{inner}/did.json".format(inner="/".join(parts))

    async with session.get(url, timeout=ClientTimeout(total=timeout)) as resp:
        if resp.status != 200:
            return None
        body = await resp.json(content_type=None)
        return subject_from_did_document(did, body)


async def resolve_did(
    session: ClientSession, plc_hostname: str, did: str, timeout: float = 10.0
) -> Optional[ResolvedSubject]:
    """Resolve DID to complete subject information.

    Routes to appropriate resolver based on DID method (plc or web).

    Args:
        session: HTTP client session
        plc_hostname: PLC directory hostname for did:plc resolution
        did: DID to resolve
        timeout: Request timeout in seconds

    Returns:
        ResolvedSubject if successful, None if unsupported or failed
    """
    if did.startswith("did:plc:"):
        return await resolve_did_method_plc(plc_hostname, session, did, timeout)
    elif did.startswith("did:web:"):
        return await resolve_did_method_web(session, did, timeout)
    return None


async def resolve_handle_to_remote_server(
    session: ClientSession,
    subject: str,
    plc_hostname: str,
    handle_resolver_url: Optional[str] = None,
    timeout: float = 10.0,
) -> ResolvedSubject:
    """Resolve a handle or DID to the PDS that hosts it.

    Every failure is raised.

    Raises:
        ResolutionError: If the subject is empty, the handle does not resolve, the
            DID method is unsupported, the DID document cannot be fetched, or it
            names no PDS.
    """
    parsed_subject = parse_input(subject)
    if parsed_subject is None:
        raise ResolutionError.handle_not_resolved(subject)

    did = parsed_subject.subject
    if parsed_subject.subject_type == SubjectType.hostname:
        resolved_did = await resolve_handle(
            session, parsed_subject.subject, handle_resolver_url, timeout
        )
        if resolved_did is None:
            raise ResolutionError.handle_not_resolved(parsed_subject.subject)
        did = resolved_did

    if not (did.startswith("did:plc:") or did.startswith("did:web:")):
        raise ResolutionError.unsupported_did(did)

    try:
        resolved = await resolve_did(session, plc_hostname, did, timeout)
    except (ClientError, asyncio.TimeoutError, ValueError) as e:
        raise ResolutionError.did_not_resolved(did) from e

    if resolved is None:
        raise ResolutionError.missing_pds(did)

    return resolved


def parse_input(subject: str) -> Optional[ParsedSubject]:
    """Parse and classify AT Protocol subject input.

    Normalizes input by removing prefixes and classifies as DID or handle.

    Args:
        subject: Raw subject string (handle, DID, or prefixed)

    Returns:
        ParsedSubject with type and normalized string, None for empty input
    """
    subject = subject.strip()
    subject = subject.removeprefix("at://")
    subject = subject.removeprefix("@")

    if not subject:
        return None

    if subject.startswith("did:plc:"):
        return ParsedSubject(subject_type=SubjectType.did_method_plc, subject=subject)
    elif subject.startswith("did:web:"):
        return ParsedSubject(subject_type=SubjectType.did_method_web, subject=subject)

    return ParsedSubject(subject_type=SubjectType.hostname, subject=subject.lower())
