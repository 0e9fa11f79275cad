"""AT Protocol handle and DID resolution utilities.

Resolves AT Protocol handles to DIDs using DNS TXT records and HTTPS well-known endpoints, and
fetches DID documents for the did:plc and did:web methods.
"""

import asyncio
from enum import IntEnum
from typing import Any, Dict, Optional

import sentry_sdk
from aiodns import DNSResolver
from aiohttp import ClientError, ClientSession
from pydantic import BaseModel


class SubjectType(IntEnum):
    """AT Protocol subject type enumeration.

    Identifies whether a subject is a DID or a handle requiring resolution.
    """

    did_method_plc = 1
    did_method_web = 2
    hostname = 3
    did_method_other = 4


class ParsedSubject(BaseModel):
    """Parsed AT Protocol subject input.

    Contains the classified subject type and normalized subject string.
    """

    subject_type: SubjectType
    subject: str

    @property
    def is_did(self) -> bool:
        return self.subject_type != SubjectType.hostname


class ResolvedSubject(BaseModel):
    """Resolved AT Protocol subject with all identifiers.

    Contains DID, handle, and PDS endpoint for a fully resolved subject.
    """

    did: str
    handle: str
    pds: str


def did_predicate(value: Optional[str]) -> bool:
    """Check if value looks like a DID."""
    return value is not None and value.startswith("did:") and len(value) > 4


async def resolve_handle_dns(handle: str) -> Optional[str]:
    """Resolve AT Protocol handle to DID using DNS TXT record.

    Queries _atproto.{handle} TXT records and returns the first did= value.

    Args:
        handle: AT Protocol handle to resolve

    Returns:
        DID string if found, None if resolution fails
    """
    resolver = DNSResolver()
    try:
        results = await resolver.query(f"_atproto.{handle}", "TXT")
    except Exception as e:
        sentry_sdk.capture_exception(e)
        return None
    for result in results or []:
        text = result.text
        if isinstance(text, bytes):
            text = text.decode()
        if text.startswith("did="):
            did = text.removeprefix("did=").strip()
            if did_predicate(did):
                return did
    return None


async def resolve_handle_http(session: ClientSession, handle: str) -> Optional[str]:
    """Resolve AT Protocol handle to DID using HTTPS well-known endpoint.

    Fetches DID from https://{handle}/.well-known/atproto-did endpoint.

    Args:
        session: HTTP client session
        handle: AT Protocol handle to resolve

    Returns:
        DID string if found, None if resolution fails
    """
    try:
        async with session.get(f"https://{handle}/.well-known/atproto-did") as resp:
            if resp.status != 200:
                return None
            body = (await resp.text()).strip()
            if did_predicate(body):
                return body
            return None
    except Exception as e:
        sentry_sdk.capture_exception(e)
        return None


async def resolve_handle(session: ClientSession, handle: str) -> Optional[str]:
    """Resolve AT Protocol handle to DID using DNS and HTTPS concurrently.

    Attempts both DNS TXT and HTTPS well-known resolution, preferring DNS.

    Args:
        session: HTTP client session
        handle: AT Protocol handle to resolve

    Returns:
        DID string if found via either method, None if both fail
    """
    async with asyncio.TaskGroup() as tg:
        dns_result = tg.create_task(resolve_handle_dns(handle))
        http_result = tg.create_task(resolve_handle_http(session, handle))
    if dns_result.result() is not None:
        return dns_result.result()
    return http_result.result()


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

    Args:
        value: Service dictionary from DID document

    Returns:
        True if service is AtprotoPersonalDataServer with endpoint
    """
    return (
        value is not None
        and value.get("type", None) == "AtprotoPersonalDataServer"
        and "serviceEndpoint" in value
    )


def did_document_url(plc_hostname: str, did: str) -> Optional[str]:
    """Build the URL a DID document is served from.

    Args:
        plc_hostname: PLC directory hostname for did:plc documents
        did: DID to locate

    Returns:
        Document URL, or None for unsupported DID methods
    """
    if did.startswith("did:plc:"):
        return f"https://{plc_hostname}/{did}"

    if did.startswith("did:web:"):
        parts = did.removeprefix("did:web:").split(":")
        if len(parts) == 0 or parts[0] == "":
            return None
        if len(parts) == 1:
            parts.append(".well-known")
        return "https://{inner}/did.json".format(inner="/".join(parts))

    return None


async def resolve_did_document(
    session: ClientSession, plc_hostname: str, did: str
) -> Optional[Dict[str, Any]]:
    """Fetch the DID document for a did:plc or did:web DID.

    Connection failures count as "did not resolve". Timeouts are not caught and reach the
    caller.

    Args:
        session: HTTP client session
        plc_hostname: PLC directory hostname for did:plc resolution
        did: DID to resolve

    Returns:
        The DID document if it exists and names this DID, None otherwise
    """
    url = did_document_url(plc_hostname, did)
    if url is None:
        return None

    try:
        async with session.get(url) as resp:
            if resp.status != 200:
                return None
            body = await resp.json(content_type=None)
    except (ClientError, ValueError) as e:
        sentry_sdk.capture_exception(e)
        return None

    if not isinstance(body, dict) or body.get("id", None) != did:
        return None
    return body


def subject_from_document(did: str, document: Dict[str, Any]) -> Optional[ResolvedSubject]:
    """Extract the handle and PDS from a DID document.

    Args:
        did: The DID the document belongs to
        document: DID document

    Returns:
        ResolvedSubject if the document names both a handle and a PDS, None otherwise
    """
    handle = next(filter(handle_predicate, document.get("alsoKnownAs", [])), None)
    pds = next(filter(pds_predicate, document.get("service", [])), None)
    if handle is None or pds is None:
        return None
    return ResolvedSubject(
        did=did,
        handle=handle.removeprefix("at://"),
        pds=pds.get("serviceEndpoint"),
    )


async def resolve_subject(
    session: ClientSession, plc_hostname: str, subject: str
) -> Optional[ResolvedSubject]:
    """Resolve AT Protocol subject (handle or DID) to complete information.

    Parses input, resolves handle to DID if needed, then resolves the DID document.

    Args:
        session: HTTP client session
        plc_hostname: PLC directory hostname
        subject: Handle or DID to resolve

    Returns:
        ResolvedSubject if successful, None if resolution fails
    """
    parsed_subject = parse_input(subject)
    if parsed_subject is None:
        return None

    did: Optional[str] = parsed_subject.subject
    if not parsed_subject.is_did:
        did = await resolve_handle(session, parsed_subject.subject)

    if did is None:
        return None

    document = await resolve_did_document(session, plc_hostname, did)
    if document is None:
        return None

    return subject_from_document(did, document)


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

    if len(subject) == 0:
        return None

    if subject.startswith("did:plc:"):
        return ParsedSubject(subject_type=SubjectType.did_method_plc, subject=subject)
    elif subject.startswith("did:web:"):
        return ParsedSubject(subject_type=SubjectType.did_method_web, subject=subject)
    elif subject.startswith("did:"):
        return ParsedSubject(subject_type=SubjectType.did_method_other, subject=subject)

    # Handles are case-insensitive hostnames.
    return ParsedSubject(
        subject_type=SubjectType.hostname, subject=subject.lower().rstrip(".")
    )
