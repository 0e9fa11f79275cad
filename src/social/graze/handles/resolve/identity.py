"""Canonical DID resolution for claim requests and logins.

`IdentityResolver` turns the handle-or-DID string a user typed into a canonical DID, or fails
with a ResolutionError. It performs no retries; callers decide whether to try again.
"""

import logging
from typing import Any, Dict, Optional

from aiohttp import ClientSession

from social.graze.handles.errors import MissingInputError, ResolutionError
from social.graze.handles.resolve.handle import (
    ResolvedSubject,
    parse_input,
    resolve_did_document,
    resolve_handle,
    subject_from_document,
)

logger = logging.getLogger(__name__)


class IdentityResolver:
    """
    Resolves handles and DIDs through the AT Protocol identity network.

    `resolve_did` and `resolve_handle` are the two network-facing lookups. `resolve` and
    `resolve_subject` build on them and raise ResolutionError instead of returning None.
    """

    def __init__(self, http_session: ClientSession, plc_hostname: str) -> None:
        self._http_session = http_session
        self._plc_hostname = plc_hostname

    async def resolve_did(self, did: str) -> Optional[Dict[str, Any]]:
        """Return the DID document for did, or None if it does not resolve."""
        return await resolve_did_document(self._http_session, self._plc_hostname, did)

    async def resolve_handle(self, handle: str) -> Optional[str]:
        """Return the DID a handle points at, or None if it does not resolve."""
        return await resolve_handle(self._http_session, handle)

    async def resolve(self, value: str) -> str:
        """
        Resolve a handle or DID to its canonical DID.

        Args:
            value: A handle (`alice.bsky.social`, `@alice.bsky.social`) or a DID

        Returns:
            The canonical DID

        Raises:
            MissingInputError: If value is empty
            ResolutionError: If the DID has no document, or the handle points nowhere
        """
        parsed = parse_input(value or "")
        if parsed is None:
            raise MissingInputError.domain_or_handle()

        if parsed.is_did:
            document = await self.resolve_did(parsed.subject)
            if document is None:
                logger.info("DID did not resolve: %s", parsed.subject)
                raise ResolutionError.did_did_not_resolve(parsed.subject)
            return parsed.subject

        did = await self.resolve_handle(parsed.subject)
        if did is None:
            logger.info("handle did not resolve: %s", parsed.subject)
            raise ResolutionError.handle_did_not_resolve(parsed.subject)
        return did

    async def resolve_subject(self, value: str) -> ResolvedSubject:
        """
        Resolve a handle or DID to its DID, handle and PDS.

        Used by the OAuth client, which needs the PDS to discover the authorization server.

        Raises:
            MissingInputError: If value is empty
            ResolutionError: If any step of the resolution fails
        """
        did = await self.resolve(value)
        document = await self.resolve_did(did)
        if document is None:
            raise ResolutionError.did_did_not_resolve(did)
        subject = subject_from_document(did, document)
        if subject is None:
            raise ResolutionError.did_did_not_resolve(did)
        return subject
