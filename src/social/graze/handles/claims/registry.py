"""The domain claim registry.

The registry owns the domain -> DID bindings. It enforces that a domain has at most one DID, and
that on the public claim path a DID has at most one domain. Reads are served from memory. Every
change is written through to the binding store before it becomes visible, so a failed write
leaves the registry unchanged.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from social.graze.handles.app.metrics import MetricsClient, NoOpMetricsClient
from social.graze.handles.claims.matcher import DomainAuthorizationMatcher, normalize_domain
from social.graze.handles.claims.persistence import BindingStore, Bindings
from social.graze.handles.errors import (
    AlreadyClaimedError,
    IdentityAlreadyBoundError,
    MissingInputError,
    PersistenceError,
    UnauthorizedError,
)
from social.graze.handles.resolve.identity import IdentityResolver

logger = logging.getLogger(__name__)


class ClaimRegistry:
    """
    Domain to DID bindings with their invariants.

    A single lock serialises every mutation (claim, release, release_all_by_did, reload).
    Identity resolution in `claim` happens outside the lock; both invariants are checked again
    under the lock before the write, so two concurrent claims for one domain, or for two domains
    by one identity, cannot both succeed.
    """

    def __init__(
        self,
        store: BindingStore,
        resolver: IdentityResolver,
        matcher: DomainAuthorizationMatcher,
        metrics_client: Optional[MetricsClient] = None,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._matcher = matcher
        self._metrics_client = metrics_client or NoOpMetricsClient()
        self._bindings: Bindings = {}
        self._lock = asyncio.Lock()
        self.loaded = False

    @property
    def bindings(self) -> Dict[str, str]:
        return dict(self._bindings)

    def get_by_domain(self, domain: str) -> Optional[str]:
        """Return the DID bound to domain, or None."""
        return self._bindings.get(normalize_domain(domain), None)

    def get_domain_by_did(self, did: str) -> Optional[str]:
        """Return the first domain bound to did, or None."""
        # Linear scan; the binding set is small.
        return next(
            (domain for domain, bound in self._bindings.items() if bound == did), None
        )

    async def claim(self, domain: str, identifier: str, privileged: bool = False) -> str:
        """
        Bind domain to the DID that identifier resolves to.

        Args:
            domain: The domain being claimed
            identifier: A handle or DID
            privileged: True for admin writes, which skip the allow-list and the
                one-domain-per-DID rule

        Returns:
            The resolved DID

        Raises:
            MissingInputError: If domain or identifier is empty
            UnauthorizedError: If a public claim falls outside the allow-list
            AlreadyClaimedError: If the domain already has a DID
            ResolutionError: If identifier does not resolve
            IdentityAlreadyBoundError: If the DID already holds a domain (public path)
            PersistenceError: If the bindings are not loaded or could not be written
        """
        domain = normalize_domain(domain or "")
        identifier = (identifier or "").strip()
        if len(domain) == 0 or len(identifier) == 0:
            if privileged:
                raise MissingInputError.domain_or_did()
            raise MissingInputError.domain_or_handle()

        if not privileged and not self._matcher.is_authorized(domain):
            raise UnauthorizedError.domain_not_allowed(domain)

        if not self.loaded:
            raise PersistenceError.not_loaded()

        if self.get_by_domain(domain) is not None:
            raise AlreadyClaimedError.for_domain(domain)

        did = await self._resolver.resolve(identifier)

        async with self._lock:
            if domain in self._bindings:
                raise AlreadyClaimedError.for_domain(domain)

            if not privileged:
                bound_domain = self.get_domain_by_did(did)
                if bound_domain is not None:
                    raise IdentityAlreadyBoundError.for_did(did, bound_domain)

            bindings = dict(self._bindings)
            bindings[domain] = did
            await self._commit(bindings)

        logger.info("Added did %s for domain %s", did, domain)
        self._metrics_client.increment(
            "handles.registry.claim", 1, tag_dict={"privileged": str(privileged)}
        )
        return did

    async def release(self, domain: str) -> bool:
        """
        Remove the binding for domain.

        Returns:
            True if a binding was removed, False if there was none

        Raises:
            MissingInputError: If domain is empty
            PersistenceError: If the bindings are not loaded or could not be written
        """
        domain = normalize_domain(domain or "")
        if len(domain) == 0:
            raise MissingInputError.domain()

        if not self.loaded:
            raise PersistenceError.not_loaded()

        async with self._lock:
            if domain not in self._bindings:
                return False
            bindings = dict(self._bindings)
            did = bindings.pop(domain)
            await self._commit(bindings)

        logger.info("Released domain %s from did %s", domain, did)
        self._metrics_client.increment("handles.registry.release", 1)
        return True

    async def release_all_by_did(self, did: str) -> List[str]:
        """
        Remove every binding for did.

        Returns:
            The released domains, empty if the DID held none

        Raises:
            PersistenceError: If the bindings are not loaded or could not be written
        """
        if not self.loaded:
            raise PersistenceError.not_loaded()

        async with self._lock:
            released = [domain for domain, bound in self._bindings.items() if bound == did]
            if len(released) == 0:
                return []
            bindings = {
                domain: bound for domain, bound in self._bindings.items() if bound != did
            }
            await self._commit(bindings)

        logger.info("Released domains %s from did %s", released, did)
        self._metrics_client.increment("handles.registry.release", len(released))
        return released

    async def reload(self) -> int:
        """
        Re-read all bindings from the binding store.

        Stored domains are normalized. When two stored domains normalize to the same name, the
        one already in normal form wins and the collision is logged; the next write drops the
        other from the store.

        Returns:
            The number of bindings loaded

        Raises:
            PersistenceError: If the store is unreadable or malformed
        """
        async with self._lock:
            stored = await self._store.reload()
            bindings: Bindings = {}
            for domain, did in stored.items():
                normalized = normalize_domain(domain)
                if normalized in bindings:
                    logger.warning(
                        "Stored domain %s (did %s) collides with another binding for %s",
                        domain,
                        did,
                        normalized,
                    )
                    if domain != normalized:
                        continue
                bindings[normalized] = did
            self._bindings = bindings
            self.loaded = True
            return len(self._bindings)

    async def _commit(self, bindings: Bindings) -> None:
        if not self.loaded:
            raise PersistenceError.not_loaded()
        await self._store.write(bindings)
        self._bindings = bindings
