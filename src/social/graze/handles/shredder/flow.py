"""Shredder login coordination.

A login moves from started (state stored, user redirected) to authorized (the authorization
server redirected back) to completed (session stored, bindings released). The stage is never
tracked explicitly; it is implied by which TTL store holds an entry for the login.
"""

import asyncio
import logging
from typing import Mapping, Optional

import sentry_sdk

from social.graze.handles.app.metrics import MetricsClient, NoOpMetricsClient
from social.graze.handles.atproto.oauth import OAUTH_SCOPE, ATProtoOAuthClient
from social.graze.handles.claims.registry import ClaimRegistry
from social.graze.handles.errors import MissingHandleError, OAuthCallbackError

logger = logging.getLogger(__name__)

SHREDDER_DONE_TARGET = "/shredder/done"


class ShredderFlow:
    """
    Lets a DID holder release every domain bound to their identity by logging in.
    """

    def __init__(
        self,
        oauth_client: ATProtoOAuthClient,
        registry: ClaimRegistry,
        metrics_client: Optional[MetricsClient] = None,
    ) -> None:
        self._oauth_client = oauth_client
        self._registry = registry
        self._metrics_client = metrics_client or NoOpMetricsClient()

    async def begin_login(self, handle: str) -> str:
        """
        Start a shredder login and return the URL to redirect the user to.

        Raises:
            MissingHandleError: If handle is empty
            ResolutionError: If the handle does not resolve
            OAuthAuthorizationError: If the authorization server cannot be reached
        """
        handle = (handle or "").strip()
        if len(handle) == 0:
            raise MissingHandleError.empty()

        return await self._oauth_client.authorize(handle, OAUTH_SCOPE)

    async def complete_login(self, params: Mapping[str, str]) -> str:
        """
        Finish a shredder login and release the user's domains.

        Releasing is best effort: a failure is logged and reported, and the login still
        succeeds.

        Returns:
            The path to redirect the user to

        Raises:
            OAuthCallbackError: If the callback is invalid, expired or the exchange failed
        """
        try:
            session = await self._oauth_client.callback(params)
        except (OAuthCallbackError, asyncio.TimeoutError):
            self._metrics_client.increment("handles.shredder.login.failed", 1)
            raise
        except Exception as e:
            self._metrics_client.increment("handles.shredder.login.failed", 1)
            logger.exception("OAuth callback failed")
            raise OAuthCallbackError.exchange_failed(str(e)) from e

        try:
            released = await self._registry.release_all_by_did(session.did)
            logger.info("Shredded %d domains for %s", len(released), session.did)
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Failed to release domains for %s", session.did)

        self._metrics_client.increment("handles.shredder.login.completed", 1)
        return SHREDDER_DONE_TARGET
