"""
AT Protocol OAuth Client Implementation

This module implements the public (no client secret) OAuth 2.0 client used by the shredder login.
It only needs to prove who the user is, so it runs the authorization code flow once and keeps
the resulting session for a short while; tokens are never refreshed.

The implementation follows these OAuth 2.0 standards and specifications:
- OAuth 2.0 Authorization Code Grant (RFC 6749)
- Proof Key for Code Exchange (PKCE) (RFC 7636)
- OAuth 2.0 Demonstrating Proof of Possession (DPoP) (RFC 9449)
- OAuth 2.0 Pushed Authorization Requests (PAR) (RFC 9126)

The flow is implemented in two stages:
1. Authorization (`authorize`): Resolve the user's identity, discover their authorization
   server, push the authorization request and return the URL to redirect the user to. The
   PKCE verifier and DPoP key are kept in the state store under the OAuth `state` value.
2. Callback (`callback`): Consume the stored state, verify the issuer, exchange the code for
   tokens and check that the token subject is the DID the login was started for. The session
   is kept in the session store under the DID.

Both stores are TTL stores, so a login that is never completed leaves nothing behind once the
state TTL has passed.
"""

import base64
import hashlib
import logging
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import parse_qsl, quote, urlencode, urlparse, urlunparse

from aiohttp import ClientError, ClientSession
from jwcrypto import jwk
from pydantic import BaseModel, Field, ValidationError
from ulid import ULID

from social.graze.handles.app.metrics import MetricsClient, NoOpMetricsClient
from social.graze.handles.atproto.chain import (
    ChainMiddlewareClient,
    GenerateDpopMiddleware,
    StatsdMiddleware,
)
from social.graze.handles.atproto.pds import (
    oauth_authorization_server,
    oauth_protected_resource,
)
from social.graze.handles.errors import OAuthAuthorizationError, OAuthCallbackError
from social.graze.handles.resolve.identity import IdentityResolver
from social.graze.handles.store.ttl import TTLStore

logger = logging.getLogger(__name__)

CLIENT_NAME = "atproto-handle shredder"
OAUTH_SCOPE = "atproto"


class OAuthState(BaseModel):
    """Everything the callback needs to finish a login, stored under the `state` value."""

    did: str
    handle: str
    pds: str
    issuer: str
    token_endpoint: str
    pkce_verifier: str
    dpop_jwk: Dict[str, Any]
    dpop_nonce: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class OAuthSession(BaseModel):
    """A completed login, stored under the DID."""

    did: str
    handle: str
    issuer: str
    scope: str
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    dpop_jwk: Dict[str, Any]
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def redirect_uri_for(base_url: str) -> str:
    return f"{base_url}/shredder/callback"


def client_id_for(base_url: str, loopback: bool) -> str:
    """
    Return the OAuth client id.

    A publicly reachable service identifies itself by the URL of its client metadata document.
    Without a public URL the loopback form is used, which authorization servers accept for
    local development without fetching any metadata.
    """
    if loopback:
        return (
            f"http://localhost?redirect_uri={quote(redirect_uri_for(base_url), safe='')}"
            f"&scope={quote(OAUTH_SCOPE, safe='')}"
        )
    return f"{base_url}/client-metadata.json"


def client_metadata(base_url: str, loopback: bool) -> Dict[str, Any]:
    """The OAuth client metadata document served at `/client-metadata.json`."""
    return {
        "client_name": CLIENT_NAME,
        "client_id": client_id_for(base_url, loopback),
        "client_uri": base_url,
        "redirect_uris": [redirect_uri_for(base_url)],
        "grant_types": ["authorization_code"],
        "scope": OAUTH_SCOPE,
        "response_types": ["code"],
        "application_type": "web",
        "token_endpoint_auth_method": "none",
        "dpop_bound_access_tokens": True,
    }


def generate_pkce_verifier() -> Tuple[str, str]:
    """
    Generate a PKCE verifier and its S256 challenge.

    Returns:
        Tuple[str, str]: (pkce_verifier, pkce_challenge)
    """
    pkce_token = secrets.token_urlsafe(80)

    hashed = hashlib.sha256(pkce_token.encode("ascii")).digest()
    encoded = base64.urlsafe_b64encode(hashed)
    pkce_challenge = encoded.decode("ascii").rstrip("=")
    return (pkce_token, pkce_challenge)


class ATProtoOAuthClient:
    """
    OAuth client bound to the application's state and session stores.

    Args:
        http_session: Shared aiohttp session; its timeout applies to every request made here
        resolver: Resolves the handle a login is started with
        state_store: TTL store for in-flight logins
        session_store: TTL store for completed logins
        base_url: Externally reachable base URL of this service
        loopback: Use the loopback client id instead of the metadata document URL
        metrics_client: Metrics for outbound requests and completed logins
    """

    def __init__(
        self,
        http_session: ClientSession,
        resolver: IdentityResolver,
        state_store: TTLStore,
        session_store: TTLStore,
        base_url: str,
        loopback: bool = False,
        metrics_client: Optional[MetricsClient] = None,
    ) -> None:
        self._http_session = http_session
        self._resolver = resolver
        self.state_store = state_store
        self.session_store = session_store
        self.client_id = client_id_for(base_url, loopback)
        self.redirect_uri = redirect_uri_for(base_url)
        self._metrics_client = metrics_client or NoOpMetricsClient()

    def _chain_client(self, dpop_middleware: GenerateDpopMiddleware) -> ChainMiddlewareClient:
        return ChainMiddlewareClient(
            client_session=self._http_session,
            middleware=[StatsdMiddleware(self._metrics_client), dpop_middleware],
        )

    async def _discover(self, pds: str) -> Dict[str, Any]:
        try:
            protected_resource = await oauth_protected_resource(self._http_session, pds)
            if protected_resource is None:
                raise OAuthAuthorizationError.discovery_failed(
                    f"no protected resource metadata at {pds}"
                )

            first_authorization_server = next(
                iter(protected_resource.get("authorization_servers", [])), None
            )
            if first_authorization_server is None:
                raise OAuthAuthorizationError.discovery_failed(
                    f"no authorization server listed by {pds}"
                )

            authorization_server = await oauth_authorization_server(
                self._http_session, first_authorization_server
            )
        except (ClientError, ValueError) as e:
            raise OAuthAuthorizationError.discovery_failed(str(e)) from e

        if authorization_server is None:
            raise OAuthAuthorizationError.discovery_failed(
                f"no authorization server metadata at {first_authorization_server}"
            )

        for key in (
            "issuer",
            "authorization_endpoint",
            "pushed_authorization_request_endpoint",
            "token_endpoint",
        ):
            if not authorization_server.get(key, None):
                raise OAuthAuthorizationError.discovery_failed(f"no {key} found")

        return authorization_server

    async def authorize(self, handle: str, scope: str = OAUTH_SCOPE) -> str:
        """
        Start a login and return the authorization server URL to redirect the user to.

        Raises:
            MissingInputError: If handle is empty
            ResolutionError: If the handle does not resolve to a DID with a PDS
            OAuthAuthorizationError: If discovery or the pushed authorization request fails
        """
        resolved = await self._resolver.resolve_subject(handle)
        authorization_server = await self._discover(resolved.pds)

        issuer = authorization_server["issuer"]
        par_url = authorization_server["pushed_authorization_request_endpoint"]

        state = secrets.token_urlsafe(32)
        (pkce_verifier, code_challenge) = generate_pkce_verifier()

        dpop_key = jwk.JWK.generate(kty="EC", crv="P-256", kid=str(ULID()), alg="ES256")
        dpop_middleware = GenerateDpopMiddleware(dpop_key)

        data = {
            "response_type": "code",
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "state": state,
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": scope,
            "login_hint": resolved.handle,
        }

        try:
            async with self._chain_client(dpop_middleware).post(par_url, data=data) as (
                client_response,
                chain_response,
            ):
                if client_response.status != 201:
                    raise OAuthAuthorizationError.par_failed(
                        f"status {client_response.status}"
                    )
                par_resp = chain_response.body
        except ClientError as e:
            raise OAuthAuthorizationError.par_failed(str(e)) from e

        if not isinstance(par_resp, dict) or not par_resp.get("request_uri", None):
            raise OAuthAuthorizationError.par_failed("no request_uri in response")

        oauth_state = OAuthState(
            did=resolved.did,
            handle=resolved.handle,
            pds=resolved.pds,
            issuer=issuer,
            token_endpoint=authorization_server["token_endpoint"],
            pkce_verifier=pkce_verifier,
            dpop_jwk=dpop_key.export(private_key=True, as_dict=True),
            dpop_nonce=dpop_middleware.nonce,
        )
        await self.state_store.set(state, oauth_state.model_dump_json())

        logger.info("Started login for %s (%s) at %s", resolved.handle, resolved.did, issuer)
        self._metrics_client.increment("handles.oauth.authorize", 1)

        parsed_authorization_endpoint = urlparse(authorization_server["authorization_endpoint"])
        query = dict(parse_qsl(parsed_authorization_endpoint.query))
        query.update({"client_id": self.client_id, "request_uri": par_resp["request_uri"]})
        parsed_authorization_endpoint = parsed_authorization_endpoint._replace(
            query=urlencode(query)
        )
        return str(urlunparse(parsed_authorization_endpoint))

    async def _consume_state(self, state: str) -> OAuthState:
        raw_state = await self.state_store.pop(state)
        if raw_state is None:
            raise OAuthCallbackError.unknown_state()
        try:
            return OAuthState.model_validate_json(raw_state)
        except ValidationError as e:
            logger.warning("Discarding unreadable OAuth state: %s", e)
            raise OAuthCallbackError.unknown_state() from e

    async def callback(self, params: Mapping[str, str]) -> OAuthSession:
        """
        Finish a login from the authorization server's redirect parameters.

        Each state value is accepted once. Unknown, expired and already used state values are
        all rejected the same way.

        Raises:
            OAuthCallbackError: If the callback is invalid or the code exchange fails
        """
        error = params.get("error", None)
        if error:
            state = params.get("state", None)
            if state:
                await self.state_store.delete(state)
            raise OAuthCallbackError.authorization_denied(
                params.get("error_description", None) or error
            )

        state = params.get("state", None)
        issuer = params.get("iss", None)
        code = params.get("code", None)
        if not state or not issuer or not code:
            raise OAuthCallbackError.invalid_request()

        oauth_state = await self._consume_state(state)

        if oauth_state.issuer != issuer:
            raise OAuthCallbackError.issuer_mismatch()

        dpop_key = jwk.JWK(**oauth_state.dpop_jwk)
        dpop_middleware = GenerateDpopMiddleware(dpop_key, nonce=oauth_state.dpop_nonce)

        data = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
            "code": code,
            "code_verifier": oauth_state.pkce_verifier,
        }

        try:
            async with self._chain_client(dpop_middleware).post(
                oauth_state.token_endpoint, data=data
            ) as (
                client_response,
                chain_response,
            ):
                if client_response.status != 200:
                    raise OAuthCallbackError.exchange_failed(
                        f"status {client_response.status}"
                    )
                token_response = chain_response.body
        except ClientError as e:
            raise OAuthCallbackError.exchange_failed(str(e)) from e

        if not isinstance(token_response, dict):
            raise OAuthCallbackError.exchange_failed("invalid token response")

        access_token = token_response.get("access_token", None)
        if not access_token:
            raise OAuthCallbackError.exchange_failed("no access token")

        if token_response.get("sub", None) != oauth_state.did:
            raise OAuthCallbackError.subject_mismatch()

        oauth_session = OAuthSession(
            did=oauth_state.did,
            handle=oauth_state.handle,
            issuer=oauth_state.issuer,
            scope=token_response.get("scope", OAUTH_SCOPE),
            access_token=access_token,
            refresh_token=token_response.get("refresh_token", None),
            expires_in=token_response.get("expires_in", None),
            dpop_jwk=oauth_state.dpop_jwk,
        )
        await self.session_store.set(oauth_session.did, oauth_session.model_dump_json())

        logger.info("Completed login for %s (%s)", oauth_session.handle, oauth_session.did)
        self._metrics_client.increment("handles.oauth.callback", 1)
        return oauth_session
