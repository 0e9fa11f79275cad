"""
Domain Claim Handlers

These handlers serve claimed domains and manage their bindings.

- GET /.well-known/atproto-did - The DID bound to the requested host
- GET / - Redirect the requested host to its profile
- GET /reload - Re-read bindings from storage (admin)
- POST /add - Bind a domain to a DID (admin)
- POST /remove - Release a domain (admin)
- POST /claim - Self-service claim of an allow-listed domain

Every claimed domain points its DNS at this service, so the domain is taken from the request's
Host header. Admin requests carry `Authorization: Bearer <API_KEY>`.
"""

import logging

import sentry_sdk
from aiohttp import web

from social.graze.handles.app.config import ClaimRegistryAppKey, SettingsAppKey
from social.graze.handles.app.handlers.helpers import (
    is_admin,
    read_json_object,
    require_admin,
    string_field,
)
from social.graze.handles.claims.matcher import normalize_domain
from social.graze.handles.errors import MissingInputError, PersistenceError

logger = logging.getLogger(__name__)


def _not_found(domain: str) -> web.Response:
    logger.info("Tried to look up @%s but it is not claimed", domain)
    return web.Response(status=404, text=f'User "{domain}" not found!')


async def handle_atproto_did(request: web.Request):
    domain = normalize_domain(request.host)
    did = request.app[ClaimRegistryAppKey].get_by_domain(domain)
    if did is None:
        return _not_found(domain)
    return web.Response(text=did, content_type="text/plain")


async def handle_index(request: web.Request):
    domain = normalize_domain(request.host)
    did = request.app[ClaimRegistryAppKey].get_by_domain(domain)
    if did is None:
        return _not_found(domain)

    logger.debug("Got user @%s with did %s", domain, did)
    raise web.HTTPFound(request.app[SettingsAppKey].profile_url.replace("{did}", did))


async def handle_reload(request: web.Request):
    require_admin(request)

    try:
        count = await request.app[ClaimRegistryAppKey].reload()
    except PersistenceError as e:
        sentry_sdk.capture_exception(e)
        logger.exception("Failed to reload db")
        return web.Response(status=500, text=f"Failed to reload db: {e}")

    logger.info("Reloaded db with %d bindings", count)
    return web.Response(text="Reloaded db")


async def handle_add(request: web.Request):
    """
    Bind a domain to a DID without the public claim restrictions.

    Request Body:
        domain: The domain to bind
        did: A DID (or handle) for the domain to resolve to
    """
    require_admin(request)

    payload = await read_json_object(request)
    domain = string_field(payload, "domain")
    did = string_field(payload, "did")
    if len(domain) == 0 or len(did) == 0:
        raise MissingInputError.domain_or_did()

    await request.app[ClaimRegistryAppKey].claim(domain, did, privileged=True)
    return web.Response(text="Added did")


async def handle_remove(request: web.Request):
    require_admin(request)

    payload = await read_json_object(request)
    domain = string_field(payload, "domain")

    removed = await request.app[ClaimRegistryAppKey].release(domain)
    if not removed:
        return web.Response(text="Nothing to remove")
    return web.Response(text="Removed domain")


async def handle_claim(request: web.Request):
    """
    Claim a domain for the identity behind a handle or DID.

    Anyone may claim a domain matching the public allow-list, once per identity. With the admin
    credential any domain may be claimed and an identity may hold several domains.

    Request Body:
        domain: The domain to claim
        handle: The handle or DID to bind it to
    """
    payload = await read_json_object(request)
    domain = string_field(payload, "domain")
    handle = string_field(payload, "handle")

    did = await request.app[ClaimRegistryAppKey].claim(
        domain, handle, privileged=is_admin(request)
    )
    return web.json_response({"domain": normalize_domain(domain), "did": did})
