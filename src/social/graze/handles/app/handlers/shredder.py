"""
Shredder Handlers

The shredder lets an identity holder release the domains bound to their DID by logging in with
their AT Protocol account.

- GET /shredder - Login form
- POST /shredder - Submit the form and redirect to the authorization server
- GET /shredder/callback - OAuth callback from the authorization server
- GET /shredder/done - Confirmation page
- GET /client-metadata.json - OAuth client metadata
"""

import logging
from typing import Optional

import aiohttp_jinja2
from aiohttp import web

from social.graze.handles.app.config import SettingsAppKey, ShredderFlowAppKey
from social.graze.handles.app.handlers.helpers import error_status
from social.graze.handles.atproto.oauth import client_metadata
from social.graze.handles.errors import (
    MissingInputError,
    OAuthAuthorizationError,
    OAuthCallbackError,
    ResolutionError,
)

logger = logging.getLogger(__name__)


async def handle_shredder(request: web.Request):
    return await aiohttp_jinja2.render_template_async(
        "shredder.html", request, context={}
    )


async def handle_shredder_submit(request: web.Request):
    data = await request.post()
    handle: Optional[str] = data.get("handle", None)  # type: ignore

    try:
        redirect_destination = await request.app[ShredderFlowAppKey].begin_login(
            handle or ""
        )
    except (MissingInputError, ResolutionError, OAuthAuthorizationError) as e:
        logger.info("Shredder login for %s failed: %s", handle, e)
        return await aiohttp_jinja2.render_template_async(
            "shredder.html",
            request,
            context={"error_message": str(e), "handle": handle or ""},
            status=error_status(e),
        )

    raise web.HTTPFound(redirect_destination)


async def handle_shredder_callback(request: web.Request):
    """
    Finish the login, release the user's domains and redirect to the confirmation page.

    Query Parameters:
        state: OAuth state parameter
        iss: Issuer identifier (authorization server)
        code: Authorization code to exchange for tokens
    """
    try:
        target = await request.app[ShredderFlowAppKey].complete_login(request.query)
    except OAuthCallbackError as e:
        return await aiohttp_jinja2.render_template_async(
            "alert.html",
            request,
            context={"error_message": str(e)},
            status=error_status(e),
        )
    raise web.HTTPFound(target)


async def handle_shredder_done(request: web.Request):
    return await aiohttp_jinja2.render_template_async(
        "shredder_done.html", request, context={}
    )


async def handle_client_metadata(request: web.Request):
    settings = request.app[SettingsAppKey]
    return web.json_response(
        client_metadata(settings.base_url, loopback=settings.public_url is None)
    )
