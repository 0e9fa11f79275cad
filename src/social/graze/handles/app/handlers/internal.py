from aiohttp import web

from social.graze.handles.app.config import ClaimRegistryAppKey


async def handle_internal_ready(request: web.Request):
    if request.app[ClaimRegistryAppKey].loaded:
        return web.Response(status=200)
    return web.Response(status=503)


async def handle_internal_alive(request: web.Request):
    return web.Response(status=200)
