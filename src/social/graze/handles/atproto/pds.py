from typing import Any, Dict, Optional

from aiohttp import ClientSession


async def _get_json(session: ClientSession, url: str) -> Optional[Dict[str, Any]]:
    async with session.get(url) as resp:
        if resp.status != 200:
            return None
        body = await resp.json(content_type=None)
    if not isinstance(body, dict):
        return None
    return body


async def oauth_protected_resource(
    session: ClientSession, pds: str
) -> Optional[Dict[str, Any]]:
    return await _get_json(
        session, f"{pds.rstrip('/')}/.well-known/oauth-protected-resource"
    )


async def oauth_authorization_server(
    session: ClientSession, authorization_server: str
) -> Optional[Dict[str, Any]]:
    return await _get_json(
        session,
        f"{authorization_server.rstrip('/')}/.well-known/oauth-authorization-server",
    )
