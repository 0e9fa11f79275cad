import hmac
import json
import logging
from typing import Any, Dict, List, Optional, Tuple, Type

from aiohttp import web

from social.graze.handles.app.config import SettingsAppKey
from social.graze.handles.errors import (
    AlreadyClaimedError,
    HandleServiceException,
    IdentityAlreadyBoundError,
    MissingInputError,
    OAuthAuthorizationError,
    OAuthCallbackError,
    PersistenceError,
    ResolutionError,
    UnauthorizedError,
)

logger = logging.getLogger(__name__)

ERROR_STATUS: List[Tuple[Type[HandleServiceException], int]] = [
    (UnauthorizedError, 401),
    (AlreadyClaimedError, 409),
    (IdentityAlreadyBoundError, 409),
    (ResolutionError, 400),
    (MissingInputError, 400),
    (OAuthCallbackError, 400),
    (OAuthAuthorizationError, 502),
    (PersistenceError, 500),
]


def error_status(e: HandleServiceException) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(e, error_type):
            return status
    return 500


def error_response(e: HandleServiceException) -> web.Response:
    return web.Response(status=error_status(e), text=str(e))


def is_admin(request: web.Request) -> bool:
    """
    Check for the admin credential, `Authorization: Bearer <API_KEY>`.
    """
    authorization: Optional[str] = request.headers.getone("Authorization", None)
    if authorization is None or not authorization.startswith("Bearer "):
        return False

    api_key = request.app[SettingsAppKey].api_key
    return hmac.compare_digest(
        authorization[7:].encode("utf-8"), api_key.encode("utf-8")
    )


def require_admin(request: web.Request) -> None:
    if not is_admin(request):
        logger.info("Rejected unauthenticated %s %s", request.method, request.path)
        raise UnauthorizedError.missing_credential()


async def read_json_object(request: web.Request) -> Dict[str, Any]:
    try:
        payload = await request.json()
    except json.JSONDecodeError:
        raise web.HTTPBadRequest(text="Invalid JSON body")
    if not isinstance(payload, dict):
        raise web.HTTPBadRequest(text="Expected a JSON object")
    return payload


def string_field(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key, None)
    if not isinstance(value, str):
        return ""
    return value.strip()
