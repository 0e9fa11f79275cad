"""Middleware chain for outbound OAuth requests.

Requests made through `ChainMiddlewareClient` pass through an ordered list of middleware before
reaching aiohttp. A middleware may modify the request, observe the response, or hand back a new
request to send; the client re-sends until no middleware asks for another attempt.

The OAuth client uses two middlewares: `StatsdMiddleware` for request metrics and
`GenerateDpopMiddleware`, which signs a DPoP proof for every attempt and retries once the server
supplies a `DPoP-Nonce`.
"""

import logging
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import TracebackType
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generator,
    Optional,
    Sequence,
    Tuple,
)

from aiohttp import ClientResponse, ClientSession, hdrs
from aiohttp.typedefs import StrOrURL
from jwcrypto import jwk, jwt
from multidict import CIMultiDictProxy
from yarl import URL

from social.graze.handles.app.metrics import MetricsClient

logger = logging.getLogger(__name__)

RequestFunc = Callable[..., Awaitable[ClientResponse]]


@dataclass
class ChainRequest:
    method: str
    url: StrOrURL
    headers: Dict[str, Any] = field(default_factory=dict)
    kwargs: Dict[str, Any] = field(default_factory=dict)

    def copy(self) -> "ChainRequest":
        return ChainRequest(
            method=self.method,
            url=self.url,
            headers=dict(self.headers),
            kwargs=dict(self.kwargs),
        )


@dataclass
class ChainResponse:
    status: int
    headers: CIMultiDictProxy[str]
    body: str | bytes | Dict[str, Any] | None = None

    @staticmethod
    async def from_aiohttp_response(response: ClientResponse) -> "ChainResponse":
        content_type = response.headers.get(hdrs.CONTENT_TYPE, "")

        if content_type.startswith("application/json"):
            body: Any = await response.json()
        elif content_type.startswith("text/"):
            body = await response.text()
        else:
            body = await response.read()
        return ChainResponse(status=response.status, headers=response.headers, body=body)

    def body_matches_kv(self, key: str, value: Any) -> bool:
        return isinstance(self.body, dict) and self.body.get(key, None) == value


ChainResult = Tuple[ClientResponse, ChainResponse, Optional[ChainRequest]]
"""The response, and the request to send next if a middleware asked for another attempt."""

NextChainCallbackType = Callable[[ChainRequest], Awaitable[ChainResult]]


class RequestMiddlewareBase(ABC):
    @abstractmethod
    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> ChainResult:
        pass

    def handle_gen(self, next: NextChainCallbackType) -> NextChainCallbackType:
        async def next_invoke(request: ChainRequest) -> ChainResult:
            return await self.handle(next, request)

        return next_invoke


class StatsdMiddleware(RequestMiddlewareBase):
    """Counts and times every attempt, tagged by method, host and status."""

    def __init__(self, metrics_client: MetricsClient) -> None:
        self._metrics_client = metrics_client

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> ChainResult:
        start_time = time.perf_counter()
        tags = {"method": request.method, "host": URL(str(request.url)).host or ""}
        try:
            result = await next(request)
        except Exception:
            self._metrics_client.increment(
                "handles.client.request.exception", 1, tag_dict=tags
            )
            raise
        finally:
            self._metrics_client.timer(
                "handles.client.request.time", time.perf_counter() - start_time, tag_dict=tags
            )

        self._metrics_client.increment(
            "handles.client.request.count",
            1,
            tag_dict={**tags, "status": str(result[1].status)},
        )
        return result


class GenerateDpopMiddleware(RequestMiddlewareBase):
    """
    Attaches a DPoP proof signed with `dpop_key` to each attempt.

    The proof binds the HTTP method and URL of the attempt. When the server rejects a proof
    with `use_dpop_nonce` (or `invalid_dpop_proof`) and returns a `DPoP-Nonce` header, the nonce
    is remembered and the request is handed back for another attempt.
    """

    def __init__(self, dpop_key: jwk.JWK, nonce: Optional[str] = None) -> None:
        self._dpop_key = dpop_key
        self._header = {
            "alg": "ES256",
            "jwk": dpop_key.export_public(as_dict=True),
            "typ": "dpop+jwt",
        }
        self.nonce = nonce

    def proof(self, method: str, url: str) -> str:
        now = int(time.time())
        claims: Dict[str, Any] = {
            "jti": secrets.token_urlsafe(32),
            "htm": method.upper(),
            "htu": url,
            "iat": now,
            "exp": now + 30,
        }
        if self.nonce:
            claims["nonce"] = self.nonce

        token = jwt.JWT(header=self._header, claims=claims)
        token.make_signed_token(self._dpop_key)
        return token.serialize()

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> ChainResult:
        request.headers["DPoP"] = self.proof(request.method, str(request.url))

        client_response, chain_response, new_request = await next(request)

        if chain_response.status in (400, 401):
            nonce = chain_response.headers.get("DPoP-Nonce", None)
            nonce_requested = chain_response.body_matches_kv(
                "error", "use_dpop_nonce"
            ) or chain_response.body_matches_kv("error", "invalid_dpop_proof")
            if nonce_requested and nonce and nonce != self.nonce:
                logger.debug("Retrying %s %s with new DPoP nonce", request.method, request.url)
                self.nonce = nonce
                if new_request is None:
                    new_request = request.copy()

        return client_response, chain_response, new_request


class EndOfLineChainMiddleware:
    """The last link of the chain: performs the request with aiohttp."""

    def __init__(self, request_func: RequestFunc) -> None:
        self._request_func = request_func

    async def handle(self, request: ChainRequest) -> ChainResult:
        logger.debug("Making request: %s %s", request.method, request.url)

        response: ClientResponse = await self._request_func(
            request.method.lower(),
            request.url,
            headers=request.headers,
            **request.kwargs,
        )
        try:
            chain_response = await ChainResponse.from_aiohttp_response(response)
        finally:
            response.release()
        return response, chain_response, None


class ChainMiddlewareContext:
    def __init__(
        self,
        chain_callback: NextChainCallbackType,
        chain_request: ChainRequest,
        attempt_max: int = 3,
    ) -> None:
        self._chain_callback = chain_callback
        self._chain_request = chain_request
        self._attempt_max = attempt_max
        self.client_response: ClientResponse | None = None

    async def _do_request(self) -> Tuple[ClientResponse, ChainResponse]:
        chain_request: Optional[ChainRequest] = self._chain_request

        for current_attempt in range(1, self._attempt_max + 1):
            logger.debug("Attempt %d out of %d", current_attempt, self._attempt_max)

            assert chain_request is not None
            client_response, chain_response, chain_request = await self._chain_callback(
                chain_request
            )
            self.client_response = client_response

            if chain_request is None:
                return client_response, chain_response

        raise RuntimeError("Max attempts reached")

    def __await__(self) -> Generator[Any, None, Tuple[ClientResponse, ChainResponse]]:
        return self.__aenter__().__await__()

    async def __aenter__(self) -> Tuple[ClientResponse, ChainResponse]:
        return await self._do_request()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self.client_response is not None and not self.client_response.closed:
            self.client_response.close()


class ChainMiddlewareClient:
    """
    A thin aiohttp wrapper that sends requests through a middleware chain.

    The wrapped session is shared and owned by the application; this client never closes it.
    """

    def __init__(
        self,
        client_session: ClientSession,
        middleware: Sequence[RequestMiddlewareBase] | None = None,
        attempt_max: int = 3,
    ) -> None:
        self._client = client_session
        self._middleware = middleware or []
        self._attempt_max = attempt_max

    def request(self, method: str, url: StrOrURL, **kwargs: Any) -> ChainMiddlewareContext:
        chain_request = ChainRequest(
            method=method,
            url=url,
            headers=dict(kwargs.pop("headers", None) or {}),
            kwargs=kwargs,
        )

        chain_callback: NextChainCallbackType = EndOfLineChainMiddleware(
            request_func=self._client.request
        ).handle

        for mw in reversed(self._middleware):
            chain_callback = mw.handle_gen(chain_callback)

        return ChainMiddlewareContext(
            chain_callback=chain_callback,
            chain_request=chain_request,
            attempt_max=self._attempt_max,
        )

    def get(self, url: StrOrURL, **kwargs: Any) -> ChainMiddlewareContext:
        return self.request(hdrs.METH_GET, url, **kwargs)

    def post(self, url: StrOrURL, **kwargs: Any) -> ChainMiddlewareContext:
        return self.request(hdrs.METH_POST, url, **kwargs)
