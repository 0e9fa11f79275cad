import asyncio
import contextlib
import logging
import os
from time import time
from typing import List, Optional

import aiohttp
import aiohttp_jinja2
import jinja2
import redis.asyncio as redis
import sentry_sdk
from aiohttp import web
from sentry_sdk.integrations.aiohttp import AioHttpIntegration
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from social.graze.handles.app.config import (
    ClaimRegistryAppKey,
    MetricsClientAppKey,
    RedisClientAppKey,
    SessionAppKey,
    SessionStoreAppKey,
    Settings,
    SettingsAppKey,
    ShredderFlowAppKey,
    StateStoreAppKey,
    SweepTasksAppKey,
)
from social.graze.handles.app.handlers.claims import (
    handle_add,
    handle_atproto_did,
    handle_claim,
    handle_index,
    handle_reload,
    handle_remove,
)
from social.graze.handles.app.handlers.helpers import error_response
from social.graze.handles.app.handlers.internal import (
    handle_internal_alive,
    handle_internal_ready,
)
from social.graze.handles.app.handlers.shredder import (
    handle_client_metadata,
    handle_shredder,
    handle_shredder_callback,
    handle_shredder_done,
    handle_shredder_submit,
)
from social.graze.handles.app.metrics import create_metrics_client
from social.graze.handles.atproto.oauth import ATProtoOAuthClient
from social.graze.handles.claims.matcher import DomainAuthorizationMatcher
from social.graze.handles.claims.persistence import (
    BindingStore,
    DatabaseBindingStore,
    JsonFileBindingStore,
)
from social.graze.handles.claims.registry import ClaimRegistry
from social.graze.handles.errors import HandleServiceException, PersistenceError
from social.graze.handles.resolve.identity import IdentityResolver
from social.graze.handles.shredder.flow import ShredderFlow
from social.graze.handles.store.ttl import (
    MemoryTTLStore,
    RedisTTLStore,
    TTLStore,
    ttl_sweep_task,
)

logger = logging.getLogger(__name__)


def create_binding_store(settings: Settings) -> BindingStore:
    if settings.storage_backend == "database":
        engine = create_async_engine(str(settings.pg_dsn))
        database_session_maker = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )
        return DatabaseBindingStore(database_session_maker, engine=engine)
    return JsonFileBindingStore(settings.db_path)


def create_trace_config(settings: Settings) -> aiohttp.TraceConfig:
    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logging.info("Starting request: %s %s", params.method, params.url)

        async def on_request_end(
            session, trace_config_ctx, params: aiohttp.TraceRequestEndParams
        ):
            logging.info(
                "Ending request: %s %s %s",
                params.method,
                params.url,
                params.response.status,
            )

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    return trace_config


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    metrics_client = create_metrics_client(
        settings.metrics_backend,
        host=settings.statsd_host,
        port=settings.statsd_port,
        debug=settings.debug,
    )
    await metrics_client.connect()
    app[MetricsClientAppKey] = metrics_client

    http_session = aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=settings.http_timeout),
        trace_configs=[create_trace_config(settings)],
    )
    app[SessionAppKey] = http_session

    redis_client: Optional[redis.Redis] = None
    state_store: TTLStore
    session_store: TTLStore
    if settings.ttl_store_backend == "redis":
        redis_client = redis.Redis(
            connection_pool=redis.ConnectionPool.from_url(str(settings.redis_dsn))
        )
        app[RedisClientAppKey] = redis_client
        state_store = RedisTTLStore("oauth_state", settings.state_ttl, redis_client)
        session_store = RedisTTLStore("oauth_session", settings.session_ttl, redis_client)
    else:
        state_store = MemoryTTLStore("oauth_state", settings.state_ttl)
        session_store = MemoryTTLStore("oauth_session", settings.session_ttl)
    app[StateStoreAppKey] = state_store
    app[SessionStoreAppKey] = session_store

    resolver = IdentityResolver(http_session, settings.plc_hostname)

    binding_store = create_binding_store(settings)
    registry = ClaimRegistry(
        binding_store,
        resolver,
        DomainAuthorizationMatcher(settings.public_domains),
        metrics_client,
    )
    app[ClaimRegistryAppKey] = registry

    try:
        count = await registry.reload()
        logger.info("Loaded %d bindings", count)
    except PersistenceError as e:
        # Not ready, and writes are refused, until an operator fixes storage and reloads.
        sentry_sdk.capture_exception(e)
        logger.exception("Unable to load bindings")

    oauth_client = ATProtoOAuthClient(
        http_session,
        resolver,
        state_store,
        session_store,
        base_url=settings.base_url,
        loopback=settings.public_url is None,
        metrics_client=metrics_client,
    )
    app[ShredderFlowAppKey] = ShredderFlow(oauth_client, registry, metrics_client)

    sweep_tasks: List[asyncio.Task[None]] = [
        asyncio.create_task(ttl_sweep_task(store, metrics_client))
        for store in (state_store, session_store)
        if isinstance(store, MemoryTTLStore)
    ]
    app[SweepTasksAppKey] = sweep_tasks

    logger.info("Startup complete")

    yield

    logger.info("Shutting down background tasks")

    for task in sweep_tasks:
        task.cancel()

    for task in sweep_tasks:
        with contextlib.suppress(asyncio.exceptions.CancelledError):
            await task

    await binding_store.close()
    await http_session.close()
    if redis_client is not None:
        await redis_client.aclose()
    await metrics_client.close()


@web.middleware
async def service_error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except HandleServiceException as e:
        logger.info("%s %s failed: %s", request.method, request.path, e)
        return error_response(e)
    except asyncio.TimeoutError:
        logger.warning("%s %s timed out upstream", request.method, request.path)
        return web.Response(status=504, text="Upstream request timed out")


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        sentry_sdk.capture_exception(e)
        raise e


@web.middleware
async def statsd_middleware(request: web.Request, handler):
    metrics_client = request.app[MetricsClientAppKey]
    request_method: str = request.method
    request_path = request.path

    start_time: float = time()
    response_status_code = 0

    try:
        response = await handler(request)
        response_status_code = response.status
        return response
    except web.HTTPException as e:
        response_status_code = e.status
        raise e
    except Exception as e:
        metrics_client.increment(
            "handles.server.request.exception",
            1,
            tag_dict={
                "exception": type(e).__name__,
                "path": request_path,
                "method": request_method,
            },
        )
        raise e
    finally:
        metrics_client.timer(
            "handles.server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        metrics_client.increment(
            "handles.server.request.count",
            1,
            tag_dict={
                "path": request_path,
                "method": request_method,
                "status": response_status_code,
            },
        )


async def start_web_server(settings: Optional[Settings] = None):

    if settings is None:
        settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=True,
            integrations=[AioHttpIntegration()],
        )
    app = web.Application(
        middlewares=[statsd_middleware, sentry_middleware, service_error_middleware]
    )

    app[SettingsAppKey] = settings

    app.add_routes(
        [
            web.get("/", handle_index),
            web.get("/.well-known/atproto-did", handle_atproto_did),
            web.get("/reload", handle_reload),
            web.post("/add", handle_add),
            web.post("/remove", handle_remove),
            web.post("/claim", handle_claim),
        ]
    )

    app.add_routes(
        [
            web.get("/shredder", handle_shredder),
            web.post("/shredder", handle_shredder_submit),
            web.get("/shredder/callback", handle_shredder_callback),
            web.get("/shredder/done", handle_shredder_done),
            web.get("/client-metadata.json", handle_client_metadata),
        ]
    )

    app.add_routes(
        [
            web.get("/internal/alive", handle_internal_alive),
            web.get("/internal/ready", handle_internal_ready),
        ]
    )

    _ = aiohttp_jinja2.setup(
        app,
        enable_async=True,
        loader=jinja2.FileSystemLoader(os.path.join(os.getcwd(), "templates")),
    )

    app.cleanup_ctx.append(background_tasks)

    return app
