"""
Web Application Assembly

``build_web_app`` creates the aiohttp application with its routes and middleware.
``start_web_server`` adds the shared resources through ``cleanup_ctx`` entries, each of
which opens one resource on startup and releases it on shutdown, in reverse order:

1. database engine and session maker
2. outbound HTTP session (with request tracing in debug mode)
3. redis client for pending authorizations
4. metrics client
5. connection store and ``PodConnectionService``
"""

import logging
from time import time
from typing import Optional

import aiohttp
import redis.asyncio as redis
import sentry_sdk
from aiohttp import web
from sentry_sdk.integrations.aiohttp import AioHttpIntegration
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from social.quotevote.podsync.app.config import (
    ConnectionStoreAppKey,
    DatabaseAppKey,
    DatabaseSessionMakerAppKey,
    MetricsClientAppKey,
    RedisClientAppKey,
    SessionAppKey,
    Settings,
    SettingsAppKey,
)
from social.quotevote.podsync.app.handlers.helpers import ConnectionServiceAppKey
from social.quotevote.podsync.app.handlers.internal import (
    handle_internal_alive,
    handle_internal_ready,
)
from social.quotevote.podsync.app.handlers.solid import (
    handle_solid_activity,
    handle_solid_callback,
    handle_solid_disconnect,
    handle_solid_pull,
    handle_solid_push,
    handle_solid_start,
    handle_solid_status,
)
from social.quotevote.podsync.app.metrics import create_metrics_client
from social.quotevote.podsync.model.connection import DatabaseConnectionStore
from social.quotevote.podsync.oidc.state import AuthorizationStateStore
from social.quotevote.podsync.service import PodConnectionService

logger = logging.getLogger(__name__)


async def database_ctx(app: web.Application):
    settings = app[SettingsAppKey]
    engine = create_async_engine(str(settings.pg_dsn))
    app[DatabaseAppKey] = engine
    app[DatabaseSessionMakerAppKey] = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    yield

    await engine.dispose()


def request_trace_config() -> aiohttp.TraceConfig:
    """Logs outbound requests. Headers are left out since they carry tokens."""
    trace_config = aiohttp.TraceConfig()

    async def on_request_start(session, ctx, params: aiohttp.TraceRequestStartParams):
        logger.info("Outbound request: %s %s", params.method, params.url)

    async def on_request_end(session, ctx, params: aiohttp.TraceRequestEndParams):
        logger.info(
            "Outbound response: %s %s %s",
            params.method,
            params.url,
            params.response.status,
        )

    trace_config.on_request_start.append(on_request_start)
    trace_config.on_request_end.append(on_request_end)
    return trace_config


async def http_session_ctx(app: web.Application):
    trace_configs = [request_trace_config()] if app[SettingsAppKey].debug else []
    app[SessionAppKey] = aiohttp.ClientSession(trace_configs=trace_configs)

    yield

    await app[SessionAppKey].close()


async def redis_ctx(app: web.Application):
    app[RedisClientAppKey] = redis.Redis(
        connection_pool=redis.ConnectionPool.from_url(str(app[SettingsAppKey].redis_dsn))
    )

    yield

    await app[RedisClientAppKey].aclose()


async def metrics_ctx(app: web.Application):
    settings = app[SettingsAppKey]
    metrics_client = create_metrics_client(
        settings.metrics_backend,
        host=settings.statsd_host,
        port=settings.statsd_port,
        prefix=settings.statsd_prefix,
        debug=settings.debug,
    )
    await metrics_client.connect()
    app[MetricsClientAppKey] = metrics_client

    yield

    await metrics_client.close()


async def connection_service_ctx(app: web.Application):
    settings = app[SettingsAppKey]
    app[ConnectionStoreAppKey] = DatabaseConnectionStore(app[DatabaseSessionMakerAppKey])

    service = PodConnectionService(
        settings=settings,
        http_session=app[SessionAppKey],
        store=app[ConnectionStoreAppKey],
        state_store=AuthorizationStateStore(
            app[RedisClientAppKey], ttl=settings.solid_state_ttl
        ),
        metrics_client=app[MetricsClientAppKey],
    )
    app[ConnectionServiceAppKey] = service

    if not service.validate_key():
        logger.warning(
            "SOLID_TOKEN_ENCRYPTION_KEY is missing or malformed, "
            "connections cannot be created or used until it is set"
        )
    logger.info("Startup complete")

    yield

    logger.info("Shutting down")


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        sentry_sdk.capture_exception(e)
        raise


@web.middleware
async def statsd_middleware(request: web.Request, handler):
    metrics_client = request.app[MetricsClientAppKey]
    resource = request.match_info.route.resource
    tags = {
        "path": resource.canonical if resource is not None else request.path,
        "method": request.method,
    }

    start_time = time()
    status = 0
    try:
        response = await handler(request)
        status = response.status
        return response
    except web.HTTPException as e:
        status = e.status
        raise
    except Exception as e:
        metrics_client.increment(
            "server.request.exception",
            1,
            tag_dict={**tags, "exception": type(e).__name__},
        )
        raise
    finally:
        metrics_client.timer("server.request.time", time() - start_time, tag_dict=tags)
        metrics_client.increment(
            "server.request.count", 1, tag_dict={**tags, "status": status}
        )


def build_web_app(settings: Settings) -> web.Application:
    """Application with routes and middleware, without shared resources."""
    app = web.Application(middlewares=[statsd_middleware, sentry_middleware])
    app[SettingsAppKey] = settings

    app.add_routes(
        [
            web.post("/auth/solid/start", handle_solid_start),
            web.get("/auth/solid/callback", handle_solid_callback),
            web.get("/internal/alive", handle_internal_alive),
            web.get("/internal/ready", handle_internal_ready),
            web.get("/internal/api/solid/status", handle_solid_status),
            web.delete("/internal/api/solid/connection", handle_solid_disconnect),
            web.get("/internal/api/solid/portable", handle_solid_pull),
            web.put("/internal/api/solid/portable", handle_solid_push),
            web.post("/internal/api/solid/activity", handle_solid_activity),
        ]
    )
    return app


async def start_web_server(settings: Optional[Settings] = None) -> web.Application:
    if settings is None:
        settings = Settings()  # type: ignore

    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=False,
            integrations=[AioHttpIntegration()],
        )

    logger.info("Starting up")
    app = build_web_app(settings)
    app.cleanup_ctx.extend(
        [database_ctx, http_session_ctx, redis_ctx, metrics_ctx, connection_service_ctx]
    )
    return app
