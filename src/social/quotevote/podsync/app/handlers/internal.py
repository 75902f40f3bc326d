import logging
from aiohttp import web

from social.quotevote.podsync.app.handlers.helpers import ConnectionServiceAppKey

logger = logging.getLogger(__name__)


async def handle_internal_alive(request: web.Request):
    return web.Response(text="Ok")


async def handle_internal_ready(request: web.Request):
    """Ready once the token encryption key is usable."""
    service = request.app[ConnectionServiceAppKey]

    if service.validate_key():
        return web.Response(text="Ok")

    logger.warning("Not ready: SOLID_TOKEN_ENCRYPTION_KEY is missing or malformed")
    return web.Response(text="Not Ready", status=503)
