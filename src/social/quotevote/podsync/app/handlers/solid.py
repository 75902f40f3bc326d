"""
Solid Pod Handlers

This module implements the HTTP handlers for connecting and syncing a user's Solid Pod.
Each handler is a thin adapter over ``PodConnectionService``: it reads the user id from
the ``X-User-Id`` header, validates the request, calls the service and translates
failures with ``error_response``.

Connection Flow:
1. The client posts the user's issuer or WebID to ``/auth/solid/start``
2. The user is sent to the returned authorization URL
3. The identity provider redirects back to ``/auth/solid/callback`` with code and state
4. The connection is stored and later calls can sync portable state

The handlers in this module provide the following endpoints:
- POST /auth/solid/start - Begin a connection, returns the authorization URL
- GET /auth/solid/callback - Complete a connection
- GET /internal/api/solid/status - Connection status
- DELETE /internal/api/solid/connection - Disconnect
- GET /internal/api/solid/portable - Pull portable state
- PUT /internal/api/solid/portable - Push partial portable state
- POST /internal/api/solid/activity - Append an activity ledger event
"""

import logging
from aiohttp import web

from social.quotevote.podsync.app.handlers.helpers import (
    ConnectionServiceAppKey,
    RequestValidationException,
    error_response,
    json_body_helper,
    json_error,
    user_id_helper,
)
from social.quotevote.podsync.sync.portable import (
    ActivityEventInput,
    PortableStateInput,
)

logger = logging.getLogger(__name__)


async def handle_solid_start(request: web.Request):
    user_id = user_id_helper(request)
    service = request.app[ConnectionServiceAppKey]

    try:
        body = await json_body_helper(request)
        issuer = body.get("issuer", None)
        if not isinstance(issuer, str) or len(issuer.strip()) == 0:
            raise RequestValidationException.missing("issuer")

        authorization_url = await service.start_connect(user_id, issuer.strip())
        return web.json_response({"authorizationUrl": authorization_url})
    except Exception as e:
        return error_response(request, "handle_solid_start", e)


async def handle_solid_callback(request: web.Request):
    user_id = user_id_helper(request)
    service = request.app[ConnectionServiceAppKey]

    error = request.query.get("error", None)
    if error is not None:
        logger.info(f"Authorization denied for user {user_id}: {error}")
        return json_error(
            400,
            request.query.get("error_description", None) or error,
            code=error,
        )

    try:
        code = request.query.get("code", None)
        if not code:
            raise RequestValidationException.missing("code")

        state = request.query.get("state", None)
        if not state:
            raise RequestValidationException.missing("state")

        result = await service.finish_connect(user_id, code, state)
        return web.json_response({"success": True, **result})
    except Exception as e:
        return error_response(request, "handle_solid_callback", e)


async def handle_solid_status(request: web.Request):
    user_id = user_id_helper(request)
    service = request.app[ConnectionServiceAppKey]

    try:
        return web.json_response(await service.connection_status(user_id))
    except Exception as e:
        return error_response(request, "handle_solid_status", e)


async def handle_solid_disconnect(request: web.Request):
    user_id = user_id_helper(request)
    service = request.app[ConnectionServiceAppKey]

    try:
        disconnected = await service.disconnect(user_id)
        return web.json_response({"success": disconnected})
    except Exception as e:
        return error_response(request, "handle_solid_disconnect", e)


async def handle_solid_pull(request: web.Request):
    user_id = user_id_helper(request)
    service = request.app[ConnectionServiceAppKey]

    try:
        portable_state = await service.pull_portable_state(user_id)
        return web.json_response(portable_state.to_json())
    except Exception as e:
        return error_response(request, "handle_solid_pull", e)


async def handle_solid_push(request: web.Request):
    user_id = user_id_helper(request)
    service = request.app[ConnectionServiceAppKey]

    try:
        body = await json_body_helper(request)
        state_input = PortableStateInput.model_validate(body)
        success = await service.push_portable_state(user_id, state_input)
        return web.json_response({"success": success})
    except Exception as e:
        return error_response(request, "handle_solid_push", e)


async def handle_solid_activity(request: web.Request):
    user_id = user_id_helper(request)
    service = request.app[ConnectionServiceAppKey]

    try:
        body = await json_body_helper(request)
        # A string payload is decoded as JSON by the model.
        event_input = ActivityEventInput.model_validate(body)
        event = await service.append_activity_event(user_id, event_input)
        return web.json_response({"success": True, "event": event.to_json()})
    except Exception as e:
        return error_response(request, "handle_solid_activity", e)
