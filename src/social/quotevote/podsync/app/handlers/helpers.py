import json
import logging
import traceback
from typing import Final, Optional

from aiohttp import web
from pydantic import ValidationError
import sentry_sdk

from social.quotevote.podsync.app.config import MetricsClientAppKey, SettingsAppKey
from social.quotevote.podsync.errors import (
    ActivityLedgerConflict,
    ActivityLedgerDisabled,
    AuthorizationStateError,
    ConnectionNotFound,
    DiscoveryError,
    InvalidIssuer,
    PodRequestError,
    PodResourceError,
    SyncError,
    TokenDecryptionError,
    TokenError,
)
from social.quotevote.podsync.service import PodConnectionService

logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-User-Id"

ConnectionServiceAppKey: Final = web.AppKey("connection_service", PodConnectionService)
"""AppKey for accessing the Pod connection service"""


class RequestValidationException(Exception):
    """The request body or query is missing a value or is malformed."""

    @staticmethod
    def invalid_json() -> "RequestValidationException":
        return RequestValidationException("Request body must be a JSON object")

    @staticmethod
    def missing(name: str) -> "RequestValidationException":
        return RequestValidationException(f"Missing required parameter: {name}")


def json_error(status: int, message: str, **extra) -> web.Response:
    return web.json_response({"error": message, **extra}, status=status)


def user_id_helper(request: web.Request) -> str:
    """
    Return the application user id forwarded by the upstream layer.

    Raises:
        web.HTTPUnauthorized: If the ``X-User-Id`` header is missing or empty
    """
    user_id: Optional[str] = request.headers.getone(USER_ID_HEADER, None)
    if user_id is None or len(user_id.strip()) == 0:
        raise web.HTTPUnauthorized(
            text=json.dumps({"error": "Not Authorized"}),
            content_type="application/json",
        )
    return user_id.strip()


async def json_body_helper(request: web.Request) -> dict:
    try:
        body = await request.json()
    except ValueError as e:
        raise RequestValidationException.invalid_json() from e

    if not isinstance(body, dict):
        raise RequestValidationException.invalid_json()
    return body


def error_response(request: web.Request, operation: str, e: Exception) -> web.Response:
    """
    Translate a failure from the connection service into a JSON error response.

    Client errors map to 400, 403, 404 and 409. Failures of the identity provider or
    the Pod map to 502. Unreadable stored tokens are a data integrity failure: 500 with
    the ``token_decryption_failed`` code. Anything else is logged, reported to Sentry
    and returned as 500 with details only in debug mode.
    """
    if isinstance(
        e,
        (
            RequestValidationException,
            InvalidIssuer,
            AuthorizationStateError,
        ),
    ):
        return json_error(400, str(e))

    if isinstance(e, ValidationError):
        return json_error(
            400,
            "Invalid request",
            details=json.loads(e.json(include_url=False, include_input=False)),
        )

    if isinstance(e, ActivityLedgerDisabled):
        return json_error(403, str(e))

    if isinstance(e, ConnectionNotFound):
        return json_error(404, str(e))

    if isinstance(e, ActivityLedgerConflict):
        return json_error(409, str(e))

    if isinstance(e, TokenDecryptionError):
        logger.error(
            f"{operation}: stored Solid tokens could not be decrypted for user "
            f"{request.headers.get(USER_ID_HEADER, None)}: {e}"
        )
        sentry_sdk.capture_exception(e)
        metrics_client = request.app.get(MetricsClientAppKey, None)
        if metrics_client is not None:
            metrics_client.increment(
                "server.token_decryption.error", 1, tag_dict={"operation": operation}
            )
        return json_error(
            500,
            "Stored Solid credentials are unreadable. Reconnect the Pod.",
            code="token_decryption_failed",
        )

    if isinstance(
        e, (DiscoveryError, TokenError, PodResourceError, PodRequestError, SyncError)
    ):
        logger.warning(f"{operation}: upstream failure: {type(e).__name__}: {e}")
        metrics_client = request.app.get(MetricsClientAppKey, None)
        if metrics_client is not None:
            metrics_client.increment(
                "server.upstream.error",
                1,
                tag_dict={"operation": operation, "error": type(e).__name__},
            )
        return json_error(502, str(e))

    logger.error(
        f"Unexpected error in {operation}: {type(e).__name__}: {str(e)}\n"
        f"Traceback:\n{traceback.format_exc()}"
    )
    sentry_sdk.capture_exception(e)

    settings = request.app.get(SettingsAppKey, None)
    if settings is not None and settings.debug:
        return json_error(
            500,
            "Internal Server Error",
            error_type=type(e).__name__,
            error_message=str(e),
            traceback=traceback.format_exc(),
        )
    return json_error(500, "Internal Server Error", error_type=type(e).__name__)
