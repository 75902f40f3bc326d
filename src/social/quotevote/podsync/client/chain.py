"""
Request Middleware Chain

Outbound Pod requests pass through a list of middleware before reaching the shared
``aiohttp.ClientSession``. Each middleware receives the request and a callable for the
rest of the chain, and returns ``(client_response, chain_response)``. Returning a third
element, a replacement ``ChainRequest``, asks for the whole chain to run again with it;
``ChainMiddlewareClient`` allows ``attempt_max`` runs before raising
``MaxAttemptsReached``.

The innermost link issues the HTTP call and reads the body, so middleware can inspect
status, headers and decoded JSON without touching the stream.
"""

import dataclasses
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from time import time
from types import TracebackType
from typing import (
    Any,
    Awaitable,
    Callable,
    Generator,
    Optional,
    Sequence,
    Tuple,
)

import sentry_sdk
from aiohttp import ClientResponse, ClientSession, hdrs
from aiohttp.typedefs import StrOrURL
from multidict import CIMultiDictProxy

from social.quotevote.podsync.app.metrics import MetricsClient

logger = logging.getLogger(__name__)


class MaxAttemptsReached(Exception):
    pass


@dataclass
class ChainRequest:
    method: str
    url: StrOrURL
    headers: dict[str, Any] = field(default_factory=dict)
    trace_request_ctx: dict[str, Any] = field(default_factory=dict)
    kwargs: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_chain_request(request: "ChainRequest") -> "ChainRequest":
        """Copy of a request whose headers and trace context can be changed freely."""
        return dataclasses.replace(
            request,
            headers=dict(request.headers or {}),
            trace_request_ctx=dict(request.trace_request_ctx or {}),
        )


def decode_body(text: str) -> str | dict[str, Any] | list[Any] | None:
    if not text.strip():
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text


@dataclass
class ChainResponse:
    status: int
    headers: CIMultiDictProxy[str]
    body: str | bytes | dict[str, Any] | list[Any] | None = None

    @staticmethod
    async def from_aiohttp_response(response: ClientResponse) -> "ChainResponse":
        content_type = response.headers.get(hdrs.CONTENT_TYPE, "")

        # application/json and application/ld+json
        if "json" in content_type:
            body = decode_body(await response.text())
        elif content_type.startswith("text/"):
            body = await response.text()
        else:
            body = await response.read()

        return ChainResponse(status=response.status, headers=response.headers, body=body)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def etag(self) -> Optional[str]:
        return self.headers.get(hdrs.ETAG, None)


ChainResult = (
    Tuple[ClientResponse, ChainResponse]
    | Tuple[ClientResponse, ChainResponse, ChainRequest]
)

ChainHandler = Callable[[ChainRequest], Awaitable[ChainResult]]


class RequestMiddlewareBase(ABC):
    """
    One link of a request chain.

    ``handle`` receives the rest of the chain and the request. A middleware that wants
    the request issued again returns a third element, the request to retry with.
    """

    @abstractmethod
    async def handle(self, next: ChainHandler, request: ChainRequest) -> ChainResult:
        pass

    def wrap(self, next: ChainHandler) -> ChainHandler:
        async def invoke(request: ChainRequest) -> ChainResult:
            return await self.handle(next, request)

        return invoke


class StatsdMiddleware(RequestMiddlewareBase):
    """Records outbound request timing and counts."""

    def __init__(self, metrics_client: MetricsClient) -> None:
        super().__init__()
        self._metrics_client = metrics_client

    async def handle(self, next: ChainHandler, request: ChainRequest) -> ChainResult:
        method = request.method.lower()
        start_time = time()
        status = 0

        try:
            result = await next(request)
            status = result[1].status
            return result
        except Exception as e:
            sentry_sdk.capture_exception(e)
            self._metrics_client.increment(
                "client.request.exception",
                1,
                tag_dict={"exception": type(e).__name__, "method": method},
            )
            raise
        finally:
            self._metrics_client.timer(
                "client.request.time",
                time() - start_time,
                tag_dict={"method": method},
            )
            self._metrics_client.increment(
                "client.request.count",
                1,
                tag_dict={"method": method, "status": status},
            )


class ChainCall:
    """
    A pending chained request.

    Awaiting it returns ``(client_response, chain_response)``. Used as an async context
    manager it also closes the last client response on exit.
    """

    def __init__(
        self,
        session: ClientSession,
        middleware: Sequence[RequestMiddlewareBase],
        request: ChainRequest,
        log: logging.Logger,
        raise_for_status: bool,
        attempt_max: int,
    ) -> None:
        self._session = session
        self._request = request
        self._log = log
        self._raise_for_status = raise_for_status
        self._attempt_max = attempt_max

        handler: ChainHandler = self._send
        for mw in reversed(middleware):
            handler = mw.wrap(handler)
        self._handler = handler

        self.client_response: ClientResponse | None = None
        self.chain_response: ChainResponse | None = None

    async def _send(self, request: ChainRequest) -> ChainResult:
        # Headers carry bearer tokens and are never logged.
        self._log.debug("Pod request: %s %s", request.method, request.url)

        response = await self._session.request(
            request.method.lower(),
            request.url,
            headers=request.headers,
            trace_request_ctx=dict(request.trace_request_ctx or {}),
            **(request.kwargs or {}),
        )
        if self._raise_for_status:
            response.raise_for_status()

        return response, await ChainResponse.from_aiohttp_response(response)

    async def _run(self) -> Tuple[ClientResponse, ChainResponse]:
        request = self._request

        for attempt in range(1, self._attempt_max + 1):
            self._log.debug(
                "Attempt %d of %d: %s %s",
                attempt,
                self._attempt_max,
                request.method,
                request.url,
            )

            result = await self._handler(request)
            self.client_response, self.chain_response = result[0], result[1]

            if len(result) == 2:
                return result[0], result[1]
            request = result[2]  # type: ignore[misc]

        raise MaxAttemptsReached(
            f"Max attempts reached for {request.method} {request.url}"
        )

    def __await__(self) -> Generator[Any, None, Tuple[ClientResponse, ChainResponse]]:
        return self._run().__await__()

    async def __aenter__(self) -> Tuple[ClientResponse, ChainResponse]:
        return await self._run()

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
    Issues requests on a shared ``ClientSession`` through a middleware chain.

    Middleware runs in the given order around the request. The last link performs the
    HTTP call and reads the body into a ``ChainResponse``.
    """

    def __init__(
        self,
        client_session: ClientSession,
        logger: logging.Logger | None = None,
        middleware: Sequence[RequestMiddlewareBase] | None = None,
        raise_for_status: bool = False,
        attempt_max: int = 2,
    ) -> None:
        self._client = client_session
        self._middleware = list(middleware or [])
        self._logger = logger or logging.getLogger(__name__)
        self._raise_for_status = raise_for_status
        self._attempt_max = attempt_max

    def request(
        self,
        method: str,
        url: StrOrURL,
        raise_for_status: bool | None = None,
        **kwargs: Any,
    ) -> ChainCall:
        request = ChainRequest(
            method=method,
            url=url,
            headers=kwargs.pop("headers", None) or {},
            trace_request_ctx=kwargs.pop("trace_request_ctx", None) or {},
            kwargs=kwargs,
        )
        return ChainCall(
            self._client,
            self._middleware,
            request,
            self._logger,
            self._raise_for_status if raise_for_status is None else raise_for_status,
            self._attempt_max,
        )

    def get(self, url: StrOrURL, **kwargs: Any) -> ChainCall:
        return self.request(hdrs.METH_GET, url, **kwargs)

    def put(self, url: StrOrURL, **kwargs: Any) -> ChainCall:
        return self.request(hdrs.METH_PUT, url, **kwargs)
