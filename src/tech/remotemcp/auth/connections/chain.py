from abc import ABC, abstractmethod
from dataclasses import dataclass
from time import time
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
import logging
from urllib.parse import parse_qsl
from aiohttp import BasicAuth, ClientResponse, ClientSession, FormData, hdrs
from aiohttp.typedefs import StrOrURL
from multidict import CIMultiDictProxy

from tech.remotemcp.auth.app.metrics import MetricsClient

RequestFunc = Callable[..., Awaitable[ClientResponse]]

logger = logging.getLogger(__name__)


@dataclass
class ChainRequest:
    method: str
    url: StrOrURL
    headers: dict[str, Any] | None = None
    kwargs: dict[str, Any] | None = None

    def form(self) -> FormData:
        """Return the request's form body, creating an empty one if needed."""
        if self.kwargs is None:
            self.kwargs = {}
        data = self.kwargs.get("data", None)
        if data is None:
            data = FormData()
            self.kwargs["data"] = data
        return data


@dataclass
class ChainResponse:
    status: int
    headers: CIMultiDictProxy[str]
    body: str | bytes | dict[str, Any] | None = None

    @staticmethod
    async def from_aiohttp_response(response: ClientResponse) -> "ChainResponse":
        status = response.status
        headers = response.headers

        content_type = response.headers.get(hdrs.CONTENT_TYPE, "")

        if content_type.startswith("application/json"):
            return ChainResponse(
                status=status, headers=headers, body=await response.json()
            )
        elif content_type.startswith("application/x-www-form-urlencoded"):
            # GitHub answers in this form unless asked for JSON.
            text = await response.text()
            return ChainResponse(
                status=status, headers=headers, body=dict(parse_qsl(text))
            )
        elif content_type.startswith("text/"):
            return ChainResponse(
                status=status, headers=headers, body=await response.text()
            )
        else:
            return ChainResponse(
                status=status, headers=headers, body=await response.read()
            )

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


NextChainResponseCallbackType = Tuple[ClientResponse, ChainResponse]

NextChainCallbackType = Callable[
    [ChainRequest], Awaitable[NextChainResponseCallbackType]
]


class RequestMiddlewareBase(ABC):
    @abstractmethod
    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        pass

    def handle_gen(self, next: NextChainCallbackType) -> NextChainCallbackType:
        async def next_invoke(request: ChainRequest) -> NextChainResponseCallbackType:
            return await self.handle(next, request)

        return next_invoke


class ClientSecretPostMiddleware(RequestMiddlewareBase):
    """Authenticate to a token endpoint with client_id/client_secret form fields."""

    def __init__(self, client_id: str, client_secret: Optional[str]) -> None:
        super().__init__()
        self._client_id = client_id
        self._client_secret = client_secret

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        data = request.form()
        data.add_field("client_id", self._client_id)
        if self._client_secret is not None:
            data.add_field("client_secret", self._client_secret)
        return await next(request)


class ClientSecretBasicMiddleware(RequestMiddlewareBase):
    """Authenticate to a token endpoint with HTTP Basic credentials."""

    def __init__(self, client_id: str, client_secret: Optional[str]) -> None:
        super().__init__()
        self._auth = BasicAuth(client_id, client_secret or "")

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        if request.headers is None:
            request.headers = {}
        request.headers[hdrs.AUTHORIZATION] = self._auth.encode()
        return await next(request)


class StatsdMiddleware(RequestMiddlewareBase):
    def __init__(self, metrics_client: MetricsClient, metric_prefix: str) -> None:
        super().__init__()
        self._metrics_client = metrics_client
        self._metric_prefix = metric_prefix

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        start_time = time()
        status = 0
        try:
            response = await next(request)
            status = response[1].status
            return response
        except Exception as e:
            self._metrics_client.increment(
                f"{self._metric_prefix}.exception",
                1,
                tag_dict={"exception": type(e).__name__, "method": request.method},
            )
            raise
        finally:
            self._metrics_client.timer(
                f"{self._metric_prefix}.time",
                time() - start_time,
                tag_dict={"method": request.method},
            )
            self._metrics_client.increment(
                f"{self._metric_prefix}.count",
                1,
                tag_dict={"method": request.method, "status": status},
            )


class EndOfLineChainMiddleware:
    def __init__(
        self,
        request_func: RequestFunc,
        logger: logging.Logger,
        raise_for_status: bool = False,
    ) -> None:
        super().__init__()
        self._request_func = request_func
        self._raise_for_status = raise_for_status
        self._logger = logger

    async def handle(self, request: ChainRequest) -> NextChainResponseCallbackType:
        # Bodies carry client secrets and grants; only the target is logged.
        self._logger.debug("Making request: %s %s", request.method, request.url)

        response: ClientResponse = await self._request_func(
            request.method.lower(),
            request.url,
            headers=request.headers,
            **(request.kwargs or {}),
        )

        if self._raise_for_status:
            response.raise_for_status()

        return response, await ChainResponse.from_aiohttp_response(response)


class ChainMiddlewareContext:
    def __init__(
        self,
        chain_callback: NextChainCallbackType,
        chain_request: ChainRequest,
    ) -> None:
        self._chain_callback = chain_callback
        self._chain_request = chain_request
        self.client_response: ClientResponse | None = None

    async def _do_request(self) -> Tuple[ClientResponse, ChainResponse]:
        client_response, chain_response = await self._chain_callback(
            self._chain_request
        )
        self.client_response = client_response
        return client_response, chain_response

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
    An aiohttp client whose requests pass through a chain of middleware.

    Middleware run in the order given; each can rewrite the outgoing request
    (add credentials, headers, form fields) and observe the response. The
    shared ClientSession is borrowed, never closed, by this client.
    """

    def __init__(
        self,
        client_session: ClientSession,
        middleware: Sequence[RequestMiddlewareBase] | None = None,
        raise_for_status: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client_session
        self._middleware = middleware
        self._logger = logger or logging.getLogger("aiohttp_chain")
        self._raise_for_status = raise_for_status

    def post(self, url: StrOrURL, **kwargs: Any) -> ChainMiddlewareContext:
        return self._make_request(method=hdrs.METH_POST, url=url, **kwargs)

    def _make_request(
        self,
        method: str,
        url: StrOrURL,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        headers: Dict[str, Any] = dict(kwargs.pop("headers", None) or {})
        chain_request = ChainRequest(
            method=method,
            url=url,
            headers=headers,
            kwargs=kwargs,
        )

        end_of_line_middleware = EndOfLineChainMiddleware(
            request_func=self._client.request,
            logger=self._logger,
            raise_for_status=self._raise_for_status,
        )

        chain_callback: NextChainCallbackType = end_of_line_middleware.handle

        for mw in reversed(self._middleware or []):
            chain_callback = mw.handle_gen(chain_callback)

        return ChainMiddlewareContext(
            chain_callback=chain_callback,
            chain_request=chain_request,
        )
