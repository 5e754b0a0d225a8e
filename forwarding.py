import asyncio
from dataclasses import dataclass, field
from urllib.parse import quote

import anyio
import httpx
from starlette.datastructures import Headers
from starlette.requests import ClientDisconnect, Request
from starlette.responses import Response, StreamingResponse
from starlette.types import Receive, Scope, Send

from custom_logging import logger
from proxy_settings import HostPolicy
from resolver import Address

# Checked after the Forwarded header's host directive, in this order.
HOST_HEADERS = ("x-forwarded-host", "host")

_AUTHORITY_FORBIDDEN = frozenset("/?#@\\ \t")


class MalformedTargetError(Exception):
    """The inbound request cannot be turned into an upstream target."""


class MissingHostError(MalformedTargetError):
    """The inbound request names no host at all."""


@dataclass(frozen=True)
class ProxyState:
    client: httpx.AsyncClient
    remote: Address
    host_policy: HostPolicy = HostPolicy.PORT_SUBSTITUTION
    timeout: httpx.Timeout = field(default_factory=lambda: httpx.Timeout(None))


def forwarded_host(value: str) -> str | None:
    """The ``host=`` directive of the first element of a Forwarded header."""
    first = value.split(",", 1)[0]
    for pair in first.split(";"):
        key, sep, directive = pair.partition("=")
        if sep and key.strip().lower() == "host":
            return directive.strip().strip('"') or None
    return None


def request_host(headers: Headers) -> str:
    forwarded = headers.get("forwarded")
    if forwarded:
        host = forwarded_host(forwarded)
        if host:
            return host
    for name in HOST_HEADERS:
        value = headers.get(name, "").strip()
        if value:
            return value
    raise MissingHostError("request carries no Host header")


def split_hostname(authority: str) -> str:
    """Drop the port from ``host[:port]``, keeping IPv6 literals bracketed."""
    if authority.startswith("["):
        end = authority.find("]")
        return authority if end == -1 else authority[: end + 1]
    if authority.count(":") == 1:
        return authority.partition(":")[0]
    return authority


def outbound_authority(host: str, policy: HostPolicy, remote: Address) -> str:
    if policy is HostPolicy.PASSTHROUGH:
        return host
    return f"{split_hostname(host)}:{remote.port}"


def absolute_path(raw_path: bytes) -> bytes:
    """Path of an absolute-form target such as ``http://host/path``."""
    try:
        url = httpx.URL(raw_path.decode("ascii"))
    except (UnicodeDecodeError, httpx.InvalidURL):
        url = None
    if url is None or url.scheme not in ("http", "https") or not url.host:
        raise MalformedTargetError(f"request target {raw_path!r} has no path")
    return url.raw_path.partition(b"?")[0]


def path_and_query(scope: Scope) -> str:
    """The request path and query, byte for byte as the client sent them.

    Absolute-form targets are reduced to their path; ``*`` and
    authority-form targets carry none and are rejected.
    """
    raw_path = scope.get("raw_path")
    if raw_path is None:
        raw_path = quote(scope.get("path", "")).encode("ascii")
    raw_path = raw_path.partition(b"?")[0]
    if not raw_path.startswith(b"/"):
        raw_path = absolute_path(raw_path)

    target = raw_path
    query_string = scope.get("query_string", b"")
    if query_string:
        target += b"?" + query_string
    try:
        return target.decode("ascii")
    except UnicodeDecodeError:
        raise MalformedTargetError(f"request target {target!r} is not ASCII") from None


def build_outbound_url(scope: Scope, state: ProxyState) -> httpx.URL:
    """Point the inbound request at the upstream over plain HTTP."""
    host = request_host(Headers(scope=scope))
    authority = outbound_authority(host, state.host_policy, state.remote)
    if _AUTHORITY_FORBIDDEN.intersection(authority):
        raise MalformedTargetError(f"invalid authority {authority!r}")

    target = path_and_query(scope)
    try:
        url = httpx.URL(f"http://{authority}{target}")
    except httpx.InvalidURL as e:
        raise MalformedTargetError(f"invalid upstream URL: {e}") from e
    if not url.host:
        raise MalformedTargetError(f"invalid authority {authority!r}")
    return url


def has_body(headers: Headers) -> bool:
    return "transfer-encoding" in headers or headers.get("content-length", "0") != "0"


async def stream_body(request: Request, finished: asyncio.Event):
    async for chunk in request.stream():
        yield chunk
    finished.set()


async def wait_for_disconnect(request: Request, body_read: asyncio.Event) -> None:
    # The body stream owns receive() until it is exhausted.
    await body_read.wait()
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


class UpstreamResponse(StreamingResponse):
    """Streams an upstream response back to the client untouched."""

    def __init__(self, upstream: httpx.Response):
        # Transports may hand back a response whose body is already read.
        if upstream.is_stream_consumed:
            body = [upstream.content]
        else:
            body = upstream.aiter_raw()
        super().__init__(body, status_code=upstream.status_code)
        self.raw_headers = [(name.lower(), value) for name, value in upstream.headers.raw]
        self.upstream = upstream

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        except httpx.TransportError as e:
            logger.error(f"Upstream failed while streaming the response body: {e!r}")
            raise
        finally:
            with anyio.CancelScope(shield=True):
                await self.upstream.aclose()


class ForwardingHandler:
    """Catch-all ASGI app sending every request to the fixed upstream."""

    def __init__(self, state: ProxyState):
        self.state = state

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        try:
            response = await self.forward(request)
            await response(scope, receive, send)
        except ClientDisconnect:
            logger.debug(f"Client disconnected during {request.method} {scope.get('path')}")

    async def forward(self, request: Request) -> Response:
        url = build_outbound_url(request.scope, self.state)

        body_read = asyncio.Event()
        content = None
        if has_body(request.headers):
            content = stream_body(request, body_read)
        else:
            body_read.set()

        outbound = httpx.Request(
            request.method,
            url,
            headers=request.headers.raw,
            content=content,
            extensions={"timeout": self.state.timeout.as_dict()},
        )

        try:
            upstream = await self.send(request, outbound, body_read)
        except httpx.TransportError as error:
            logger.error(
                f"Internal error when talking to upstream: {error!r}",
                extra={"error": repr(error), "upstream": str(self.state.remote)},
            )
            return Response(status_code=500)

        return UpstreamResponse(upstream)

    async def send(
        self, request: Request, outbound: httpx.Request, body_read: asyncio.Event
    ) -> httpx.Response:
        """Send once, giving up as soon as the client goes away."""
        sending = asyncio.ensure_future(self.state.client.send(outbound, stream=True))
        watching = asyncio.ensure_future(wait_for_disconnect(request, body_read))
        try:
            done, _ = await asyncio.wait(
                {sending, watching}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            watching.cancel()
            if not sending.done():
                sending.cancel()

        if sending in done:
            return sending.result()

        (result,) = await asyncio.gather(sending, return_exceptions=True)
        if isinstance(result, httpx.Response):
            await result.aclose()
        raise ClientDisconnect()


async def malformed_target(request: Request, exc: MalformedTargetError) -> Response:
    logger.error(f"Cannot forward {request.method} {request.scope.get('path')!r}: {exc}")
    return Response(status_code=500)


async def missing_host(request: Request, exc: MissingHostError) -> Response:
    logger.warning(f"Rejecting {request.method} {request.scope.get('path')!r}: {exc}")
    return Response(status_code=400)
