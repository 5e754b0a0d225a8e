import logging
import time
from typing import Iterable

from prometheus_client import CollectorRegistry, Counter, Histogram
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from custom_logging import logger

LABELS = ("service", "status", "method")

_MESSAGES = {
    logging.ERROR: "Serving error",
    logging.WARNING: "Serving redirect",
    logging.INFO: "Serving response",
}


def classify(status: int) -> int:
    """Log level for a response status: error for 4xx/5xx, warning for 3xx."""
    if status >= 400:
        return logging.ERROR
    if 300 <= status < 400:
        return logging.WARNING
    return logging.INFO


class ProxyMetrics:
    """Per-response counters and the latency histogram, in one registry.

    Created once at startup and handed to the middleware; tests build their
    own with a private registry. With ``track_redirects`` off there is no
    redirect counter and 3xx responses are logged like any other success.
    """

    def __init__(
        self,
        service: str,
        buckets: Iterable[float],
        track_redirects: bool = True,
        registry: CollectorRegistry | None = None,
    ):
        self.service = service
        self.track_redirects = track_redirects
        self.registry = registry if registry is not None else CollectorRegistry()

        self.responses = Counter(
            "responses",
            "Responses served without a client or server error",
            LABELS,
            registry=self.registry,
        )
        self.error_responses = Counter(
            "error_responses",
            "Responses served with a 4xx or 5xx status",
            LABELS,
            registry=self.registry,
        )
        self.redirect_responses = None
        if track_redirects:
            self.redirect_responses = Counter(
                "redirect_responses",
                "Responses served with a 3xx status",
                LABELS,
                registry=self.registry,
            )
        self.processing_time = Histogram(
            "response_processing_time_seconds",
            "Time from receiving a request until its response was available",
            LABELS,
            buckets=tuple(buckets),
            registry=self.registry,
        )

    def record(self, status: int, method: str, elapsed: float) -> None:
        labels = {"service": self.service, "status": str(status), "method": method}

        if status >= 400:
            self.error_responses.labels(**labels).inc()
        else:
            if self.redirect_responses is not None and 300 <= status < 400:
                self.redirect_responses.labels(**labels).inc()
            self.responses.labels(**labels).inc()

        self.processing_time.labels(**labels).observe(elapsed)


def request_uri(scope: Scope) -> str:
    path = scope.get("raw_path")
    uri = path.decode("latin-1") if path else scope.get("path", "")
    query_string = scope.get("query_string", b"")
    if query_string and "?" not in uri:
        uri += "?" + query_string.decode("latin-1")
    return uri


class ObservabilityMiddleware:
    """Times, counts and logs every HTTP request passing through.

    The response is observed when its start message is sent, which is the
    response the client actually gets, including substituted error
    responses. Requests abandoned before any response started are not
    recorded.
    """

    def __init__(self, app: ASGIApp, metrics: ProxyMetrics):
        self.app = app
        self.metrics = metrics

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        observed = False

        async def send_wrapper(message: Message) -> None:
            nonlocal observed
            if message["type"] == "http.response.start" and not observed:
                observed = True
                self.observe(scope, message["status"], time.perf_counter() - start)
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception:
            # The server error layer outside turns this into a 500.
            if not observed:
                observed = True
                self.observe(scope, 500, time.perf_counter() - start)
            raise

    def observe(self, scope: Scope, status: int, elapsed: float) -> None:
        method = scope["method"]
        uri = request_uri(scope)

        try:
            self.metrics.record(status, method, elapsed)
        except Exception:
            logger.warning(f"Failed to record metrics for {method} {uri}", exc_info=True)

        level = classify(status)
        if level == logging.WARNING and not self.metrics.track_redirects:
            level = logging.INFO

        logger.log(
            level,
            "%s status=%d uri=%s method=%s time=%.6f",
            _MESSAGES[level],
            status,
            uri,
            method,
            elapsed,
            extra={"status": status, "uri": uri, "method": method, "time": elapsed},
        )
