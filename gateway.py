import contextlib
import grp
import ipaddress
import os
import pwd
import socket
import sys

import httpx
import uvicorn
from prometheus_client import start_http_server
from starlette.applications import Starlette
from starlette.middleware import Middleware

try:
    from systemd import daemon
except ImportError:
    daemon = None

from custom_logging import logger
from forwarding import (
    ForwardingHandler,
    MalformedTargetError,
    MissingHostError,
    ProxyState,
    malformed_target,
    missing_host,
)
from observability import ObservabilityMiddleware, ProxyMetrics
from proxy_settings import ProxySettings
from resolver import Address, FixedAddressResolver
from upstream import build_upstream_client


def build_app(state: ProxyState, metrics: ProxyMetrics) -> Starlette:
    """Starlette app with no routes: every request falls through to the upstream."""

    @contextlib.asynccontextmanager
    async def lifespan(app):
        try:
            yield
        finally:
            await state.client.aclose()
            logger.debug("Upstream client closed")

    app = Starlette(
        middleware=[Middleware(ObservabilityMiddleware, metrics=metrics)],
        exception_handlers={
            MissingHostError: missing_host,
            MalformedTargetError: malformed_target,
        },
        lifespan=lifespan,
    )
    app.router.default = ForwardingHandler(state)
    return app


def bind_socket(address: Address, backlog: int) -> socket.socket:
    family = socket.AF_INET6 if ipaddress.ip_address(address.host).version == 6 else socket.AF_INET
    sock = socket.create_server((address.host, address.port), family=family, backlog=backlog)
    sock.setblocking(False)
    return sock


class HTTPProxy:
    def __init__(self, settings: ProxySettings):
        self.settings = settings
        self.bind = settings.bind
        self.remote = settings.remote
        self.metrics_address = settings.metrics
        self.user = settings.user
        self.group = settings.group

        self.metrics = ProxyMetrics(
            service=settings.service_name,
            buckets=settings.histogram_buckets,
            track_redirects=settings.track_redirects,
        )

        resolver = FixedAddressResolver(settings.remote)
        self.state = ProxyState(
            client=build_upstream_client(resolver, max_connections=settings.max_connections),
            remote=settings.remote,
            host_policy=settings.host_policy,
            timeout=httpx.Timeout(settings.upstream_timeout),
        )
        self.app = build_app(self.state, self.metrics)

    async def start(self):
        """Bind, drop privileges, then serve until shut down"""
        try:
            sock = bind_socket(self.bind, self.settings.backlog)
            start_http_server(
                self.metrics_address.port,
                addr=self.metrics_address.host,
                registry=self.metrics.registry,
            )
        except OSError as e:
            logger.error(f"Error starting proxy: {e}")
            sys.exit(1)

        # Drop privileges after binding if a port < 1024 and user/group specified
        privileged = min(self.bind.port, self.metrics_address.port) < 1024
        if privileged and (self.user or self.group):
            self.switch_user_and_group()

        logger.info(
            f"Proxying '{self.bind} -> {self.remote}' "
            f"(host policy {self.settings.host_policy.value}, metrics on {self.metrics_address})"
        )

        if daemon:
            try:
                daemon.notify("READY=1")
            except Exception as e:
                logger.error(f"Failed to notify systemd READY: {e}")

        config = uvicorn.Config(
            self.app,
            log_config=None,
            access_log=False,
            ws="none",
            lifespan="on",
            # Upstream headers go out as they came in.
            proxy_headers=False,
            server_header=False,
            date_header=False,
            backlog=self.settings.backlog,
        )
        server = uvicorn.Server(config)
        await server.serve(sockets=[sock])

    def switch_user_and_group(self):
        """Drop to the configured group, then user; unknown names are fatal."""
        try:
            gid = grp.getgrnam(self.group).gr_gid if self.group else None
            uid = pwd.getpwnam(self.user).pw_uid if self.user else None
        except KeyError as e:
            logger.error(f"Cannot drop privileges, unknown user or group: {e}")
            sys.exit(1)

        # Group first: after setuid the process may no longer change it.
        if gid is not None:
            os.setgid(gid)
            logger.info(f"Running as group '{self.group}'")
        if uid is not None:
            os.setuid(uid)
            logger.info(f"Running as user '{self.user}'")
