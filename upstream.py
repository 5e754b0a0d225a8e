import httpcore
import httpx

from resolver import Resolver, ResolvingNetworkBackend


class UpstreamTransport(httpx.AsyncHTTPTransport):
    """httpx transport whose connection pool dials through a Resolver."""

    def __init__(
        self,
        resolver: Resolver,
        limits: httpx.Limits | None = None,
        backend: httpcore.AsyncNetworkBackend | None = None,
    ):
        if limits is None:
            limits = httpx.Limits(max_connections=100, max_keepalive_connections=20)
        super().__init__(limits=limits)
        # Relies on httpx internals: swap the private pool for one dialing through
        # the resolver. Request mapping and error translation stay httpx's.
        self._pool = httpcore.AsyncConnectionPool(
            max_connections=limits.max_connections,
            max_keepalive_connections=limits.max_keepalive_connections,
            keepalive_expiry=limits.keepalive_expiry,
            network_backend=ResolvingNetworkBackend(resolver, backend),
        )


def build_upstream_client(
    resolver: Resolver,
    max_connections: int = 100,
    backend: httpcore.AsyncNetworkBackend | None = None,
) -> httpx.AsyncClient:
    limits = httpx.Limits(
        max_connections=max_connections,
        max_keepalive_connections=max_connections,
    )
    return httpx.AsyncClient(
        transport=UpstreamTransport(resolver, limits=limits, backend=backend),
        follow_redirects=False,
        trust_env=False,
    )
