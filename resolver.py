"""Name resolution override for the upstream connection pool.

Every outbound connection is dialed to one fixed address, whatever
authority the outbound request carries. The Host header the backend sees
is therefore independent from where the bytes actually go, and the
upstream never needs a DNS-resolvable name.
"""

import typing

import httpcore


class Address(typing.NamedTuple):
    host: str
    port: int

    def __str__(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


class Resolver(typing.Protocol):
    def resolve(self, hostname: str) -> Address: ...


class FixedAddressResolver:
    """Resolves any hostname to the same address. Never fails, never does I/O."""

    def __init__(self, address: Address):
        self.address = address

    def resolve(self, hostname: str) -> Address:
        return self.address

    def __repr__(self) -> str:
        return f"FixedAddressResolver({self.address})"


class ResolvingNetworkBackend(httpcore.AsyncNetworkBackend):
    """Network backend that asks a Resolver where to connect.

    The host and port httpcore derived from the request URL are only handed
    to the resolver; the address it returns is what gets dialed.
    """

    def __init__(
        self,
        resolver: Resolver,
        backend: httpcore.AsyncNetworkBackend | None = None,
    ):
        self.resolver = resolver
        self.backend = backend if backend is not None else httpcore.AnyIOBackend()

    async def connect_tcp(
        self,
        host: str,
        port: int,
        timeout: float | None = None,
        local_address: str | None = None,
        socket_options: typing.Iterable[httpcore.SOCKET_OPTION] | None = None,
    ) -> httpcore.AsyncNetworkStream:
        address = self.resolver.resolve(host)
        return await self.backend.connect_tcp(
            address.host,
            address.port,
            timeout=timeout,
            local_address=local_address,
            socket_options=socket_options,
        )

    async def connect_unix_socket(
        self,
        path: str,
        timeout: float | None = None,
        socket_options: typing.Iterable[httpcore.SOCKET_OPTION] | None = None,
    ) -> httpcore.AsyncNetworkStream:
        return await self.backend.connect_unix_socket(
            path, timeout=timeout, socket_options=socket_options
        )

    async def sleep(self, seconds: float) -> None:
        await self.backend.sleep(seconds)
