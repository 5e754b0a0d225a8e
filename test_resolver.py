from concurrent.futures import ThreadPoolExecutor

import httpcore
import pytest

from resolver import Address, FixedAddressResolver, ResolvingNetworkBackend

UPSTREAM = Address("127.0.0.1", 9000)


class RecordingBackend(httpcore.AsyncNetworkBackend):
    """Wraps a backend and remembers where connections were dialed."""

    def __init__(self, backend=None):
        self.backend = backend or httpcore.AsyncMockBackend([])
        self.connections = []
        self.slept = []

    async def connect_tcp(self, host, port, timeout=None, local_address=None, socket_options=None):
        self.connections.append((host, port))
        return await self.backend.connect_tcp(host, port, timeout, local_address, socket_options)

    async def sleep(self, seconds):
        self.slept.append(seconds)


class TestFixedAddressResolver:
    @pytest.mark.parametrize(
        "hostname",
        ["tenant.example.com", "", "10.1.2.3", "::1", "not a hostname at all", "x" * 1000],
    )
    def test_always_returns_fixed_address(self, hostname):
        assert FixedAddressResolver(UPSTREAM).resolve(hostname) == UPSTREAM

    def test_concurrent_resolution(self):
        resolver = FixedAddressResolver(UPSTREAM)
        hostnames = [f"host-{i}.example.com" for i in range(500)]
        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(resolver.resolve, hostnames))
        assert set(results) == {UPSTREAM}

    def test_address_str(self):
        assert str(Address("127.0.0.1", 9000)) == "127.0.0.1:9000"
        assert str(Address("fe80::1", 80)) == "[fe80::1]:80"


class TestResolvingNetworkBackend:
    @pytest.mark.asyncio
    async def test_dials_resolved_address(self):
        recorder = RecordingBackend()
        backend = ResolvingNetworkBackend(FixedAddressResolver(UPSTREAM), recorder)

        await backend.connect_tcp("tenant.example.com", 80)
        await backend.connect_tcp("other.example.com", 9000, timeout=1.0)

        assert recorder.connections == [("127.0.0.1", 9000), ("127.0.0.1", 9000)]

    @pytest.mark.asyncio
    async def test_resolver_sees_hostname(self):
        seen = []

        class SpyResolver:
            def resolve(self, hostname):
                seen.append(hostname)
                return UPSTREAM

        backend = ResolvingNetworkBackend(SpyResolver(), RecordingBackend())
        await backend.connect_tcp("tenant.example.com", 9000)

        assert seen == ["tenant.example.com"]

    @pytest.mark.asyncio
    async def test_sleep_delegates(self):
        recorder = RecordingBackend()
        backend = ResolvingNetworkBackend(FixedAddressResolver(UPSTREAM), recorder)
        await backend.sleep(0.5)
        assert recorder.slept == [0.5]

    def test_default_backend(self):
        backend = ResolvingNetworkBackend(FixedAddressResolver(UPSTREAM))
        assert isinstance(backend.backend, httpcore.AnyIOBackend)
