import logging

import httpx
import pytest

from custom_logging import logger
from forwarding import ProxyState
from observability import ProxyMetrics
from proxy_settings import DEFAULT_BUCKETS
from resolver import Address


@pytest.fixture
def gateway_caplog(caplog):
    """caplog wired to the gateway logger, which does not propagate to root."""
    logger.addHandler(caplog.handler)
    caplog.set_level(logging.DEBUG, logger=logger.name)
    yield caplog
    logger.removeHandler(caplog.handler)


@pytest.fixture
def metrics():
    return ProxyMetrics(service="gateway", buckets=DEFAULT_BUCKETS)


@pytest.fixture
def remote():
    return Address("127.0.0.1", 9000)


@pytest.fixture
def make_state(remote):
    """Build a ProxyState whose client answers through ``handler``."""

    def _make(handler, **kwargs):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return ProxyState(client=client, remote=remote, **kwargs)

    return _make
