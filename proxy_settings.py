import ipaddress
import logging
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from resolver import Address

DEFAULT_BUCKETS = (
    1e-3, 2e-3, 3e-3, 4e-3, 5e-3, 6e-3, 7e-3, 8e-3, 9e-3,  # ms
    1e-2, 2e-2, 3e-2, 4e-2, 5e-2, 6e-2, 7e-2, 8e-2, 9e-2,  # 10s ms
    1e-1, 2e-1, 3e-1, 4e-1, 5e-1, 6e-1, 7e-1, 8e-1, 9e-1,  # 100s ms
    1e0, 2e0, 3e0, 4e0, 5e0, 6e0, 7e0, 8e0, 9e0,  # s
)


class HostPolicy(str, Enum):
    """How the outbound authority is derived from the inbound Host header."""

    PORT_SUBSTITUTION = "port-substitution"
    PASSTHROUGH = "passthrough"


def parse_address(text: str) -> Address:
    """Parse ``ip:port`` or ``[ipv6]:port`` into an Address."""
    host, sep, port = text.strip().rpartition(":")
    if not sep or not host:
        raise ValueError(f"expected <address:port>, got {text!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        raise ValueError(f"{host!r} is not an IP address") from None
    if not port.isdigit() or not 0 < int(port) <= 65535:
        raise ValueError(f"invalid port {port!r}")
    return Address(str(ip), int(port))


class ProxySettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    bind: Address = Field(description="Address to listen on for client traffic")
    remote: Address = Field(description="Fixed upstream address all traffic is forwarded to")
    metrics: Address = Field(description="Address the metrics endpoint listens on")
    host_policy: HostPolicy = Field(
        default=HostPolicy.PORT_SUBSTITUTION,
        description="Outbound authority policy",
    )
    track_redirects: bool = Field(
        default=True, description="Count 3xx separately and log them at warning level"
    )
    histogram_buckets: tuple[float, ...] = Field(
        default=DEFAULT_BUCKETS,
        description="Bucket boundaries of the latency histogram, in seconds",
    )
    service_name: str = Field(
        default="gateway", description="Value of the global service label", min_length=1
    )
    upstream_timeout: float | None = Field(
        None, description="Upstream call deadline in seconds", gt=0
    )
    max_connections: int = Field(
        default=100, description="Upstream connection pool size", gt=0
    )
    backlog: int = Field(
        default=1024,
        description="This allows more incoming connections to queue up instead of being dropped under high load.",
        gt=0,
    )
    user: str | None = Field(
        None, description="User to drop privileges to after binding (for ports < 1024)"
    )
    group: str | None = Field(
        None, description="Group to drop privileges to after binding (for ports < 1024)"
    )
    log_level: str = Field(default="INFO", description="Logging level name")

    @field_validator("bind", "remote", "metrics", mode="before")
    @classmethod
    def _parse_address(cls, value):
        if isinstance(value, str):
            return parse_address(value)
        return value

    @field_validator("histogram_buckets", mode="before")
    @classmethod
    def _parse_buckets(cls, value):
        if isinstance(value, str):
            value = [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("histogram_buckets")
    @classmethod
    def _check_buckets(cls, value: tuple[float, ...]) -> tuple[float, ...]:
        if not value:
            raise ValueError("at least one bucket boundary is required")
        if any(bound <= 0 for bound in value):
            raise ValueError("bucket boundaries must be positive")
        return tuple(sorted(set(value)))

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level {value!r}")
        return level
