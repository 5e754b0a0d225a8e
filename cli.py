#!/usr/bin/env python3

import argparse
import asyncio
import sys

from pydantic import ValidationError

from custom_logging import configure_logging, logger
from gateway import HTTPProxy
from proxy_settings import HostPolicy, ProxySettings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="HTTP gateway forwarding every request to one fixed upstream"
    )
    parser.add_argument(
        "-b", "--bind", required=True, help="Address to listen on (e.g. 127.0.0.1:8080)"
    )
    parser.add_argument(
        "-r",
        "--remote",
        required=True,
        help="Fixed upstream address all traffic is forwarded to (e.g. 127.0.0.1:9000)",
    )
    parser.add_argument(
        "-m",
        "--metrics",
        required=True,
        help="Address the Prometheus metrics endpoint listens on (e.g. 127.0.0.1:9100)",
    )
    parser.add_argument(
        "--host-policy",
        dest="host_policy",
        choices=[policy.value for policy in HostPolicy],
        help="How the outbound authority is derived from the Host header "
        "(default: port-substitution)",
    )
    parser.add_argument(
        "--no-track-redirects",
        dest="track_redirects",
        action="store_false",
        default=None,
        help="Do not count 3xx responses separately or log them at warning level",
    )
    parser.add_argument(
        "--histogram-buckets",
        dest="histogram_buckets",
        help="Comma separated latency histogram bucket boundaries in seconds",
    )
    parser.add_argument(
        "--service-name",
        dest="service_name",
        help="Value of the service label on every metric (default: gateway)",
    )
    parser.add_argument(
        "--upstream-timeout",
        dest="upstream_timeout",
        type=float,
        help="Seconds to wait for the upstream before answering 500 (default: no timeout)",
    )
    parser.add_argument(
        "--max-connections",
        dest="max_connections",
        type=int,
        help="Size of the upstream connection pool (default: 100)",
    )
    parser.add_argument(
        "--backlog", type=int, help="Listen backlog of the proxy socket (default: 1024)"
    )
    parser.add_argument(
        "--user", help="User to drop privileges to after binding (for ports < 1024)"
    )
    parser.add_argument(
        "--group", help="Group to drop privileges to after binding (for ports < 1024)"
    )
    parser.add_argument(
        "--log-level", dest="log_level", help="Logging level (default: INFO)"
    )
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    logger.debug("Validating configuration")
    try:
        config = ProxySettings(
            **{key: value for key, value in vars(args).items() if value is not None}
        )
    except ValidationError as e:
        logger.error(f"Configuration validation error: {e}")
        sys.exit(1)

    configure_logging(config.log_level)
    logger.debug("Configuration validated successfully")

    proxy = HTTPProxy(config)

    async def _run_with_handler():
        loop = asyncio.get_running_loop()

        def _handle_loop_exception(loop, context):
            msg = context.get("message") or context
            exc = context.get("exception")
            logger.error(f"Unhandled exception in event loop: {msg}", exc_info=exc)

        loop.set_exception_handler(_handle_loop_exception)
        await proxy.start()

    try:
        asyncio.run(_run_with_handler())
    except KeyboardInterrupt:
        logger.info("Gateway stopped by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
