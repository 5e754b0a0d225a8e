import logging

logger = logging.getLogger("gateway")
logger.setLevel(logging.INFO)
logger.propagate = False

try:
    from systemd.journal import JournalHandler

    handler = JournalHandler()
except ImportError:
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )

logger.addHandler(handler)


def configure_logging(level: str = "INFO") -> None:
    """Set the gateway log level and send uvicorn's own messages to the same sink."""
    logger.setLevel(level)

    server_logger = logging.getLogger("uvicorn.error")
    server_logger.setLevel(level)
    server_logger.propagate = False
    if handler not in server_logger.handlers:
        server_logger.addHandler(handler)

    logger.debug(f"Logging configured at level {level} via {type(handler).__name__}")
