"""Prometheus metrics module."""

import logging

from prometheus_client import start_http_server

from agentlab.app.config import split_host_port

logger = logging.getLogger(__name__)


def start_metrics_server(listen: str) -> bool:
    """Serve /metrics on a loopback ``host:port``.

    Returns:
        False when listen is empty (metrics disabled)

    Raises:
        OSError: If the port cannot be bound
    """
    if not listen:
        return False
    host, port = split_host_port(listen)
    start_http_server(port, addr=host or "127.0.0.1")
    logger.info("Metrics listening on %s", listen)
    return True
