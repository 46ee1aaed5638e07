#!/usr/bin/env python3
"""Local TCP port allocation for supervised services."""
import logging
import socket
from typing import Optional

logger = logging.getLogger('kbproxy.ports')

LOOPBACK = '127.0.0.1'


def is_port_free(port: int, host: str = LOOPBACK) -> bool:
    """Return True if a listening socket can be bound to ``port`` right now."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, port))
        sock.listen(1)
        return True
    except OSError:
        return False
    finally:
        sock.close()


def ephemeral_port(host: str = LOOPBACK) -> int:
    """Ask the OS for an unused port by binding to port 0."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


def find_free_port(range_start: Optional[int] = None, range_end: Optional[int] = None,
                   host: str = LOOPBACK) -> int:
    """Return the first free port in ``[range_start, range_end]``.

    Without a range an OS-assigned ephemeral port is returned. When every port
    in the range is taken the range start is returned anyway; callers always
    health-check the service after starting it, so a collision surfaces there.
    """
    if range_start is None:
        port = ephemeral_port(host)
        logger.info(f"Allocated ephemeral port {port}")
        return port

    if range_end is None:
        range_end = range_start

    for port in range(range_start, range_end + 1):
        if is_port_free(port, host):
            logger.info(f"Found free port: {port}")
            return port

    logger.warning(f"All ports in range {range_start}-{range_end} are busy. Using {range_start}.")
    return range_start
