"""TCP port probing."""
from __future__ import annotations

import logging
import os
import socket
from typing import Iterable

from cdptunnel.core.errors import NoPortAvailable

logger = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"


def is_port_free(port: int, host: str = LOOPBACK) -> bool:
    """Return True if *port* can be bound right now.

    The probe socket is closed before returning, so the port is never held.
    SO_REUSEADDR mirrors how aiohttp binds its listeners on POSIX: sockets
    lingering in TIME_WAIT do not count as busy, live listeners still do.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        if os.name != "nt":
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind((host, port))
        except OSError:
            return False
    return True


def find_free_port(
    start_port: int,
    range_size: int = 10,
    exclude: Iterable[int] = (),
    host: str = LOOPBACK,
) -> int:
    """Return the first bindable port in ``[start_port, start_port + range_size)``.

    Raises ``NoPortAvailable`` once the whole range has been probed.
    """
    skip = set(exclude)
    for port in range(start_port, start_port + range_size):
        if port in skip:
            continue
        if is_port_free(port, host):
            if port != start_port:
                logger.info("Port %d busy, using %d instead", start_port, port)
            return port
        logger.debug("Port %d is in use", port)
    raise NoPortAvailable(
        f"No available port in range {start_port}-{start_port + range_size - 1}"
    )
