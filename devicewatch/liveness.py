"""
Liveness probe.

A Windows PC is considered online if it accepts a TCP connection on SMB (445)
or RDP (3389). Any error counts as offline.
"""

import asyncio
import logging
from typing import Iterable, Optional

from devicewatch.config import settings

logger = logging.getLogger(__name__)


async def check_port(host: str, port: int, timeout: float) -> bool:
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (OSError, asyncio.TimeoutError):
        return False

    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def check(address: str, ports: Optional[Iterable[int]] = None, timeout: Optional[float] = None) -> bool:
    """Return True if any probed port on `address` accepts a connection."""
    ports = list(ports if ports is not None else settings.liveness_ports)
    timeout = timeout if timeout is not None else settings.liveness_timeout_seconds
    try:
        results = await asyncio.gather(*(check_port(address, port, timeout) for port in ports))
    except Exception as exc:
        logger.warning("Liveness probe for %s failed: %s", address, exc)
        return False
    return any(results)
