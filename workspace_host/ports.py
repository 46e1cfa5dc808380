"""Discover listening application ports from the kernel socket tables.

The scan is host-wide rather than per supervised process: dev servers are
often started through a shell or a package-manager wrapper, and the socket
is held by a grandchild.
"""

import aiofiles
import structlog

from workspace_host.env import PORT_RANGE, PUBLIC_URL

logger = structlog.get_logger(__name__)

SOCKET_TABLES = ("/proc/net/tcp", "/proc/net/tcp6")
LISTEN_STATE = "0A"


def parse_listening_ports(table: str, port_range: tuple[int, int] = PORT_RANGE) -> set[int]:
    """Return LISTEN ports within *port_range* from one ``/proc/net/tcp*`` dump.

    Each row looks like ``0: 00000000:0BB8 00000000:0000 0A ...``: the local
    address is ``hex_ip:hex_port`` and the fourth column is the TCP state.
    """
    low, high = port_range
    ports = set()
    for line in table.splitlines()[1:]:
        parts = line.split()
        if len(parts) < 4 or parts[3].upper() != LISTEN_STATE:
            continue
        _, _, hex_port = parts[1].rpartition(":")
        try:
            port = int(hex_port, 16)
        except ValueError:
            continue
        if low <= port <= high:
            ports.add(port)
    return ports


class PortScanner:
    def __init__(
        self,
        public_url: str = PUBLIC_URL,
        port_range: tuple[int, int] = PORT_RANGE,
        tables: tuple[str, ...] = SOCKET_TABLES,
    ):
        self.public_url = public_url.rstrip("/")
        self.port_range = port_range
        self.tables = tables

    def proxy_url(self, port: int) -> str:
        return f"{self.public_url}/proxy/{port}"

    async def listening_ports(self) -> set[int]:
        ports: set[int] = set()
        for path in self.tables:
            try:
                async with aiofiles.open(path) as f:
                    table = await f.read()
            except OSError:
                # tcp6 is absent when IPv6 is disabled
                logger.debug("Socket table unavailable", path=path)
                continue
            ports |= parse_listening_ports(table, self.port_range)
        return ports

    async def scan(self) -> dict[int, str]:
        """Map every listening application port to its proxy URL."""
        return {port: self.proxy_url(port) for port in sorted(await self.listening_ports())}
