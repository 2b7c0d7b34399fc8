"""Forward resolution of hostnames embedded in queries."""

from __future__ import annotations

import asyncio
import logging
import socket
from datetime import timedelta
from ipaddress import IPv4Address, IPv6Address, ip_address

from geoipdns._defaults import DEFAULT_RESOLVE_TIMEOUT
from geoipdns.errors import ResolutionError

logger = logging.getLogger(__name__)


class HostResolver:
    """Resolves hostnames with the system resolver.

    Example:
        resolver = HostResolver(timeout=timedelta(seconds=2))
        addresses = await resolver.resolve("example.com")

    """

    def __init__(self, *, timeout: timedelta = DEFAULT_RESOLVE_TIMEOUT) -> None:
        """Initialize the resolver.

        Args:
            timeout: Limit for each resolution.

        """
        self._timeout = timeout.total_seconds()

    async def resolve(self, hostname: str) -> list[IPv4Address | IPv6Address]:
        """Return the addresses of a hostname.

        Args:
            hostname: The name to resolve.

        Returns:
            The distinct addresses, in the order the resolver returned them.

        Raises:
            ResolutionError: If resolution fails, times out or finds nothing.

        """
        loop = asyncio.get_running_loop()
        try:
            async with asyncio.timeout(self._timeout):
                infos = await loop.getaddrinfo(
                    hostname, None, type=socket.SOCK_STREAM
                )
        except TimeoutError as e:
            msg = f"Timed out resolving {hostname}"
            raise ResolutionError(msg) from e
        except (OSError, UnicodeError) as e:
            msg = f"Failed to resolve {hostname}: {e}"
            raise ResolutionError(msg) from e

        addresses: list[IPv4Address | IPv6Address] = []
        for _family, _type, _proto, _canonname, sockaddr in infos:
            # IPv6 link-local results carry a scope id.
            host = str(sockaddr[0]).split("%", 1)[0]
            try:
                address = ip_address(host)
            except ValueError:
                logger.debug("Ignoring unparseable address %r for %s", host, hostname)
                continue
            if address not in addresses:
                addresses.append(address)

        if not addresses:
            msg = f"{hostname} has no addresses"
            raise ResolutionError(msg)
        return addresses
