"""DNS transports and the server entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import socket
import struct
from typing import TYPE_CHECKING, Any, Self

from dnslib import QTYPE, RCODE, DNSError, DNSRecord

from geoipdns.database import Database, Loader, Subscription, open_reader
from geoipdns.models import ClosedEvent, ErrorEvent, OpenedEvent, UpdatePolicy
from geoipdns.resolver import HostResolver
from geoipdns.router import QueryRouter

if TYPE_CHECKING:
    from geoipdns.config import Config

logger = logging.getLogger(__name__)

# Largest UDP reply without EDNS (RFC 1035 section 4.2.1).
UDP_PAYLOAD_SIZE = 512
TCP_LENGTH = struct.Struct("!H")

# Seconds stop() waits for requests already being answered.
DRAIN_TIMEOUT = 5.0


async def handle_packet(
    router: QueryRouter, data: bytes, *, max_size: int | None = None
) -> bytes | None:
    """Answer one wire-format DNS request.

    Args:
        router: Produces the reply.
        data: The raw request.
        max_size: Largest reply the transport may send. Larger replies are
            truncated and flagged TC. None for no limit.

    Returns:
        The raw reply, or None when the request could not be parsed.

    """
    try:
        request = DNSRecord.parse(data)
    except DNSError:
        logger.warning("Dropping malformed packet (%d bytes)", len(data))
        return None

    try:
        reply = await router.dispatch(request)
    except Exception:
        logger.exception("While dispatching request")
        reply = request.reply()
        reply.header.rcode = RCODE.SERVFAIL

    packed = reply.pack()
    if max_size is not None:
        limit = max(max_size, _edns_payload_size(request))
        if len(packed) > limit:
            packed = reply.truncate().pack()
    return packed


def _edns_payload_size(request: DNSRecord) -> int:
    for rr in request.ar:
        if rr.rtype == QTYPE.OPT:
            return int(rr.rclass)
    return UDP_PAYLOAD_SIZE


class _UDPProtocol(asyncio.DatagramProtocol):
    def __init__(self, router: QueryRouter) -> None:
        self._router = router
        self._transport: asyncio.DatagramTransport | None = None
        self._accepting = True
        self.tasks: set[asyncio.Task[None]] = set()

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._transport = transport  # type: ignore[assignment]

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        if not self._accepting:
            return
        task = asyncio.create_task(self._respond(data, addr))
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    def error_received(self, exc: Exception) -> None:
        logger.warning("UDP error: %s", exc)

    def stop_accepting(self) -> None:
        self._accepting = False

    async def _respond(self, data: bytes, addr: tuple[str, int]) -> None:
        reply = await handle_packet(self._router, data, max_size=UDP_PAYLOAD_SIZE)
        if reply is not None and self._transport is not None:
            self._transport.sendto(reply, addr)


class DNSServer:
    """Serves a router over UDP and TCP on the same address.

    Stopping the server stops accepting requests, then waits up to
    ``drain_timeout`` seconds for requests already being answered.

    Example:
        async with DNSServer(router, "127.0.0.1", 5300) as server:
            await stop.wait()

    """

    def __init__(
        self,
        router: QueryRouter,
        host: str,
        port: int,
        *,
        drain_timeout: float = DRAIN_TIMEOUT,
    ) -> None:
        """Initialize the server.

        Args:
            router: Answers the requests.
            host: Address to bind. Empty for all interfaces.
            port: Port to bind, 0 for any free port.
            drain_timeout: Seconds to wait for in-flight requests on stop.

        """
        self._router = router
        self._host = host or None
        self._port = port
        self._drain_timeout = drain_timeout
        self._udp: asyncio.DatagramTransport | None = None
        self._udp_protocol: _UDPProtocol | None = None
        self._tcp: asyncio.Server | None = None
        self._connections: dict[asyncio.StreamWriter, asyncio.Task[Any]] = {}
        self._idle: set[asyncio.StreamWriter] = set()
        self._stopping = False

    @property
    def udp_address(self) -> tuple[str, int]:
        """Bound UDP address."""
        if self._udp is None:
            msg = "Server is not running"
            raise RuntimeError(msg)
        return self._udp.get_extra_info("sockname")[:2]

    @property
    def tcp_address(self) -> tuple[str, int]:
        """Bound TCP address."""
        if self._tcp is None:
            msg = "Server is not running"
            raise RuntimeError(msg)
        return self._tcp.sockets[0].getsockname()[:2]

    async def start(self) -> None:
        """Bind both transports.

        Raises:
            OSError: If an address cannot be bound.

        """
        loop = asyncio.get_running_loop()
        self._stopping = False
        if self._host is None and socket.has_dualstack_ipv6():
            # TCP listens on every family for an empty host, so UDP must too.
            self._udp, self._udp_protocol = await loop.create_datagram_endpoint(
                lambda: _UDPProtocol(self._router),
                sock=_dual_stack_udp_socket(self._port),
            )
        else:
            self._udp, self._udp_protocol = await loop.create_datagram_endpoint(
                lambda: _UDPProtocol(self._router),
                local_addr=(self._host or "0.0.0.0", self._port),  # noqa: S104
                family=_family(self._host),
            )
        # Serve TCP on the same port UDP was given.
        port = self._udp.get_extra_info("sockname")[1]
        try:
            self._tcp = await asyncio.start_server(
                self._handle_tcp, self._host, port, reuse_address=True
            )
        except OSError:
            self._udp.close()
            self._udp = None
            raise
        logger.info("Listening on %s port %d (udp, tcp)", self._host or "*", port)

    async def stop(self) -> None:
        """Stop accepting requests and finish the ones in flight.

        Requests still unanswered after the drain timeout are cancelled.
        """
        self._stopping = True
        if self._tcp is not None:
            self._tcp.close()
        for writer in list(self._idle):
            writer.close()
        if self._udp_protocol is not None:
            self._udp_protocol.stop_accepting()

        pending: set[asyncio.Task[Any]] = set(self._connections.values())
        if self._udp_protocol is not None:
            pending |= self._udp_protocol.tasks
        if pending:
            _, unfinished = await asyncio.wait(pending, timeout=self._drain_timeout)
            if unfinished:
                logger.warning(
                    "Cancelling %d requests still in flight", len(unfinished)
                )
                for task in unfinished:
                    task.cancel()
                await asyncio.gather(*unfinished, return_exceptions=True)

        if self._tcp is not None:
            await self._tcp.wait_closed()
            self._tcp = None
        if self._udp is not None:
            self._udp.close()
            self._udp = None
        self._udp_protocol = None

    async def __aenter__(self) -> Self:
        """Enter async context manager."""
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Exit async context manager."""
        await self.stop()

    async def _handle_tcp(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connections[writer] = task
        try:
            while not self._stopping:
                self._idle.add(writer)
                try:
                    header = await reader.readexactly(TCP_LENGTH.size)
                    (length,) = TCP_LENGTH.unpack(header)
                    data = await reader.readexactly(length)
                except asyncio.IncompleteReadError:
                    break
                finally:
                    self._idle.discard(writer)
                reply = await handle_packet(self._router, data)
                if reply is None:
                    break
                writer.write(TCP_LENGTH.pack(len(reply)) + reply)
                await writer.drain()
        except ConnectionError as e:
            logger.debug("TCP connection error: %s", e)
        finally:
            self._connections.pop(writer, None)
            self._idle.discard(writer)
            writer.close()
            with contextlib.suppress(ConnectionError):
                await writer.wait_closed()


def _family(host: str | None) -> int:
    if host and ":" in host:
        return socket.AF_INET6
    return socket.AF_INET


def _dual_stack_udp_socket(port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET6, socket.SOCK_DGRAM)
    try:
        sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
        sock.bind(("::", port))
    except OSError:
        sock.close()
        raise
    sock.setblocking(False)
    return sock


async def log_events(subscription: Subscription) -> None:
    """Log database events until the database is closed."""
    async for event in subscription:
        if isinstance(event, OpenedEvent):
            logger.info("database loaded: %s", event.source)
        elif isinstance(event, ErrorEvent):
            logger.warning("database error: %s", event.cause)
        elif isinstance(event, ClosedEvent):
            logger.debug("database closed")


async def run(
    config: Config,
    *,
    loader: Loader = open_reader,
    stop: asyncio.Event | None = None,
) -> None:
    """Open the database and serve DNS until stopped.

    Args:
        config: Server configuration.
        loader: Function that parses database files.
        stop: Serving ends when this is set. SIGTERM sets it.

    Raises:
        ConfigError: If the refresh policy is invalid.
        LoadError: If the database cannot be parsed.
        FetchError: If the initial download fails.
        OSError: If the listen address cannot be bound.

    """
    stop = stop or asyncio.Event()
    loop = asyncio.get_running_loop()

    policy = UpdatePolicy(
        update_interval=config.update_interval,
        max_retry_interval=config.max_retry_interval,
    )
    database = await Database.open(
        config.database,
        policy,
        cache_dir=config.cache_directory,
        fetch_timeout=config.fetch_timeout,
        loader=loader,
    )
    events: asyncio.Task[None] | None = None
    try:
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signal.SIGTERM, stop.set)
        if not config.silent:
            events = asyncio.create_task(log_events(database.subscribe()))
        logger.info("Serving %s", config.database)

        router = QueryRouter(
            database,
            resolver=HostResolver(timeout=config.resolve_timeout),
            language=config.language,
            domain=config.domain,
            output_mode=config.output_mode,
            silent=config.silent,
        )
        async with DNSServer(router, config.host, config.port):
            await stop.wait()
    finally:
        await database.close()
        if events is not None:
            await events
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.remove_signal_handler(signal.SIGTERM)
