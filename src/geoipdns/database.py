"""Self-updating GeoIP database.

A :class:`Database` serves lookups from one immutable :class:`DataSnapshot`.
Databases opened from a URL start a background task that downloads a new
copy every update interval and swaps it in. Failed downloads are retried
with exponential backoff. The swap is a single attribute store, so lookups
running alongside a refresh see either the old snapshot or the new one.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from ipaddress import IPv4Address, IPv6Address
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, Self

import maxminddb
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type

from geoipdns._defaults import DEFAULT_FETCH_TIMEOUT, get_default_cache_directory
from geoipdns._file_writer import CacheWriter, cache_name_for
from geoipdns._utils import cleanup_temp_file
from geoipdns.backoff import BackoffPolicy
from geoipdns.client import DatabaseClient, Downloaded, NotModified
from geoipdns.errors import (
    AddressNotFoundError,
    FetchError,
    LoadError,
    LookupFailedError,
)
from geoipdns.models import (
    BackoffState,
    ClosedEvent,
    ErrorEvent,
    Event,
    GeoRecord,
    OpenedEvent,
    UpdatePolicy,
)
from geoipdns.source import LocalSource, RemoteSource, Source, resolve_source

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)

IPAddress = IPv4Address | IPv6Address | str


class Reader(Protocol):
    """What a snapshot needs from a database parser."""

    def get(self, ip_address: Any) -> Any:
        """Return the raw record for an address, or None."""

    def close(self) -> None:
        """Release the database."""


Loader = Callable[[Path], Reader]


def open_reader(path: Path) -> Reader:
    """Open an MMDB file fully into memory.

    Args:
        path: Path to the database file.

    Returns:
        A maxminddb reader.

    """
    return maxminddb.open_database(str(path), maxminddb.MODE_MEMORY)


@dataclass(frozen=True)
class DataSnapshot:
    """One fully loaded generation of the database.

    Attributes:
        origin: Path or URL the data was loaded from.
        loaded_at: When the data was loaded.
        reader: The parsed database.
        generation: Increases by one each time a snapshot is swapped in.
        last_modified: Modification time reported by the remote server.

    """

    origin: str
    loaded_at: datetime
    reader: Reader
    generation: int = 0
    last_modified: datetime | None = None

    def lookup(self, ip_address: IPAddress) -> GeoRecord:
        """Look up an address in this snapshot.

        Raises:
            AddressNotFoundError: If the address has no entry.
            LookupFailedError: If the address is invalid or the data unusable.

        """
        try:
            raw = self.reader.get(ip_address)
        except (ValueError, TypeError, OSError, maxminddb.InvalidDatabaseError) as e:
            msg = f"Lookup of {ip_address} failed: {e}"
            raise LookupFailedError(msg) from e

        if raw is None:
            msg = f"Address {ip_address} is not in the database"
            raise AddressNotFoundError(msg, ip_address=str(ip_address))
        if not isinstance(raw, dict):
            msg = f"Unexpected record type for {ip_address}: {type(raw).__name__}"
            raise LookupFailedError(msg)

        try:
            return GeoRecord.from_dict(raw)
        except (AttributeError, TypeError, ValueError, IndexError) as e:
            msg = f"Malformed record for {ip_address}: {e}"
            raise LookupFailedError(msg) from e

    def close(self) -> None:
        """Close the underlying reader."""
        self.reader.close()


def load_snapshot(
    path: Path,
    *,
    origin: str | None = None,
    loader: Loader = open_reader,
    last_modified: datetime | None = None,
) -> DataSnapshot:
    """Parse a database file into a snapshot.

    Args:
        path: Database file to parse.
        origin: Where the data came from. Defaults to ``path``.
        loader: Function that parses the file.
        last_modified: Modification time reported by a remote server.

    Returns:
        The new snapshot.

    Raises:
        LoadError: If the file cannot be read or parsed.

    """
    try:
        reader = loader(path)
    except (OSError, ValueError, maxminddb.InvalidDatabaseError) as e:
        msg = f"Failed to open database {path}: {e}"
        raise LoadError(msg) from e

    return DataSnapshot(
        origin=origin or str(path),
        loaded_at=datetime.now(timezone.utc),
        reader=reader,
        last_modified=last_modified,
    )


class Subscription:
    """Receives database events through a bounded queue.

    Delivery never waits on the subscriber. When the queue is full the oldest
    event is discarded to make room.

    Example:
        subscription = database.subscribe()
        async for event in subscription:
            print(event)

    """

    def __init__(self, owner: Database, maxsize: int) -> None:
        """Initialize the subscription.

        Args:
            owner: The database delivering events.
            maxsize: Number of undelivered events to keep.

        """
        if maxsize < 1:
            msg = f"maxsize must be at least 1, got {maxsize}"
            raise ValueError(msg)
        self._owner = owner
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize)
        self._finished = False
        self.dropped = 0

    def deliver(self, event: Event) -> None:
        """Queue an event without blocking."""
        while True:
            try:
                self._queue.put_nowait(event)
            except asyncio.QueueFull:
                discarded = self._queue.get_nowait()
                self.dropped += 1
                logger.debug("Dropping undelivered event %r", discarded)
            else:
                return

    async def get(self) -> Event:
        """Wait for the next event."""
        return await self._queue.get()

    def get_nowait(self) -> Event:
        """Return the next event.

        Raises:
            asyncio.QueueEmpty: If no event is waiting.

        """
        return self._queue.get_nowait()

    def unsubscribe(self) -> None:
        """Stop receiving events."""
        self._owner._unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[Event]:
        return self

    async def __anext__(self) -> Event:
        if self._finished:
            raise StopAsyncIteration
        event = await self.get()
        if isinstance(event, ClosedEvent):
            self._finished = True
        return event


class Database:
    """A GeoIP database that can refresh itself from a remote source.

    Use :meth:`open_local`, :meth:`open_remote` or :meth:`open` to create one.

    Example:
        policy = UpdatePolicy(timedelta(hours=24), timedelta(hours=1))
        async with await Database.open(url, policy) as database:
            record = database.lookup("8.8.8.8")

    """

    def __init__(
        self,
        snapshot: DataSnapshot,
        source: Source,
        *,
        policy: UpdatePolicy | None = None,
        client: DatabaseClient | None = None,
        writer: CacheWriter | None = None,
        loader: Loader = open_reader,
        backoff: BackoffPolicy | None = None,
        exit_stack: contextlib.AsyncExitStack | None = None,
    ) -> None:
        """Initialize the database around an already loaded snapshot.

        Args:
            snapshot: The initial snapshot.
            source: Where the snapshot came from.
            policy: Refresh schedule for remote sources.
            client: HTTP client used for refreshes.
            writer: Cache writer used for refreshes.
            loader: Function that parses database files.
            backoff: Delays between failed refresh attempts.
            exit_stack: Resources to release on close.

        """
        self._snapshot: DataSnapshot | None = snapshot
        self._source = source
        self._policy = policy
        self._client = client
        self._writer = writer
        self._loader = loader
        self._backoff = backoff or (
            BackoffPolicy.for_update_policy(policy) if policy else BackoffPolicy()
        )
        self._backoff_state = BackoffState(delay=self._backoff.base)
        self._exit_stack = exit_stack
        self._subscribers: list[Subscription] = []
        self._refresh_task: asyncio.Task[None] | None = None
        self._loads: set[asyncio.Future[DataSnapshot]] = set()
        self._closing = False
        self._closed = asyncio.Event()

    @classmethod
    def open_local(cls, path: Path | str, *, loader: Loader = open_reader) -> Self:
        """Open a database file once. It is never refreshed.

        Args:
            path: Path to the database file.
            loader: Function that parses the file.

        Returns:
            The open database.

        Raises:
            LoadError: If the file cannot be read or parsed.

        """
        path = Path(path)
        snapshot = load_snapshot(path, loader=loader)
        logger.info("Database loaded: %s", path)
        return cls(snapshot, LocalSource(path), loader=loader)

    @classmethod
    async def open_remote(
        cls,
        url: str,
        policy: UpdatePolicy,
        *,
        cache_dir: Path | None = None,
        fetch_timeout: timedelta = DEFAULT_FETCH_TIMEOUT,
        loader: Loader = open_reader,
        backoff: BackoffPolicy | None = None,
    ) -> Self:
        """Download a database and keep it up to date.

        The first download happens before this returns. Only when it succeeds
        is the background refresh task started.

        Args:
            url: Location of the database.
            policy: Refresh schedule.
            cache_dir: Directory downloaded databases are unpacked into.
            fetch_timeout: Limit for each download.
            loader: Function that parses the downloaded file.
            backoff: Delays between failed refresh attempts.

        Returns:
            The open database.

        Raises:
            FetchError: If the download fails.
            LoadError: If the download cannot be unpacked or parsed.
            LockError: If the cache directory stays locked.

        """
        exit_stack = contextlib.AsyncExitStack()
        loads: set[asyncio.Future[DataSnapshot]] = set()
        try:
            writer = CacheWriter(cache_dir or get_default_cache_directory())
            client = await exit_stack.enter_async_context(
                DatabaseClient(timeout=fetch_timeout)
            )
            snapshot = await _fetch_snapshot(
                client, writer, url, loader, loads=loads
            )
        except BaseException:
            for load in loads:
                load.add_done_callback(_close_loaded)
            await exit_stack.aclose()
            raise

        if snapshot is None:
            await exit_stack.aclose()
            msg = f"Server answered 304 Not Modified for {url} without a condition"
            raise FetchError(msg)

        logger.info("Database loaded: %s", url)
        database = cls(
            snapshot,
            RemoteSource(url),
            policy=policy,
            client=client,
            writer=writer,
            loader=loader,
            backoff=backoff,
            exit_stack=exit_stack,
        )
        database._start_refresh()
        return database

    @classmethod
    async def open(
        cls,
        source: str,
        policy: UpdatePolicy,
        *,
        cache_dir: Path | None = None,
        fetch_timeout: timedelta = DEFAULT_FETCH_TIMEOUT,
        loader: Loader = open_reader,
        backoff: BackoffPolicy | None = None,
    ) -> Self:
        """Open a database from a path or a URL.

        Args:
            source: Path or URL of the database.
            policy: Refresh schedule, used for URLs only.
            cache_dir: Directory downloaded databases are unpacked into.
            fetch_timeout: Limit for each download.
            loader: Function that parses database files.
            backoff: Delays between failed refresh attempts.

        Returns:
            The open database.

        """
        resolved = resolve_source(source)
        if isinstance(resolved, RemoteSource):
            return await cls.open_remote(
                resolved.url,
                policy,
                cache_dir=cache_dir,
                fetch_timeout=fetch_timeout,
                loader=loader,
                backoff=backoff,
            )
        return cls.open_local(resolved.path, loader=loader)

    async def __aenter__(self) -> Self:
        """Enter async context manager."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Exit async context manager, closing the database."""
        await self.close()

    @property
    def source(self) -> Source:
        """Where the database is loaded from."""
        return self._source

    @property
    def current(self) -> DataSnapshot | None:
        """The snapshot lookups are served from, or None once closed."""
        return self._snapshot

    @property
    def backoff_state(self) -> BackoffState:
        """Progress of the refresh task through consecutive failures."""
        return self._backoff_state

    @property
    def closed(self) -> bool:
        """Whether :meth:`close` has completed."""
        return self._closed.is_set()

    def lookup(self, ip_address: IPAddress) -> GeoRecord:
        """Look up an address in the current snapshot.

        Args:
            ip_address: The address to look up.

        Returns:
            The geolocation record.

        Raises:
            AddressNotFoundError: If the address has no entry.
            LookupFailedError: If the lookup fails or the database is closed.

        """
        snapshot = self._snapshot
        if snapshot is None:
            msg = "Database is closed"
            raise LookupFailedError(msg)
        return snapshot.lookup(ip_address)

    def subscribe(self, maxsize: int = 16) -> Subscription:
        """Start receiving database events.

        Args:
            maxsize: Number of undelivered events to keep before the oldest
                is discarded.

        Returns:
            The subscription.

        """
        subscription = Subscription(self, maxsize)
        self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        with contextlib.suppress(ValueError):
            self._subscribers.remove(subscription)

    def _emit(self, event: Event) -> None:
        for subscription in list(self._subscribers):
            subscription.deliver(event)

    def _swap(self, snapshot: DataSnapshot) -> DataSnapshot:
        """Make ``snapshot`` the current one and return it."""
        previous = self._snapshot
        generation = previous.generation + 1 if previous else 0
        snapshot = dataclasses.replace(snapshot, generation=generation)
        self._snapshot = snapshot
        return snapshot

    async def close(self) -> None:
        """Stop refreshing and release the database.

        Waits for the refresh task to stop before emitting a ClosedEvent.
        Calling this again, or concurrently, waits for the first close.
        """
        if self._closing:
            await self._closed.wait()
            return
        self._closing = True

        try:
            if self._refresh_task is not None:
                self._refresh_task.cancel()
                try:
                    await self._refresh_task
                except asyncio.CancelledError:
                    pass
                except Exception:
                    logger.exception("Database refresh task failed")
                self._refresh_task = None

            # A cancelled refresh may leave a worker thread loading a snapshot.
            for load in list(self._loads):
                try:
                    orphan = await load
                except Exception as e:
                    logger.debug("Abandoned database load failed: %s", e)
                else:
                    orphan.close()
            self._loads.clear()

            if self._exit_stack is not None:
                await self._exit_stack.aclose()
                self._exit_stack = None

            snapshot, self._snapshot = self._snapshot, None
            if snapshot is not None:
                snapshot.close()
        finally:
            self._closed.set()
            logger.debug("Database closed: %s", self._describe_source())
            self._emit(ClosedEvent())

    def _describe_source(self) -> str:
        if isinstance(self._source, RemoteSource):
            return self._source.url
        return str(self._source.path)

    def _start_refresh(self) -> None:
        self._refresh_task = asyncio.create_task(
            self._refresh_loop(), name="geoipdns-refresh"
        )

    async def _refresh_loop(self) -> None:
        """Refresh the database every update interval until cancelled."""
        if self._policy is None:
            msg = "A remote database needs an update policy"
            raise RuntimeError(msg)
        interval = self._policy.update_interval.total_seconds()
        while True:
            await asyncio.sleep(interval)
            await self._refresh_with_retry()

    async def _refresh_with_retry(self) -> None:
        """Refresh once, retrying with backoff until an attempt succeeds."""
        retrying = AsyncRetrying(
            wait=self._backoff,
            retry=retry_if_exception_type(Exception),
            before_sleep=self._before_retry_sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                await self._refresh_once()
        self._backoff_state = BackoffState(delay=self._backoff.base)

    def _before_retry_sleep(self, retry_state: RetryCallState) -> None:
        """Report a failed refresh attempt before backing off."""
        if retry_state.outcome is None or retry_state.next_action is None:
            return
        cause = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep
        self._backoff_state = BackoffState(
            attempt=retry_state.attempt_number, delay=delay
        )
        logger.warning(
            "Database refresh from %s failed (attempt %d), retrying in %.1fs: %s",
            self._describe_source(),
            retry_state.attempt_number,
            delay,
            cause,
        )
        self._emit(ErrorEvent(cause))

    async def _refresh_once(self) -> None:
        """Download the database and swap it in if it changed."""
        if self._client is None or self._writer is None:
            msg = "Only remote databases can be refreshed"
            raise RuntimeError(msg)
        if not isinstance(self._source, RemoteSource):
            msg = "Only remote databases can be refreshed"
            raise RuntimeError(msg)

        url = self._source.url
        current = self._snapshot
        snapshot = await _fetch_snapshot(
            self._client,
            self._writer,
            url,
            self._loader,
            if_modified_since=current.last_modified if current else None,
            loads=self._loads,
        )
        if snapshot is None:
            logger.info("Database %s not modified", url)
            return

        snapshot = self._swap(snapshot)
        logger.info("Database loaded: %s (generation %d)", url, snapshot.generation)
        self._emit(OpenedEvent(url))


async def _fetch_snapshot(
    client: DatabaseClient,
    writer: CacheWriter,
    url: str,
    loader: Loader,
    *,
    if_modified_since: datetime | None = None,
    loads: set[asyncio.Future[DataSnapshot]] | None = None,
) -> DataSnapshot | None:
    """Download, unpack and parse a database.

    The unpacking and parsing run in a worker thread, which cannot be
    interrupted. If the caller is cancelled meanwhile, the load stays in
    ``loads`` and whoever owns that set must close the snapshot it produces.

    Returns:
        The new snapshot, or None if the server reports no change.

    """
    response = await client.fetch(
        url, writer.directory, if_modified_since=if_modified_since
    )
    if isinstance(response, NotModified):
        return None

    load = asyncio.ensure_future(
        asyncio.to_thread(_install_and_load, writer, url, response, loader)
    )
    if loads is None:
        loads = set()
    loads.add(load)
    try:
        snapshot = await asyncio.shield(load)
    except asyncio.CancelledError:
        raise
    except Exception:
        loads.discard(load)
        raise
    loads.discard(load)
    return snapshot


def _install_and_load(
    writer: CacheWriter,
    url: str,
    response: Downloaded,
    loader: Loader,
) -> DataSnapshot:
    try:
        path = writer.install(
            cache_name_for(url), response.path, response.last_modified
        )
    finally:
        cleanup_temp_file(str(response.path))
    return load_snapshot(
        path, origin=url, loader=loader, last_modified=response.last_modified
    )


def _close_loaded(load: asyncio.Future[DataSnapshot]) -> None:
    if not load.cancelled() and load.exception() is None:
        load.result().close()
