import asyncio
import os
from typing import AsyncIterator, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from dhcpserver.lib.constants import LEASE_FILE_SETTLE_SECONDS
from dhcpserver.lib.dhcp.utils import bytes_md5, file_md5
from dhcpserver.lib.errors import LeaseFileMissingError
from dhcpserver.lib.log import get_logger

log = get_logger("server")

CHANGED = "changed"
MISSING = "missing"
_STOP = "stop"


class LeaseObserver(FileSystemEventHandler):
    """Forwards watchdog events for a single file as CHANGED / MISSING notifications."""

    def __init__(self, path: str, on_event: Callable[[str], None]) -> None:
        self.path = os.path.abspath(path)
        self.on_event = on_event

    def _is_lease_file(self, path) -> bool:
        if isinstance(path, bytes):
            path = os.fsdecode(path)
        return os.path.abspath(path) == self.path

    def on_created(self, event: FileSystemEvent) -> None:
        if self._is_lease_file(event.src_path):
            self.on_event(CHANGED)

    def on_modified(self, event: FileSystemEvent) -> None:
        if self._is_lease_file(event.src_path):
            self.on_event(CHANGED)

    def on_moved(self, event: FileSystemEvent) -> None:
        if self._is_lease_file(event.dest_path):
            self.on_event(CHANGED)
        elif self._is_lease_file(event.src_path):
            self.on_event(MISSING)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if self._is_lease_file(event.src_path):
            self.on_event(MISSING)


class LeaseFileWatcher:
    """
    Yields the lease file content every time it actually changes.

    Duplicate notifications are dropped by comparing the md5 of the file with the
    md5 of the last content handed out. A confirmed change waits settle_delay before
    the read so a half-flushed file is not parsed.
    """

    def __init__(self, path: str, settle_delay: float = LEASE_FILE_SETTLE_SECONDS) -> None:
        self.path = path
        self.settle_delay = settle_delay
        self.last_md5: str | None = None
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._observer = None

    def notify(self, kind: str = CHANGED) -> None:
        """Must be called from the event loop thread."""
        self._queue.put_nowait(kind)

    def start(self) -> None:
        loop = asyncio.get_running_loop()

        def _threadsafe_notify(kind: str) -> None:
            loop.call_soon_threadsafe(self.notify, kind)

        self._observer = Observer()
        self._observer.schedule(
            LeaseObserver(self.path, _threadsafe_notify),
            path=os.path.dirname(os.path.abspath(self.path)),
            recursive=False,
        )
        self._observer.start()
        log.info("started lease file watcher", path=self.path)

    async def stop(self) -> None:
        self._queue.put_nowait(_STOP)
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            # join() blocks until the observer thread exits, keep it off the event loop
            await asyncio.to_thread(observer.join)

    def _read(self) -> bytes:
        try:
            with open(self.path, "rb") as f:
                return f.read()
        except FileNotFoundError as e:
            raise LeaseFileMissingError(f"lease file {self.path} disappeared") from e

    def _checksum(self) -> str:
        try:
            return file_md5(self.path)
        except FileNotFoundError as e:
            raise LeaseFileMissingError(f"lease file {self.path} disappeared") from e

    async def _confirmed_read(self) -> bytes:
        await asyncio.sleep(self.settle_delay)
        data = self._read()
        self.last_md5 = bytes_md5(data)
        return data

    async def changes(self, initial: bool = True) -> AsyncIterator[bytes]:
        if initial:
            data = self._read()
            self.last_md5 = bytes_md5(data)
            yield data

        while True:
            kind = await self._queue.get()
            if kind == _STOP:
                return
            if kind == MISSING:
                raise LeaseFileMissingError(f"lease file {self.path} was removed")

            if self._checksum() == self.last_md5:
                continue

            log.info("lease file write detected", path=self.path)
            yield await self._confirmed_read()
