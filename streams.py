"""
Container Streams Module

Lazy, closeable views over daemon log and stats streams. A stream holds a
daemon-side response open until close() is called, so callers should use the
`with` form:

    with orchestrator.get_container_logs(handle) as logs:
        for chunk in logs:
            ...
"""

import threading
from typing import Callable, Iterator

from models import Statistics
from utils import OPEN_STREAMS, DaemonAPIException, DockmasterException, logger


class ContainerStream:
    """Base class: iterate items from a runtime stream, translate errors, close once"""

    kind = "stream"

    def __init__(
        self,
        source,
        container_id: str,
        translate: Callable[[DaemonAPIException], DockmasterException],
    ):
        self.container_id = container_id
        self._source = source
        self._iterator = iter(source)
        self._translate = translate
        self._closed = False
        self._close_lock = threading.Lock()
        OPEN_STREAMS.inc()

    @property
    def closed(self) -> bool:
        return self._closed

    def __iter__(self):
        return self

    def __next__(self):
        if self._closed:
            raise StopIteration
        try:
            item = next(self._iterator)
        except DaemonAPIException as e:
            raise self._translate(e) from e
        return self._convert(item)

    def _convert(self, item):
        return item

    def close(self):
        """Release the daemon-side stream. Safe to call more than once, from any thread."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        OPEN_STREAMS.dec()
        close = getattr(self._source, "close", None)
        try:
            if close is not None:
                close()
        finally:
            logger.debug(
                "Container stream closed", kind=self.kind, container_id=self.container_id
            )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class LogStream(ContainerStream):
    """Combined stdout/stderr output of a container as raw byte chunks.

    Finite once the container has exited and the daemon closes the response;
    otherwise blocks waiting for new output until closed.
    """

    kind = "logs"

    def iter_lines(self) -> Iterator[bytes]:
        """Re-chunk the byte stream into lines (without trailing newlines)"""
        pending = b""
        for chunk in self:
            pending += chunk
            *lines, pending = pending.split(b"\n")
            yield from lines
        if pending:
            yield pending


class StatsStream(ContainerStream):
    """Sequence of Statistics snapshots, one per daemon sample (about 1/s)"""

    kind = "stats"

    def _convert(self, item) -> Statistics:
        return Statistics.from_daemon(item)
