"""
Fan-out of one byte stream to several independent consumers.

One producer feeds chunks into a ``StreamTee``; every consumer owns a bounded
queue exposed as a blocking, file-like ``QueueReader`` so it can be handed to
``tarfile`` or a hash loop running in a worker thread. A full queue blocks the
producer (backpressure). A consumer that stops early calls ``abandon()`` and
is skipped from then on, so the producer never waits on a dead reader.
"""

import asyncio
import queue
import threading
from typing import Any, Callable, List, Optional


_EOF = object()


class QueueReader:
    """Blocking reader side of one tee branch."""

    def __init__(self, name: str, max_chunks: int = 16):
        self.name = name
        self._queue: "queue.Queue" = queue.Queue(maxsize=max_chunks)
        self._buffer = b""
        self._eof = False
        self._error: Optional[BaseException] = None
        self._abandoned = threading.Event()
        self.bytes_read = 0

    # producer side

    def _put(self, item) -> None:
        while not self._abandoned.is_set():
            try:
                self._queue.put(item, timeout=0.1)
                return
            except queue.Full:
                continue

    @property
    def abandoned(self) -> bool:
        return self._abandoned.is_set()

    # consumer side

    def _next_chunk(self) -> bool:
        if self._eof:
            return False
        item = self._queue.get()
        if item is _EOF:
            self._eof = True
            return False
        if isinstance(item, BaseException):
            self._eof = True
            self._error = item
            raise item
        self._buffer += item
        return True

    def read(self, size: int = -1) -> bytes:
        if self._error is not None:
            raise self._error
        if size is None or size < 0:
            while self._next_chunk():
                pass
            data, self._buffer = self._buffer, b""
        else:
            while len(self._buffer) < size and self._next_chunk():
                pass
            data, self._buffer = self._buffer[:size], self._buffer[size:]
        self.bytes_read += len(data)
        return data

    def readable(self) -> bool:
        return True

    def drain(self) -> int:
        """Discard whatever is left until the producer closes the stream."""

        discarded = len(self._buffer)
        self._buffer = b""
        while not self._eof:
            item = self._queue.get()
            if item is _EOF or isinstance(item, BaseException):
                self._eof = True
            else:
                discarded += len(item)
        return discarded

    def abandon(self) -> None:
        self._abandoned.set()
        # unblock a producer waiting on a full queue
        try:
            while True:
                self._queue.get_nowait()
        except queue.Empty:
            pass


class StreamTee:
    """Broadcasts chunks written by one producer to every registered reader."""

    def __init__(self, max_chunks: int = 16):
        self.max_chunks = max_chunks
        self._readers: List[QueueReader] = []
        self.bytes_written = 0

    def add_reader(self, name: str) -> QueueReader:
        reader = QueueReader(name, self.max_chunks)
        self._readers.append(reader)
        return reader

    def feed(self, chunk: bytes) -> None:
        if not chunk:
            return
        self.bytes_written += len(chunk)
        for reader in self._readers:
            if not reader.abandoned:
                reader._put(chunk)

    def close(self) -> None:
        for reader in self._readers:
            if not reader.abandoned:
                reader._put(_EOF)

    def fail(self, error: BaseException) -> None:
        for reader in self._readers:
            if not reader.abandoned:
                reader._put(error)


def run_in_thread(func: Callable[..., Any], *args: Any) -> "asyncio.Future":
    """
    Run a blocking stream consumer in its own thread.

    Consumers get a dedicated thread instead of a slot in the default
    executor: producers blocked on full queues may occupy every executor
    slot, and the consumer that would drain them must still get to run.
    """
    loop = asyncio.get_running_loop()
    future = loop.create_future()

    def settle(result: Any, error: Optional[BaseException]) -> None:
        if future.cancelled():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)

    def runner() -> None:
        try:
            result = func(*args)
        except BaseException as e:
            loop.call_soon_threadsafe(settle, None, e)
        else:
            loop.call_soon_threadsafe(settle, result, None)

    threading.Thread(target=runner, name=getattr(func, "__name__", "consumer"), daemon=True).start()
    return future


__all__ = ["QueueReader", "StreamTee", "run_in_thread"]
