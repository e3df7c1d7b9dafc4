"""Pull-based byte stream fed by a background task."""

import threading
from typing import Callable, Iterator, Optional


class RemoteStream:
    """Byte stream written by a producer thread and read by the caller.

    The producer calls write() for each chunk and finish() once, optionally
    with an error. Readers receive all buffered data first; after that the
    error (if any) is raised instead of returning EOF.
    """

    def __init__(self, on_close: Optional[Callable[[], None]] = None):
        self._buffer = bytearray()
        self._cond = threading.Condition()
        self._done = False
        self._error: Optional[BaseException] = None
        self._on_close = on_close
        self.closed = False

    # Producer side

    def write(self, data: bytes) -> int:
        with self._cond:
            self._buffer += data
            self._cond.notify_all()
        return len(data)

    def finish(self, error: Optional[BaseException] = None) -> None:
        with self._cond:
            self._done = True
            self._error = error
            self._cond.notify_all()

    # Consumer side

    @property
    def done(self) -> bool:
        with self._cond:
            return self._done

    @property
    def error(self) -> Optional[BaseException]:
        with self._cond:
            return self._error

    def _raise_or_eof(self) -> bytes:
        if self._error is not None:
            raise self._error
        return b''

    def read(self, size: int = -1, timeout: Optional[float] = None) -> bytes:
        """Read up to size bytes (all remaining data if size < 0).

        Blocks until data is available or the producer finishes.

        Raises:
            TimeoutError: If timeout elapsed with nothing to return
        """
        with self._cond:
            if size < 0:
                if not self._cond.wait_for(lambda: self._done, timeout=timeout):
                    raise TimeoutError("stream read timed out")
                data = bytes(self._buffer)
                self._buffer.clear()
                if self._error is not None:
                    if data:
                        # Deliver data now, the error on the next read
                        return data
                    raise self._error
                return data

            if not self._cond.wait_for(lambda: self._buffer or self._done, timeout=timeout):
                raise TimeoutError("stream read timed out")
            if not self._buffer:
                return self._raise_or_eof()
            data = bytes(self._buffer[:size])
            del self._buffer[:size]
            return data

    def readline(self, timeout: Optional[float] = None) -> bytes:
        """Read one line including its newline; b'' at EOF."""
        with self._cond:
            if not self._cond.wait_for(lambda: b'\n' in self._buffer or self._done, timeout=timeout):
                raise TimeoutError("stream read timed out")
            index = self._buffer.find(b'\n')
            if index < 0:
                if not self._buffer:
                    return self._raise_or_eof()
                index = len(self._buffer) - 1
            line = bytes(self._buffer[:index + 1])
            del self._buffer[:index + 1]
            return line

    def __iter__(self) -> Iterator[bytes]:
        while line := self.readline():
            yield line

    def close(self) -> None:
        """Stop the producer; further reads return what is already buffered."""
        if self.closed:
            return
        self.closed = True
        if self._on_close is not None:
            self._on_close()

    def __enter__(self) -> 'RemoteStream':
        return self

    def __exit__(self, *exc) -> None:
        self.close()
