"""Fixed-size byte ring used to keep the most recent encoded frames."""

from __future__ import annotations


class CircularBuffer:
    """A ring of bytes with independent read and write positions.

    One byte is always kept free so that a full buffer can be told
    apart from an empty one.
    """

    def __init__(self, size: int) -> None:
        if size < 2:
            raise ValueError("circular buffer needs at least two bytes")
        self._size = size
        self._buf = bytearray(size)
        self._rptr = 0
        self._wptr = 0

    @property
    def size(self) -> int:
        return self._size

    def is_empty(self) -> bool:
        return self._rptr == self._wptr

    def available(self) -> int:
        """Number of bytes that can be written without overtaking the reader."""
        if self._wptr == self._rptr:
            return self._size - 1
        return (self._size - self._wptr + self._rptr) % self._size - 1

    def skip(self, n: int) -> None:
        """Discard n bytes from the read side."""
        self._rptr = (self._rptr + n) % self._size

    def read(self, n: int) -> bytes:
        """Take n bytes from the read side."""
        if not 0 <= n < self._size:
            raise ValueError("read length out of range")
        parts = []
        if self._rptr + n >= self._size:
            parts.append(bytes(self._buf[self._rptr:]))
            n -= self._size - self._rptr
            self._rptr = 0
        parts.append(bytes(self._buf[self._rptr:self._rptr + n]))
        self._rptr += n
        return b"".join(parts)

    def pad(self, n: int) -> None:
        """Advance the write side by n bytes without writing."""
        self._wptr = (self._wptr + n) % self._size

    def write(self, data) -> None:
        """Append bytes at the write side, wrapping round the end."""
        view = memoryview(bytes(data))
        n = len(view)
        if n >= self._size:
            raise ValueError("data larger than the circular buffer")
        if self._wptr + n >= self._size:
            head = self._size - self._wptr
            self._buf[self._wptr:] = view[:head]
            view = view[head:]
            n -= head
            self._wptr = 0
        self._buf[self._wptr:self._wptr + n] = view
        self._wptr += n