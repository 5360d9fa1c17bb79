from __future__ import annotations

import io
import secrets


class RandomPayload(io.RawIOBase):
    """Read-only stream of exactly `size` bytes from the OS CSPRNG.

    Bytes are produced on demand, so a payload as large as a full sector
    never sits in memory. Each instance yields independent content.
    """

    def __init__(self, size: int) -> None:
        super().__init__()
        if int(size) < 0:
            raise ValueError("payload size must be non-negative")
        self.size = int(size)
        self._remaining = int(size)

    @property
    def remaining(self) -> int:
        return self._remaining

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        n = min(len(b), self._remaining)
        if n <= 0:
            return 0
        b[:n] = secrets.token_bytes(n)
        self._remaining -= n
        return n
