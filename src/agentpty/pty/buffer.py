"""Ring buffer of recent PTY output chunks."""

from __future__ import annotations

import re
import threading
from collections import deque

from agentpty.text import clean_terminal_text

DEFAULT_CAPACITY = 100


class RingBuffer:
    """Fixed-capacity ring of output chunks, oldest overwritten first.

    Stores up to ``capacity`` chunks in two parallel tracks:

    * **raw** (``_raw``) — chunks exactly as read from the PTY, ANSI
      escape sequences included.
    * **cleaned** (``_cleaned``) — ANSI-stripped, binary-sanitized text
      suitable for logs and pattern matching.

    Chunks are stored as they arrive; no line splitting happens here.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._raw: deque[str] = deque(maxlen=capacity)
        self._cleaned: deque[str] = deque(maxlen=capacity)
        self._total: int = 0  # Total chunks ever appended
        self._lock = threading.Lock()

    def append(self, chunk: str) -> None:
        """Append a raw chunk, overwriting the oldest when full."""
        cleaned = clean_terminal_text(chunk)
        with self._lock:
            self._raw.append(chunk)
            self._cleaned.append(cleaned)
            self._total += 1

    def read(self, offset: int = 0, limit: int = DEFAULT_CAPACITY) -> list[str]:
        """Read cleaned chunks, ``offset`` counted from the oldest retained one."""
        with self._lock:
            chunks = list(self._cleaned)
        start = min(offset, len(chunks))
        end = min(start + limit, len(chunks))
        return chunks[start:end]

    def read_raw(self, offset: int = 0, limit: int = DEFAULT_CAPACITY) -> list[str]:
        """Read raw chunks (ANSI preserved)."""
        with self._lock:
            chunks = list(self._raw)
        start = min(offset, len(chunks))
        end = min(start + limit, len(chunks))
        return chunks[start:end]

    def read_all(self) -> str:
        """All retained cleaned output joined into one string."""
        with self._lock:
            return "".join(self._cleaned)

    def read_all_raw(self) -> str:
        with self._lock:
            return "".join(self._raw)

    def read_tail(self, n: int = 10) -> list[str]:
        """Read the last N cleaned chunks."""
        with self._lock:
            chunks = list(self._cleaned)
        return chunks[-n:] if len(chunks) > n else chunks

    def search(self, pattern: str, limit: int = 50) -> list[tuple[int, str]]:
        """Search cleaned chunks for a regex.

        Returns list of (index, chunk) tuples. An invalid pattern matches nothing.
        """
        try:
            compiled = re.compile(pattern)
        except re.error:
            return []

        results = []
        with self._lock:
            for i, chunk in enumerate(self._cleaned):
                if compiled.search(chunk):
                    results.append((i, chunk))
                    if len(results) >= limit:
                        break
        return results

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def count(self) -> int:
        """Number of chunks currently retained."""
        with self._lock:
            return len(self._raw)

    @property
    def total(self) -> int:
        """Total number of chunks ever appended."""
        with self._lock:
            return self._total

    def clear(self) -> None:
        with self._lock:
            self._raw.clear()
            self._cleaned.clear()
            self._total = 0

    def __len__(self) -> int:
        return self.count
