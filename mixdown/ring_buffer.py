"""Thread-safe ring buffer for PCM audio data.

Sits between the playback controller (which renders monitor chunks as
the listening device pulls them) and the monitor-mix recorder (which
reads whenever a microphone frame arrives). Bounded so an unread tap
never grows without limit.
"""

import threading


class PCMRingBuffer:
    """Fixed-size byte ring buffer with thread-safe read/write.

    - write() appends data, silently discarding oldest bytes on overflow
    - read(n) returns exactly n bytes, zero-padding if not enough data
    """

    def __init__(self, capacity: int = 48000 * 2 * 2):
        # Default: ~1 second of 48kHz stereo 16-bit audio
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._buf = bytearray(capacity)
        self._capacity = capacity
        self._write_pos = 0
        self._read_pos = 0
        self._size = 0
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def available(self) -> int:
        """Bytes available for reading."""
        with self._lock:
            return self._size

    def write(self, data: bytes) -> int:
        """Write data into the buffer. Returns bytes accepted.

        If buffer is full, oldest data is overwritten (lossy).
        """
        n = len(data)
        with self._lock:
            if n >= self._capacity:
                # Only the newest `capacity` bytes survive
                self._buf[:] = data[n - self._capacity:]
                self._write_pos = 0
                self._read_pos = 0
                self._size = self._capacity
                return n

            first = min(n, self._capacity - self._write_pos)
            self._buf[self._write_pos:self._write_pos + first] = data[:first]
            self._buf[:n - first] = data[first:]
            self._write_pos = (self._write_pos + n) % self._capacity

            overflow = self._size + n - self._capacity
            if overflow > 0:
                self._read_pos = (self._read_pos + overflow) % self._capacity
                self._size = self._capacity
            else:
                self._size += n
            return n

    def read(self, n: int) -> bytes:
        """Read n bytes. Zero-pads if fewer bytes are available."""
        with self._lock:
            take = min(n, self._size)
            result = bytearray(n)
            first = min(take, self._capacity - self._read_pos)
            result[:first] = self._buf[self._read_pos:self._read_pos + first]
            result[first:take] = self._buf[:take - first]
            self._read_pos = (self._read_pos + take) % self._capacity
            self._size -= take
            # Remaining bytes in result are already 0 (silence)
            return bytes(result)

    def clear(self):
        """Discard all buffered data."""
        with self._lock:
            self._write_pos = 0
            self._read_pos = 0
            self._size = 0
