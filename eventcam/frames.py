"""Buffer types and the pre-event frame ring."""

from __future__ import annotations

import enum
from collections import deque
from dataclasses import dataclass
from typing import Iterator


class Flag(enum.IntFlag):
    NONE = 0
    KEYFRAME = 1
    RESTART = 2


@dataclass(frozen=True, slots=True)
class Buffer:
    """One encoded unit as handed over by the encoder; borrowed, never retained."""

    data: bytes | bytearray | memoryview
    timestamp_us: int
    keyframe: bool = False

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True, slots=True)
class Frame:
    """Owned copy of a delivered buffer, held by the pre-event ring."""

    data: bytes
    timestamp_us: int
    keyframe: bool

    @classmethod
    def copy_of(cls, data: bytes | bytearray | memoryview, timestamp_us: int, keyframe: bool) -> "Frame":
        return cls(bytes(data), int(timestamp_us), bool(keyframe))


class PreEventBuffer:
    """Bounded FIFO of the most recent frames.

    Capacity is a frame count; once full, every append evicts the oldest
    frame regardless of its keyframe status. A capacity of zero turns the
    buffer into a no-op.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 0:
            raise ValueError("capacity must be >= 0")
        self.capacity = int(capacity)
        self._frames: deque[Frame] = deque()
        self.evicted = 0

    @property
    def enabled(self) -> bool:
        return self.capacity > 0

    def __len__(self) -> int:
        return len(self._frames)

    def __iter__(self) -> Iterator[Frame]:
        return iter(self._frames)

    def append(self, data: bytes | bytearray | memoryview, timestamp_us: int, keyframe: bool) -> None:
        if not self.capacity:
            return
        self._frames.append(Frame.copy_of(data, timestamp_us, keyframe))
        while len(self._frames) > self.capacity:
            self._frames.popleft()
            self.evicted += 1

    def drain(self, cutoff_us: int | None = None) -> list[Frame]:
        """Empty the ring, returning frames oldest first.

        With ``cutoff_us`` only frames stamped strictly before it are
        returned; the rest are discarded along with them.
        """
        if cutoff_us is None:
            drained = list(self._frames)
        else:
            drained = []
            for frame in self._frames:
                if frame.timestamp_us >= cutoff_us:
                    break
                drained.append(frame)
        self._frames.clear()
        return drained

    def clear(self) -> None:
        self._frames.clear()
