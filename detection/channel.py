"""
Frame Ingestion Channel

Reads point-cloud frames written by an external sensor process through
named shared memory. Layout:

- one sync region holding a single 32-bit flag (0 or 1)
- one or more data-buffer pairs, each region holding
  point_count x channels float32 values

The producer always writes the region *not* indicated by the flag and then
flips the flag, so the consumer copies the region the flag points at.
"""

import struct
from dataclasses import dataclass
from multiprocessing import shared_memory
from typing import List, Sequence, Tuple
import numpy as np
from rich.console import Console

from utils.geometry import sensor_to_host
from .config import ChannelConfig, CHANNELS

console = Console()

SYNC_FORMAT = "i"


class ChannelUnavailable(Exception):
    """Shared memory could not be opened or created."""
    pass


def open_or_create(name: str, size: int) -> Tuple[shared_memory.SharedMemory, bool]:
    """
    Open a named shared memory region, creating it if it does not exist yet.

    Returns:
        Tuple of (region, created_by_us)
    """
    try:
        region = shared_memory.SharedMemory(name=name, create=False)
        created = False
    except FileNotFoundError:
        # Producer not running yet
        try:
            region = shared_memory.SharedMemory(name=name, create=True, size=size)
        except OSError as e:
            raise ChannelUnavailable(f"Could not create shared memory '{name}': {e}") from e
        created = True
    except (OSError, ValueError) as e:
        raise ChannelUnavailable(f"Could not open shared memory '{name}': {e}") from e

    if region.size < size:
        region.close()
        raise ChannelUnavailable(
            f"Shared memory '{name}' is {region.size} bytes, expected at least {size}"
        )
    return region, created


@dataclass(frozen=True)
class Frame:
    """One decoded point-cloud frame in host coordinates."""
    positions: np.ndarray   # (N, 3) float32
    intensity: np.ndarray   # (N,) float32

    @property
    def point_count(self) -> int:
        return self.positions.shape[0]


def decode_frame(raw: np.ndarray, channels: int = CHANNELS) -> Frame:
    """
    Decode a raw sensor frame.

    Args:
        raw: Flat float32 array of point_count * channels values
        channels: Values per point (x, y, z, intensity, ...)

    Returns:
        Frame with remapped positions and intensity, both read-only
    """
    raw = np.asarray(raw, dtype=np.float32)
    if raw.ndim == 1:
        if raw.size % channels != 0:
            raise ValueError(f"Frame of {raw.size} values is not a multiple of {channels} channels")
        raw = raw.reshape(-1, channels)
    elif raw.ndim != 2 or raw.shape[1] != channels:
        raise ValueError(f"Expected (N, {channels}) frame, got shape {raw.shape}")

    positions = sensor_to_host(raw).astype(np.float32)
    intensity = raw[:, 3].copy()
    positions.flags.writeable = False
    intensity.flags.writeable = False
    return Frame(positions=positions, intensity=intensity)


class _SharedRegions:
    """Sync region plus double-buffer pairs, shared by reader and writer."""

    def __init__(
        self,
        sync_name: str,
        buffer_names: Sequence[Tuple[str, str]],
        sync_size: int,
        frame_byte_size: int
    ):
        if not buffer_names:
            raise ChannelUnavailable("At least one buffer pair is required")
        if sync_size < struct.calcsize(SYNC_FORMAT):
            raise ChannelUnavailable(f"Sync region of {sync_size} bytes cannot hold the flag")
        if frame_byte_size <= 0:
            raise ChannelUnavailable(f"Invalid frame size: {frame_byte_size}")

        self.sync_name = sync_name
        self.buffer_names = [tuple(pair) for pair in buffer_names]
        self.sync_size = sync_size
        self.frame_byte_size = frame_byte_size

        self._created: List[shared_memory.SharedMemory] = []
        self._opened: List[shared_memory.SharedMemory] = []
        try:
            self._sync = self._open(sync_name, sync_size)
            self._pairs = [
                (self._open(first, frame_byte_size), self._open(second, frame_byte_size))
                for first, second in self.buffer_names
            ]
        except ChannelUnavailable:
            self.close()
            raise

    def _open(self, name: str, size: int) -> shared_memory.SharedMemory:
        region, created = open_or_create(name, size)
        self._opened.append(region)
        if created:
            console.print(f"[yellow]Created shared memory '{name}' ({size} bytes)[/yellow]")
            self._created.append(region)
        return region

    def read_sync(self) -> int:
        return struct.unpack_from(SYNC_FORMAT, self._sync.buf, 0)[0]

    def write_sync(self, flag: int):
        struct.pack_into(SYNC_FORMAT, self._sync.buf, 0, flag)

    def slot(self, pair_index: int, flag: int) -> shared_memory.SharedMemory:
        first, second = self._pairs[pair_index]
        return first if flag == 0 else second

    @property
    def buffer_pair_count(self) -> int:
        return len(self.buffer_names)

    def close(self):
        """Detach from all regions and remove the ones this process created."""
        for region in self._opened:
            region.close()
        for region in self._created:
            try:
                region.unlink()
            except FileNotFoundError:
                pass
        self._opened = []
        self._created = []


class FrameChannel(_SharedRegions):
    """
    Consumer side of the double-buffered frame channel.

    Slot selection is resolved once per poll_changed(), so a read never
    mixes the two regions even while the producer is writing the other one.
    """

    def __init__(
        self,
        sync_name: str,
        buffer_names: Sequence[Tuple[str, str]],
        sync_size: int,
        frame_byte_size: int
    ):
        super().__init__(sync_name, buffer_names, sync_size, frame_byte_size)
        self._current_flag = 0  # start with the first buffer of each pair

    @classmethod
    def open(
        cls,
        sync_name: str,
        buffer_names: Sequence[Tuple[str, str]],
        sync_size: int,
        frame_byte_size: int
    ) -> "FrameChannel":
        return cls(sync_name, buffer_names, sync_size, frame_byte_size)

    @classmethod
    def from_config(cls, config: ChannelConfig) -> "FrameChannel":
        return cls(
            config.sync_name,
            config.buffer_pairs,
            config.sync_size,
            config.frame_byte_size,
        )

    @property
    def current_flag(self) -> int:
        return self._current_flag

    def poll_changed(self) -> bool:
        """Check whether the producer published a new frame since the last poll."""
        flag = self.read_sync()
        if flag not in (0, 1):
            console.print(f"[yellow]Ignoring invalid sync flag value: {flag}[/yellow]")
            return False

        changed = flag != self._current_flag
        if changed:
            self._current_flag = flag
        return changed

    def read_frame(self, pair_index: int = 0) -> np.ndarray:
        """
        Copy the frame from the slot indicated by the last observed flag.

        Returns:
            Flat float32 array of frame_byte_size / 4 values
        """
        if not 0 <= pair_index < self.buffer_pair_count:
            raise IndexError(f"Buffer pair {pair_index} out of range (have {self.buffer_pair_count})")

        region = self.slot(pair_index, self._current_flag)
        data = bytes(region.buf[:self.frame_byte_size])
        return np.frombuffer(data, dtype=np.float32).copy()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class FrameProducer(_SharedRegions):
    """
    Writer side of the channel, used by the simulator and tests.

    Writes into the region the flag does not point at, then flips the flag
    to publish it.
    """

    @classmethod
    def from_config(cls, config: ChannelConfig) -> "FrameProducer":
        return cls(
            config.sync_name,
            config.buffer_pairs,
            config.sync_size,
            config.frame_byte_size,
        )

    def write_frame(self, raw: np.ndarray) -> int:
        """
        Publish a raw frame on the first buffer pair.

        Args:
            raw: float32 values (any shape) totalling frame_byte_size bytes

        Returns:
            The new flag value
        """
        return self.write_frames([raw])

    def write_frames(self, frames: Sequence[np.ndarray]) -> int:
        """
        Write one frame per buffer pair, then flip the flag once.

        Returns:
            The new flag value
        """
        if len(frames) != self.buffer_pair_count:
            raise ValueError(
                f"Got {len(frames)} frames for {self.buffer_pair_count} buffer pairs"
            )

        payloads = []
        for raw in frames:
            data = np.ascontiguousarray(raw, dtype=np.float32).tobytes()
            if len(data) != self.frame_byte_size:
                raise ValueError(
                    f"Frame is {len(data)} bytes, channel expects {self.frame_byte_size}"
                )
            payloads.append(data)

        flag = self.read_sync()
        target = 1 if flag == 0 else 0
        for pair_index, data in enumerate(payloads):
            self.slot(pair_index, target).buf[:self.frame_byte_size] = data
        self.write_sync(target)
        return target

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
