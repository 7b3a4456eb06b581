"""
Compute Backend

Command-queue abstraction over the parallel accelerator. Work is enqueued
(buffer transfers, kernel launches, shared-buffer acquire/release) and runs
in order on finish(). Kernels are pure functions of their lane ids and
arguments; a launch of global_extent lanes is executed as vectorised numpy
batches over open index grids.

The position buffer is shared with the renderer. Compute may only touch it
between acquire_shared() and release_shared(), and the renderer may only
touch it while compute does not hold it.
"""

import math
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple
import numpy as np
from rich.console import Console

console = Console()

RENDERER = "renderer"
COMPUTE = "compute"


class BackendError(Exception):
    """Dispatch, argument or execution error. Recoverable on the next cycle."""
    pass


@dataclass
class LaunchContext:
    """What a kernel sees about its launch."""
    gid: Tuple[np.ndarray, ...]     # open grid of lane ids for this batch
    global_extent: Tuple[int, ...]
    local_size: Optional[int] = None


KernelFn = Callable[..., None]


class Buffer:
    """Device memory: a named numpy array owned by the backend."""

    def __init__(self, name: str, data: np.ndarray):
        self.name = name
        self.data = data

    @property
    def shape(self) -> Tuple[int, ...]:
        return self.data.shape

    @property
    def dtype(self):
        return self.data.dtype

    def __len__(self) -> int:
        return self.data.shape[0]

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, shape={self.shape}, dtype={self.dtype})"


class SharedBuffer(Buffer):
    """Buffer also read and written by the rendering subsystem."""

    def __init__(self, name: str, data: np.ndarray):
        super().__init__(name, data)
        self.holder = RENDERER

    def renderer_view(self) -> np.ndarray:
        """Read-only view for the renderer."""
        if self.holder != RENDERER:
            raise BackendError(f"Shared buffer '{self.name}' is held by compute")
        view = self.data.view()
        view.flags.writeable = False
        return view

    def renderer_write(self, data: np.ndarray, columns: Optional[slice] = None):
        """Renderer-side upload (e.g. a new frame's positions)."""
        if self.holder != RENDERER:
            raise BackendError(f"Shared buffer '{self.name}' is held by compute")
        data = np.asarray(data)
        target = self.data[:len(data)] if columns is None else self.data[:len(data), columns]
        target[...] = data


@dataclass
class _Command:
    label: str
    run: Callable[[], None]


class ComputeBackend:
    """
    In-order command queue executing registered kernels.

    Args:
        kernels: Kernel registry (kernel_id -> function); defaults to the
            kernels in detection.kernels
        max_lanes_per_batch: Upper bound of lanes materialised at once
        history_size: Number of executed commands remembered
    """

    def __init__(
        self,
        kernels: Optional[Dict[str, KernelFn]] = None,
        max_lanes_per_batch: int = 1 << 20,
        history_size: int = 256
    ):
        if kernels is None:
            from .kernels import KERNELS
            kernels = KERNELS
        self._kernels: Dict[str, KernelFn] = dict(kernels)
        self.max_lanes_per_batch = max_lanes_per_batch
        self._queue: List[_Command] = []
        # Ownership of shared buffers as seen in enqueue order
        self._pending_holder: Dict[int, str] = {}
        self._shared: Dict[int, SharedBuffer] = {}
        self.history: Deque[str] = deque(maxlen=history_size)

    @classmethod
    def from_config(cls, config) -> "ComputeBackend":
        return cls(
            max_lanes_per_batch=config.max_lanes_per_batch,
            history_size=config.history_size,
        )

    # Registry

    def register(self, kernel_id: str, fn: KernelFn):
        self._kernels[kernel_id] = fn

    def has_kernel(self, kernel_id: str) -> bool:
        return kernel_id in self._kernels

    # Memory

    def create_buffer(self, name: str, shape, dtype=np.float32) -> Buffer:
        return Buffer(name, np.zeros(shape, dtype=dtype))

    def create_shared(self, name: str, shape, dtype=np.float32) -> SharedBuffer:
        buffer = SharedBuffer(name, np.zeros(shape, dtype=dtype))
        self._shared[id(buffer)] = buffer
        self._pending_holder[id(buffer)] = RENDERER
        return buffer

    def write_buffer(self, buffer: Buffer, data: np.ndarray):
        """Enqueue a host -> device copy into the leading rows of buffer."""
        self._check_access(buffer, "write")
        host = np.array(data, dtype=buffer.dtype, copy=True)
        if host.ndim == 0 or len(host) > len(buffer) or host.shape[1:] != buffer.shape[1:]:
            raise BackendError(
                f"Cannot write shape {host.shape} into buffer '{buffer.name}' {buffer.shape}"
            )

        def run():
            buffer.data[:len(host)] = host

        self._enqueue(f"write:{buffer.name}", run)

    def read_buffer(self, buffer: Buffer, rows: Optional[int] = None) -> np.ndarray:
        """Blocking device -> host copy."""
        self._check_access(buffer, "read")
        self.finish()
        if rows is None:
            return buffer.data.copy()
        return buffer.data[:rows].copy()

    # Shared buffers

    def acquire_shared(self, buffer: SharedBuffer):
        """Enqueue taking the shared buffer away from the renderer."""
        key = self._shared_key(buffer)
        if self._pending_holder[key] == COMPUTE:
            raise BackendError(f"Shared buffer '{buffer.name}' already acquired")
        self._pending_holder[key] = COMPUTE

        def run():
            buffer.holder = COMPUTE

        self._enqueue(f"acquire:{buffer.name}", run)

    def release_shared(self, buffer: SharedBuffer):
        """Enqueue handing the shared buffer back to the renderer."""
        key = self._shared_key(buffer)
        if self._pending_holder[key] != COMPUTE:
            raise BackendError(f"Shared buffer '{buffer.name}' released without acquire")
        self._pending_holder[key] = RENDERER

        def run():
            buffer.holder = RENDERER

        self._enqueue(f"release:{buffer.name}", run)

    @contextmanager
    def shared(self, buffer: SharedBuffer):
        """
        Bracket compute access to a shared buffer.

        On normal exit the release is enqueued and the queue finished, so the
        renderer can read the buffer afterwards. On error pending work is
        discarded and the buffer is handed back to the renderer.
        """
        self.acquire_shared(buffer)
        try:
            yield buffer
            self.release_shared(buffer)
            self.finish()
        except BaseException:
            self.discard()
            buffer.holder = RENDERER
            self._pending_holder[self._shared_key(buffer)] = RENDERER
            raise

    # Execution

    def dispatch(
        self,
        kernel_id: str,
        global_extent,
        args: Sequence[Any],
        local_size: Optional[int] = None
    ):
        """
        Enqueue a launch of prod(global_extent) independent lanes.

        Args:
            kernel_id: Registered kernel name
            global_extent: int or tuple of ints
            args: Buffers (passed to the kernel as arrays) and scalars
            local_size: Work-group size; batches are aligned to it
        """
        fn = self._kernels.get(kernel_id)
        if fn is None:
            raise BackendError(f"Unknown kernel: {kernel_id}")

        extent = (global_extent,) if isinstance(global_extent, (int, np.integer)) else tuple(global_extent)
        if not extent or any(int(e) <= 0 for e in extent):
            raise BackendError(f"Invalid global extent for {kernel_id}: {global_extent}")
        extent = tuple(int(e) for e in extent)
        if local_size is not None and (local_size <= 0 or extent[0] % local_size != 0):
            raise BackendError(
                f"Global extent {extent} of {kernel_id} is not a multiple of local size {local_size}"
            )

        for arg in args:
            if isinstance(arg, Buffer):
                self._check_access(arg, f"dispatch {kernel_id} on")

        launch_args = [arg.data if isinstance(arg, Buffer) else arg for arg in args]

        def run():
            self._launch(fn, extent, local_size, launch_args)

        self._enqueue(f"dispatch:{kernel_id}", run)

    def finish(self):
        """Run everything enqueued so far, in order. Blocks until done."""
        while self._queue:
            command = self._queue.pop(0)
            try:
                command.run()
            except BackendError:
                self.discard()
                raise
            except Exception as e:
                self.discard()
                raise BackendError(f"{command.label} failed: {e}") from e
            self.history.append(command.label)

    def discard(self):
        """Drop pending commands; pending ownership falls back to the executed state."""
        if self._queue:
            console.print(f"[yellow]Discarding {len(self._queue)} pending command(s)[/yellow]")
        self._queue.clear()
        for key, buffer in self._shared.items():
            self._pending_holder[key] = buffer.holder

    @property
    def pending(self) -> List[str]:
        return [command.label for command in self._queue]

    # Internals

    def _enqueue(self, label: str, run: Callable[[], None]):
        self._queue.append(_Command(label, run))

    def _shared_key(self, buffer: SharedBuffer) -> int:
        key = id(buffer)
        if key not in self._shared:
            raise BackendError(f"Buffer '{buffer.name}' was not created as shared")
        return key

    def _check_access(self, buffer: Buffer, action: str):
        if isinstance(buffer, SharedBuffer):
            key = self._shared_key(buffer)
            if self._pending_holder[key] != COMPUTE:
                raise BackendError(f"Cannot {action} shared buffer '{buffer.name}' without acquiring it")

    def _launch(self, fn: KernelFn, extent: Tuple[int, ...], local_size: Optional[int], args):
        rows = extent[0]
        inner = math.prod(extent[1:])
        step = max(1, self.max_lanes_per_batch // max(inner, 1))
        if local_size:
            step = max(local_size, step - step % local_size)

        inner_grid = tuple(
            np.arange(size).reshape((1,) * (axis + 1) + (size,) + (1,) * (len(extent) - axis - 2))
            for axis, size in enumerate(extent[1:])
        )
        for start in range(0, rows, step):
            stop = min(rows, start + step)
            outer = np.arange(start, stop).reshape((-1,) + (1,) * (len(extent) - 1))
            fn(LaunchContext((outer,) + inner_grid, extent, local_size), *args)
