"""
Accelerator abstraction for batched correlation and warping.

A ``DeviceContext`` owns buffers on a compute device. All device operations
must run inside ``context.session()``, a scoped lock that serialises device
access between threads; calling them without a session raises
``AcceleratorError``.

``ArrayDeviceContext`` implements the context over an array module:
``numpy`` (host memory standing in for a device) or ``cupy`` when a CUDA
device is present.
"""

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Hashable, Optional

import numpy as np

from dedistort_backend.correlation import HannWindowCache, TileCorrelator
from dedistort_backend.distortion_map import DistortionMap, warp_image
from dedistort_runner.error_handling import AcceleratorError, PreconditionError
from dedistort_runner.resources import total_host_memory

try:
    import cupy as cp
except Exception:
    cp = None

logger = logging.getLogger(__name__)

SUPPORTED_TILE_SIZES = (32, 64, 128)
MIN_TILES_FOR_DEVICE = 100
BYTES_PER_TILE_PIXEL = 36
MIN_BATCH_SIZE = 100
MIN_CACHE_IMAGES = 2
RESERVED_FRACTION = 0.3
USABLE_FRACTION = 0.5


@dataclass(frozen=True)
class DeviceCapabilities:
    name: str
    global_mem_size: int
    max_mem_alloc_size: int


def bytes_per_tile(tile_size: int) -> int:
    return tile_size * tile_size * BYTES_PER_TILE_PIXEL


def compute_batch_size(tile_size: int, capabilities: Optional[DeviceCapabilities] = None) -> int:
    """
    Tiles per correlation batch.

    Derived from the fixed maximum allocation size of the device (host memory
    without a device), never from currently free memory, so the batching of
    a run does not depend on what else is running.
    """
    max_alloc = capabilities.max_mem_alloc_size if capabilities else total_host_memory()
    return max(MIN_BATCH_SIZE, int(max_alloc * USABLE_FRACTION) // bytes_per_tile(tile_size))


class GPUMemoryBudget:
    """
    Number of images that can stay resident on the device.

    Part of the global memory is reserved for correlation batches: at least
    one full batch, and no less than 30% of the device. Half of the rest holds
    float32 images.
    """

    def __init__(self, capabilities: DeviceCapabilities, tile_size: int, max_tiles_per_batch: int):
        self.capabilities = capabilities
        self.tile_size = tile_size
        self.max_tiles_per_batch = max_tiles_per_batch
        self.bytes_per_tile = bytes_per_tile(tile_size)
        self.reserved = max(
            max_tiles_per_batch * self.bytes_per_tile,
            int(RESERVED_FRACTION * capabilities.global_mem_size)
        )
        self.available = max(0, int((capabilities.global_mem_size - self.reserved) * USABLE_FRACTION))

    def max_resident_images(self, width: int, height: int) -> int:
        return int(self.available // (width * height * 4))

    def fits(self, count: int, width: int, height: int) -> bool:
        return self.max_resident_images(width, height) >= count

    def batch_size(self) -> int:
        return compute_batch_size(self.tile_size, self.capabilities)


class DeviceSession:
    """Scoped exclusive access to a device context."""

    def __init__(self, context: "DeviceContext"):
        self._context = context

    def __enter__(self) -> "DeviceSession":
        self._context._acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self._context._release()


class DeviceContext(ABC):
    def __init__(self, capabilities: DeviceCapabilities):
        self.capabilities = capabilities
        self._lock = threading.RLock()
        self._owner = threading.local()
        self.errors = []

    def session(self) -> DeviceSession:
        return DeviceSession(self)

    def _acquire(self) -> None:
        self._lock.acquire()
        self._owner.depth = getattr(self._owner, "depth", 0) + 1

    def _release(self) -> None:
        self._owner.depth -= 1
        self._lock.release()

    def in_session(self) -> bool:
        return getattr(self._owner, "depth", 0) > 0

    def require_session(self) -> None:
        if not self.in_session():
            raise AcceleratorError("device operation outside of a device session")

    def supports_tile_size(self, tile_size: int) -> bool:
        return tile_size in SUPPORTED_TILE_SIZES

    def record_error(self, where: str, error: BaseException) -> None:
        self.errors.append((where, error))
        logger.warning(f"Device error in {where}: {error}")

    @abstractmethod
    def allocate(self, shape) -> int:
        """Allocate a zeroed float32 buffer and return its handle."""

    @abstractmethod
    def write(self, handle: int, data: np.ndarray) -> None:
        pass

    @abstractmethod
    def read(self, handle: int) -> np.ndarray:
        pass

    @abstractmethod
    def release(self, handle: int) -> None:
        pass

    def upload(self, data: np.ndarray) -> int:
        handle = self.allocate(np.shape(data))
        self.write(handle, data)
        return handle

    @abstractmethod
    def batched_correlation(self, ref_handle: int, target_handle: int, x, y, tile_size: int) -> np.ndarray:
        """
        Correlate tiles centred on ``(x, y)`` between two resident buffers.

        Returns:
            Host array (n, 3) of (dx, dy, confidence)
        """

    @abstractmethod
    def warp(self, handle: int, dmap: DistortionMap) -> None:
        """Warp a resident buffer in place."""


class ArrayDeviceContext(DeviceContext):
    def __init__(
        self,
        xp: Any = np,
        capabilities: Optional[DeviceCapabilities] = None,
        window_cache: Optional[HannWindowCache] = None
    ):
        if capabilities is None:
            capabilities = detect_capabilities(xp)
        super().__init__(capabilities)
        self.xp = xp
        self.correlator = TileCorrelator(window_cache, xp=xp)
        self._buffers: Dict[int, Any] = {}
        self._handles = itertools.count(1)

    def _buffer(self, handle: int):
        try:
            return self._buffers[handle]
        except KeyError:
            raise AcceleratorError(f"unknown device buffer {handle}") from None

    def _to_host(self, array) -> np.ndarray:
        if self.xp is np:
            return np.asarray(array)
        return self.xp.asnumpy(array)

    def allocate(self, shape) -> int:
        self.require_session()
        handle = next(self._handles)
        try:
            self._buffers[handle] = self.xp.zeros(tuple(shape), dtype=self.xp.float32)
        except MemoryError as e:
            raise AcceleratorError(f"cannot allocate device buffer of shape {tuple(shape)}", e) from e
        return handle

    def write(self, handle: int, data: np.ndarray) -> None:
        self.require_session()
        buffer = self._buffer(handle)
        if buffer.shape != np.shape(data):
            raise AcceleratorError(f"buffer {handle} has shape {buffer.shape}, got {np.shape(data)}")
        buffer[...] = self.xp.asarray(data, dtype=self.xp.float32)

    def read(self, handle: int) -> np.ndarray:
        self.require_session()
        return self._to_host(self._buffer(handle)).astype(np.float32, copy=True)

    def release(self, handle: int) -> None:
        self.require_session()
        self._buffers.pop(handle, None)

    @property
    def buffer_count(self) -> int:
        return len(self._buffers)

    def _extract_tiles(self, buffer, x, y, tile_size: int):
        xp = self.xp
        half = tile_size // 2
        offsets = xp.arange(tile_size)
        x0 = xp.asarray(np.asarray(x, dtype=np.int64) - half)
        y0 = xp.asarray(np.asarray(y, dtype=np.int64) - half)
        rows = y0[:, None, None] + offsets[None, :, None]
        cols = x0[:, None, None] + offsets[None, None, :]
        return buffer[rows, cols]

    def batched_correlation(self, ref_handle, target_handle, x, y, tile_size):
        self.require_session()
        if not self.supports_tile_size(tile_size):
            raise AcceleratorError(f"tile size {tile_size} not supported by {self.capabilities.name}")
        ref_tiles = self._extract_tiles(self._buffer(ref_handle), x, y, tile_size)
        target_tiles = self._extract_tiles(self._buffer(target_handle), x, y, tile_size)
        return self._to_host(self.correlator.correlate_batch(ref_tiles, target_tiles))

    def warp(self, handle, dmap):
        self.require_session()
        buffer = self._buffer(handle)
        if self.xp is np:
            buffer[...] = warp_image(buffer, dmap)
            return
        from cupyx.scipy import ndimage as cnd
        xp = self.xp
        height, width = buffer.shape
        dx, dy = dmap.displacement_field(width, height)
        yy, xx = xp.mgrid[0:height, 0:width].astype(xp.float32)
        coords = xp.stack([yy + xp.asarray(dy), xx + xp.asarray(dx)])
        buffer[...] = cnd.map_coordinates(buffer, coords, order=1, mode="nearest")


class GPUImageCache:
    """
    LRU of resident image buffers keyed by image index.

    Mutated only inside a device session; the least recently used buffer is
    released when an upload would exceed the capacity.
    """

    def __init__(self, context: DeviceContext, capacity: int):
        if capacity < MIN_CACHE_IMAGES:
            raise AcceleratorError(f"image cache needs room for at least {MIN_CACHE_IMAGES} images, got {capacity}")
        self.context = context
        self.capacity = capacity
        self._entries: "OrderedDict[Hashable, int]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def contains(self, key: Hashable) -> bool:
        return key in self._entries

    def get(self, key: Hashable) -> Optional[int]:
        handle = self._entries.get(key)
        if handle is not None:
            self._entries.move_to_end(key)
        return handle

    def get_or_upload(self, key: Hashable, data: np.ndarray) -> int:
        self.context.require_session()
        handle = self.get(key)
        if handle is not None:
            return handle
        while len(self._entries) >= self.capacity:
            self.evict()
        handle = self.context.upload(data)
        self._entries[key] = handle
        return handle

    def replace_buffer(self, key: Hashable, data: np.ndarray) -> int:
        """Overwrite the resident data of ``key``, uploading it if absent."""
        self.context.require_session()
        handle = self.get(key)
        if handle is None:
            return self.get_or_upload(key, data)
        self.context.write(handle, data)
        return handle

    def evict(self, key: Optional[Hashable] = None) -> None:
        self.context.require_session()
        if not self._entries:
            return
        if key is None:
            key, handle = self._entries.popitem(last=False)
        else:
            handle = self._entries.pop(key, None)
            if handle is None:
                return
        self.context.release(handle)
        logger.debug(f"Evicted image {key} from device cache")

    def release_all(self) -> None:
        self.context.require_session()
        while self._entries:
            self.evict()


def detect_capabilities(xp: Any = np) -> DeviceCapabilities:
    if xp is np:
        total = total_host_memory()
        return DeviceCapabilities(name="host", global_mem_size=total, max_mem_alloc_size=total // 4)
    device = xp.cuda.Device()
    _, total = device.mem_info
    return DeviceCapabilities(name=f"cuda:{device.id}", global_mem_size=int(total), max_mem_alloc_size=int(total) // 4)


def get_device_context(config, window_cache: Optional[HannWindowCache] = None) -> Optional[DeviceContext]:
    """
    Device context for a ``DeviceConfig``, or None when disabled.

    An unavailable CUDA backend is logged and yields None so processing runs
    on the CPU.
    """
    if not config.enabled:
        return None
    backend = config.backend
    if backend == "numpy":
        return ArrayDeviceContext(np, window_cache=window_cache)
    if backend == "cupy":
        if cp is None:
            logger.warning("cupy backend requested but cupy is not installed, using CPU")
            return None
        try:
            return ArrayDeviceContext(cp, window_cache=window_cache)
        except Exception as e:
            logger.warning(f"cupy device unavailable ({e}), using CPU")
            return None
    raise PreconditionError(f"unknown device backend '{backend}'")
