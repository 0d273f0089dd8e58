"""
Regular-grid distortion maps.

A map stores a displacement ``(dx, dy)`` per grid node; node ``(gx, gy)``
sits at pixel ``(gx * step, gy * step)``. Looking up a pixel interpolates the
grid bicubically. Warping an image with a map produces
``out(p) = src(p + d(p))``.

Maps are mutable only while they are being built (``record_distorsion`` and
``filter_and_smooth``); every other operation returns a new map.
"""

import io
import logging
import math
import struct
import warnings
from typing import BinaryIO, Iterable, Iterator, List, Optional, Sequence, Tuple

import cv2
import numpy as np
from numpy.lib.stride_tricks import sliding_window_view
from scipy import ndimage

from dedistort_runner.error_handling import PreconditionError

logger = logging.getLogger(__name__)

CATMULL_ROM_A = -0.5
FORMAT_VERSION = 1
MAD_SCALE = 1.4826
MIN_MAD = 0.1
MIN_TURBULENCE_SCALE = 16
MAX_TURBULENCE_SCALE = 256

_MAP_HEADER = struct.Struct(">iiii")
_INT = struct.Struct(">i")

INTERPOLATIONS = {
    "linear": cv2.INTER_LINEAR,
    "cubic": cv2.INTER_CUBIC,
    "lanczos": cv2.INTER_LANCZOS4,
}


def cubic_weight(distance):
    """Catmull-Rom kernel for a distance (scalar or array)."""
    a = CATMULL_ROM_A
    t = np.abs(np.asarray(distance, dtype=np.float64))
    near = (a + 2.0) * t ** 3 - (a + 3.0) * t ** 2 + 1.0
    far = a * t ** 3 - 5.0 * a * t ** 2 + 8.0 * a * t - 4.0 * a
    return np.where(t <= 1.0, near, np.where(t < 2.0, far, 0.0))


def _axis_taps(coords: np.ndarray, n: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Neighbour indices and weights of grid coordinates along one axis.

    Returns:
        Tuple (indices (m, 4), weights (m, 4), valid (m,)); coordinates outside
        ``[0, n - 1)`` are invalid and get zero weights
    """
    coords = np.asarray(coords, dtype=np.float64)
    valid = (coords >= 0) & (coords < n - 1)
    base = np.floor(coords).astype(np.int64)
    t = coords - base
    offsets = np.arange(-1, 3)
    indices = np.clip(base[:, None] + offsets[None, :], 0, n - 1)
    weights = cubic_weight(t[:, None] - offsets[None, :])
    weights[~valid] = 0.0
    return indices, weights, valid


def _axis_matrix(coords: np.ndarray, n: int) -> np.ndarray:
    indices, weights, _ = _axis_taps(coords, n)
    matrix = np.zeros((coords.shape[0], n), dtype=np.float64)
    rows = np.repeat(np.arange(coords.shape[0]), 4)
    np.add.at(matrix, (rows, indices.ravel()), weights.ravel())
    return matrix


class DistortionMap:
    """Displacement grid with bicubic lookup."""

    def __init__(self, width: int, height: int, tile_size: int, step: int):
        if step <= 0:
            raise PreconditionError(f"grid step must be positive, got {step}")
        self.step = int(step)
        self.tile_size = int(tile_size)
        nx = (width + tile_size) // step + 1
        ny = (height + tile_size) // step + 1
        self.grid = np.zeros((ny, nx, 2), dtype=np.float64)
        self.sampled = np.zeros((ny, nx), dtype=bool)

    @classmethod
    def from_grid(cls, step: int, tile_size: int, grid: np.ndarray) -> "DistortionMap":
        grid = np.asarray(grid, dtype=np.float64)
        if grid.ndim != 3 or grid.shape[2] != 2:
            raise PreconditionError(f"grid must be (rows, cols, 2), got {grid.shape}")
        dmap = cls.__new__(cls)
        dmap.step = int(step)
        dmap.tile_size = int(tile_size)
        dmap.grid = grid.copy()
        dmap.sampled = np.ones(grid.shape[:2], dtype=bool)
        return dmap

    @property
    def rows(self) -> int:
        return self.grid.shape[0]

    @property
    def cols(self) -> int:
        return self.grid.shape[1]

    def same_geometry(self, other: "DistortionMap") -> bool:
        return self.step == other.step and self.grid.shape == other.grid.shape

    def _node_of(self, x, y) -> Tuple[np.ndarray, np.ndarray]:
        gx = np.clip(np.floor(np.asarray(x, dtype=np.float64) / self.step + 0.5).astype(np.int64), 0, self.cols - 1)
        gy = np.clip(np.floor(np.asarray(y, dtype=np.float64) / self.step + 0.5).astype(np.int64), 0, self.rows - 1)
        return gx, gy

    def record_distorsion(self, x: float, y: float, dx: float, dy: float) -> None:
        """Store the displacement measured at pixel ``(x, y)`` on its nearest node."""
        gx, gy = self._node_of(x, y)
        self.grid[gy, gx] = (dx, dy)
        self.sampled[gy, gx] = True

    def record_many(self, x, y, dx, dy) -> None:
        gx, gy = self._node_of(x, y)
        self.grid[gy, gx, 0] = dx
        self.grid[gy, gx, 1] = dy
        self.sampled[gy, gx] = True

    def sample(self, x, y) -> np.ndarray:
        """
        Bicubic lookup at arbitrary pixel positions.

        Args:
            x: Pixel x coordinates (array)
            y: Pixel y coordinates (array)

        Returns:
            Array (n, 2) of (dx, dy); positions outside the grid give (0, 0)
        """
        x = np.atleast_1d(np.asarray(x, dtype=np.float64))
        y = np.atleast_1d(np.asarray(y, dtype=np.float64))
        ix, wx, _ = _axis_taps(x / self.step, self.cols)
        iy, wy, _ = _axis_taps(y / self.step, self.rows)
        out = np.zeros((x.shape[0], 2), dtype=np.float64)
        for a in range(4):
            for b in range(4):
                w = (wy[:, a] * wx[:, b])[:, None]
                out += w * self.grid[iy[:, a], ix[:, b]]
        return out

    def find_distorsion(self, x: float, y: float) -> Tuple[float, float]:
        d = self.sample([x], [y])[0]
        return float(d[0]), float(d[1])

    def displacement_field(self, width: int, height: int) -> Tuple[np.ndarray, np.ndarray]:
        """Dense ``(dx, dy)`` planes of shape ``(height, width)``."""
        wx = _axis_matrix(np.arange(width) / self.step, self.cols)
        wy = _axis_matrix(np.arange(height) / self.step, self.rows)
        dx = wy @ self.grid[:, :, 0] @ wx.T
        dy = wy @ self.grid[:, :, 1] @ wx.T
        return dx.astype(np.float32), dy.astype(np.float32)

    def node_positions(self) -> Tuple[np.ndarray, np.ndarray]:
        gy, gx = np.mgrid[0:self.rows, 0:self.cols]
        return (gx * self.step).astype(np.float64).ravel(), (gy * self.step).astype(np.float64).ravel()

    def magnitudes(self) -> np.ndarray:
        return np.hypot(self.grid[:, :, 0], self.grid[:, :, 1])

    def total_distorsion(self) -> float:
        return float(self.magnitudes().sum())

    def error(self) -> float:
        """Mean displacement magnitude over the grid."""
        return float(self.magnitudes().mean())

    def _node_ranges(self, coords: np.ndarray, half: float, n: int) -> Tuple[np.ndarray, np.ndarray]:
        lo = np.ceil((coords - half) / self.step).astype(np.int64)
        hi = np.floor((coords + half) / self.step).astype(np.int64)
        lo = np.clip(lo, 0, n - 1)
        hi = np.clip(hi, -1, n - 1)
        empty = hi < lo
        nearest = np.clip(np.floor(coords / self.step + 0.5).astype(np.int64), 0, n - 1)
        lo = np.where(empty, nearest, lo)
        hi = np.where(empty, nearest, hi)
        return lo, hi

    def tile_error_field(self, width: int, height: int, tile_size: int) -> np.ndarray:
        """
        Local error around every pixel.

        Mean magnitude of the nodes within ``tile_size / 2`` of the pixel on
        both axes, or the nearest node when no node falls in that window.
        """
        half = tile_size / 2.0
        lx, hx = self._node_ranges(np.arange(width, dtype=np.float64), half, self.cols)
        ly, hy = self._node_ranges(np.arange(height, dtype=np.float64), half, self.rows)
        integral = np.zeros((self.rows + 1, self.cols + 1), dtype=np.float64)
        integral[1:, 1:] = self.magnitudes().cumsum(axis=0).cumsum(axis=1)
        ly, hy = ly[:, None], hy[:, None] + 1
        lx, hx = lx[None, :], hx[None, :] + 1
        total = integral[hy, hx] - integral[ly, hx] - integral[hy, lx] + integral[ly, lx]
        count = (hy - ly) * (hx - lx)
        return total / count

    def interpolate_tile_error(self, x: float, y: float, tile_size: int) -> float:
        half = tile_size / 2.0
        lx, hx = self._node_ranges(np.array([float(x)]), half, self.cols)
        ly, hy = self._node_ranges(np.array([float(y)]), half, self.rows)
        window = self.magnitudes()[ly[0]:hy[0] + 1, lx[0]:hx[0] + 1]
        return float(window.mean())

    def copy(self) -> "DistortionMap":
        dmap = DistortionMap.from_grid(self.step, self.tile_size, self.grid)
        dmap.sampled = self.sampled.copy()
        return dmap

    def negate(self) -> "DistortionMap":
        return DistortionMap.from_grid(self.step, self.tile_size, -self.grid)

    @staticmethod
    def average(maps: Sequence["DistortionMap"]) -> "DistortionMap":
        maps = list(maps)
        if not maps:
            raise PreconditionError("cannot average an empty list of distortion maps")
        first = maps[0]
        for other in maps[1:]:
            if not first.same_geometry(other):
                raise PreconditionError(
                    f"distortion maps must share their geometry: {first} vs {other}"
                )
        grid = np.mean([m.grid for m in maps], axis=0)
        return DistortionMap.from_grid(first.step, first.tile_size, grid)

    def append(self, other: "DistortionMap") -> "DistortionMap":
        """
        Map equivalent to warping with this map, then with ``other``.

        ``d(p) = d_other(p) + d_self(p + d_other(p))`` evaluated on this map's
        nodes.
        """
        px, py = self.node_positions()
        first = other.sample(px, py)
        second = self.sample(px + first[:, 0], py + first[:, 1])
        grid = (first + second).reshape(self.rows, self.cols, 2)
        return DistortionMap.from_grid(self.step, self.tile_size, grid)

    @staticmethod
    def synthesize(
        maps: Sequence["DistortionMap"],
        width: Optional[int] = None,
        height: Optional[int] = None
    ) -> "DistortionMap":
        """
        Single map equivalent to applying ``maps`` in order.

        The result uses the finest grid among the inputs. When ``width`` and
        ``height`` are given the grid is sized for that image.
        """
        maps = list(maps)
        if not maps:
            raise PreconditionError("cannot synthesize an empty list of distortion maps")
        if len(maps) == 1:
            return maps[0].copy()
        finest = min(maps, key=lambda m: m.step)
        if width is not None and height is not None:
            result = DistortionMap(width, height, finest.tile_size, finest.step)
        else:
            result = DistortionMap.from_grid(finest.step, finest.tile_size, np.zeros_like(finest.grid))
        px, py = result.node_positions()
        qx, qy = px.copy(), py.copy()
        for dmap in reversed(maps):
            d = dmap.sample(qx, qy)
            qx += d[:, 0]
            qy += d[:, 1]
        result.grid = np.stack([qx - px, qy - py], axis=1).reshape(result.rows, result.cols, 2)
        result.sampled[:] = True
        return result

    def filter_and_smooth(
        self,
        search_radius: int = 3,
        half_window: int = 2,
        mad_threshold: float = 3.0,
        sigma: float = 1.0
    ) -> "DistortionMap":
        """
        Clean up a freshly recorded grid, in place.

        1. Unsampled nodes get the inverse-distance-squared average of the
           sampled nodes within ``search_radius``; nodes with no sampled
           neighbour stay (0, 0).
        2. Per component, values further than ``mad_threshold`` robust
           deviations from the median of their neighbours are replaced by
           that median.
        3. Separable Gaussian smoothing normalised at the grid borders.

        Returns:
            This map, with every node marked as sampled
        """
        self.fill_unsampled(search_radius)
        if half_window > 0:
            for c in range(2):
                self.grid[:, :, c] = _mad_filter(self.grid[:, :, c], half_window, mad_threshold)
        if sigma > 0:
            for c in range(2):
                self.grid[:, :, c] = _gaussian_smooth(self.grid[:, :, c], sigma)
        self.sampled[:] = True
        return self

    def fill_unsampled(self, search_radius: int = 3) -> "DistortionMap":
        """Inverse-distance-squared fill of unsampled nodes within ``search_radius``."""
        missing = ~self.sampled
        if not missing.any() or not self.sampled.any() or search_radius <= 0:
            return self
        r = int(search_radius)
        ky, kx = np.mgrid[-r:r + 1, -r:r + 1]
        d2 = (kx * kx + ky * ky).astype(np.float64)
        kernel = np.where(d2 > 0, 1.0 / np.maximum(d2, 1.0), 0.0)
        mask = self.sampled.astype(np.float64)
        weights = ndimage.convolve(mask, kernel, mode="constant", cval=0.0)
        fill = missing & (weights > 0)
        for c in range(2):
            total = ndimage.convolve(self.grid[:, :, c] * mask, kernel, mode="constant", cval=0.0)
            component = self.grid[:, :, c]
            component[fill] = total[fill] / weights[fill]
        logger.debug(f"Filled {int(fill.sum())} of {int(missing.sum())} unsampled nodes")
        return self

    def save_to(self, out: BinaryIO) -> None:
        out.write(_MAP_HEADER.pack(self.step, self.tile_size, self.rows, self.cols))
        out.write(self.grid.astype(">f8").tobytes())

    def to_bytes(self) -> bytes:
        buffer = io.BytesIO()
        self.save_to(buffer)
        return buffer.getvalue()

    @classmethod
    def load_from(cls, stream: BinaryIO) -> "DistortionMap":
        header = stream.read(_MAP_HEADER.size)
        if len(header) != _MAP_HEADER.size:
            raise ValueError("truncated distortion map header")
        step, tile_size, rows, cols = _MAP_HEADER.unpack(header)
        size = rows * cols * 2 * 8
        payload = stream.read(size)
        if len(payload) != size:
            raise ValueError(f"truncated distortion map data: expected {size} bytes, got {len(payload)}")
        grid = np.frombuffer(payload, dtype=">f8").astype(np.float64).reshape(rows, cols, 2)
        return cls.from_grid(step, tile_size, grid)

    def __repr__(self) -> str:
        return f"DistortionMap({self.cols}x{self.rows}, step={self.step}, tile_size={self.tile_size})"


def _mad_filter(values: np.ndarray, half_window: int, threshold: float) -> np.ndarray:
    size = 2 * half_window + 1
    padded = np.pad(values, half_window, mode="constant", constant_values=np.nan)
    windows = sliding_window_view(padded, (size, size)).reshape(values.shape + (size * size,))
    neighbours = np.delete(windows, (size * size) // 2, axis=-1)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        median = np.nanmedian(neighbours, axis=-1)
        mad = np.nanmedian(np.abs(neighbours - median[..., None]), axis=-1)
    scale = np.maximum(MAD_SCALE * np.nan_to_num(mad), MIN_MAD)
    outlier = np.isfinite(median) & (np.abs(values - median) > threshold * scale)
    result = values.copy()
    result[outlier] = median[outlier]
    return result


def _gaussian_smooth(values: np.ndarray, sigma: float) -> np.ndarray:
    radius = int(math.ceil(3.0 * sigma))
    x = np.arange(-radius, radius + 1, dtype=np.float64)
    kernel = np.exp(-(x * x) / (2.0 * sigma * sigma))
    ones = np.ones_like(values)
    smoothed = values
    norm = ones
    for axis in (0, 1):
        smoothed = ndimage.convolve1d(smoothed, kernel, axis=axis, mode="constant", cval=0.0)
        norm = ndimage.convolve1d(norm, kernel, axis=axis, mode="constant", cval=0.0)
    return smoothed / norm


def warp_image(data: np.ndarray, dmap: DistortionMap, interpolation: str = "linear") -> np.ndarray:
    """
    Resample ``data`` so that ``out(p) = data(p + d(p))``.

    Samples outside the image take the nearest border value.
    """
    if interpolation not in INTERPOLATIONS:
        raise PreconditionError(f"unknown interpolation '{interpolation}'")
    data = np.ascontiguousarray(data, dtype=np.float32)
    height, width = data.shape
    dx, dy = dmap.displacement_field(width, height)
    map_x = np.arange(width, dtype=np.float32)[None, :] + dx
    map_y = np.arange(height, dtype=np.float32)[:, None] + dy
    return cv2.remap(
        data, map_x, map_y,
        interpolation=INTERPOLATIONS[interpolation],
        borderMode=cv2.BORDER_REPLICATE
    )


def estimate_turbulence_scale(maps: Iterable[DistortionMap]) -> int:
    """
    Tile size for local quality estimation.

    The median tile size of the maps rounded to a power of two, within
    [16, 256]. Without maps the lower bound is returned.
    """
    sizes = [m.tile_size for m in maps if m.tile_size > 0]
    if not sizes:
        return MIN_TURBULENCE_SCALE
    median = float(np.median(sizes))
    scale = 2 ** int(round(math.log2(median)))
    return int(min(MAX_TURBULENCE_SCALE, max(MIN_TURBULENCE_SCALE, scale)))


class DistortionMaps:
    """
    Ordered, immutable list of the maps applied to an image.

    Attached to images as metadata; applying the maps in order reproduces the
    registered image from the original one.
    """

    def __init__(self, maps: Iterable[DistortionMap] = ()):
        self._maps: Tuple[DistortionMap, ...] = tuple(maps)

    @property
    def maps(self) -> Tuple[DistortionMap, ...]:
        return self._maps

    def __len__(self) -> int:
        return len(self._maps)

    def __iter__(self) -> Iterator[DistortionMap]:
        return iter(self._maps)

    def __getitem__(self, index: int) -> DistortionMap:
        return self._maps[index]

    def append(self, dmap: DistortionMap) -> "DistortionMaps":
        return DistortionMaps(self._maps + (dmap,))

    def last(self) -> Optional[DistortionMap]:
        return self._maps[-1] if self._maps else None

    def combined(self) -> DistortionMap:
        if not self._maps:
            raise PreconditionError("no distortion maps recorded")
        return DistortionMap.synthesize(self._maps)

    def apply(self, data: np.ndarray, interpolation: str = "linear") -> np.ndarray:
        for dmap in self._maps:
            data = warp_image(data, dmap, interpolation)
        return data

    def save_to(self, out: BinaryIO) -> None:
        out.write(_INT.pack(FORMAT_VERSION))
        out.write(_INT.pack(len(self._maps)))
        for dmap in self._maps:
            payload = dmap.to_bytes()
            out.write(_INT.pack(len(payload)))
            out.write(payload)

    def to_bytes(self) -> bytes:
        buffer = io.BytesIO()
        self.save_to(buffer)
        return buffer.getvalue()

    @classmethod
    def load_from(cls, stream: BinaryIO) -> "DistortionMaps":
        version = _read_int(stream)
        if version != FORMAT_VERSION:
            raise ValueError(f"unsupported distortion maps format version {version}")
        count = _read_int(stream)
        maps: List[DistortionMap] = []
        for _ in range(count):
            length = _read_int(stream)
            payload = stream.read(length)
            if len(payload) != length:
                raise ValueError("truncated distortion maps stream")
            maps.append(DistortionMap.load_from(io.BytesIO(payload)))
        return cls(maps)

    @classmethod
    def from_bytes(cls, payload: bytes) -> "DistortionMaps":
        return cls.load_from(io.BytesIO(payload))

    def __repr__(self) -> str:
        return f"DistortionMaps({len(self._maps)} maps)"


def _read_int(stream: BinaryIO) -> int:
    raw = stream.read(_INT.size)
    if len(raw) != _INT.size:
        raise ValueError("truncated distortion maps stream")
    return _INT.unpack(raw)[0]
