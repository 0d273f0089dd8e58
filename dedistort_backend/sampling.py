"""
Sample position selection for tile correlation.

A regular lattice of tiles over the signal area, or tiles centred on local
maxima of the gradient magnitude, optionally on several tile sizes.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np

logger = logging.getLogger(__name__)

MIN_STEP = 8
MIN_TILE_SIZE = 32
MAX_SAMPLES = 8192
MIN_SAMPLE_SPACING_RATIO = 0.5
MAX_GRADIENT_THRESHOLD = 0.15


def integral_image(data: np.ndarray) -> np.ndarray:
    """Summed-area table padded with a leading zero row and column."""
    data = np.asarray(data, dtype=np.float64)
    integral = np.zeros((data.shape[0] + 1, data.shape[1] + 1), dtype=np.float64)
    integral[1:, 1:] = data.cumsum(axis=0).cumsum(axis=1)
    return integral


def area_average(integral: np.ndarray, x, y, w, h):
    """
    Average of the ``w x h`` rectangle with top-left ``(x, y)``.

    Works on scalars or arrays of rectangles. Rectangles are clipped to the
    image; an empty intersection averages to 0.
    """
    height = integral.shape[0] - 1
    width = integral.shape[1] - 1
    x0 = np.clip(np.asarray(x), 0, width)
    y0 = np.clip(np.asarray(y), 0, height)
    x1 = np.clip(np.asarray(x) + w, 0, width)
    y1 = np.clip(np.asarray(y) + h, 0, height)
    total = integral[y1, x1] - integral[y0, x1] - integral[y1, x0] + integral[y0, x0]
    area = (x1 - x0) * (y1 - y0)
    with np.errstate(invalid="ignore", divide="ignore"):
        avg = np.where(area > 0, total / np.maximum(area, 1), 0.0)
    if avg.ndim == 0:
        return float(avg)
    return avg


class SignalEvaluator:
    """
    O(1) tile signal checks on the reference and optional target image.

    A tile passes when both averages are strictly above the threshold; without
    a target only the reference is checked.
    """

    def __init__(self, reference: np.ndarray, target: Optional[np.ndarray] = None):
        self.ref_integral = integral_image(reference)
        self.target_integral = integral_image(target) if target is not None else None

    def ref_signal(self, x, y, w, h):
        return area_average(self.ref_integral, x, y, w, h)

    def target_signal(self, x, y, w, h):
        if self.target_integral is None:
            return np.full(np.shape(x), np.inf) if np.ndim(x) else float("inf")
        return area_average(self.target_integral, x, y, w, h)

    def passes_threshold(self, x, y, w, h, threshold: float):
        return np.logical_and(
            self.ref_signal(x, y, w, h) > threshold,
            self.target_signal(x, y, w, h) > threshold
        )


@dataclass(frozen=True)
class SamplePositions:
    """Tile centres and per-position tile sizes."""
    x: np.ndarray
    y: np.ndarray
    tile_size: np.ndarray

    @classmethod
    def uniform(cls, x, y, tile_size: int) -> "SamplePositions":
        x = np.asarray(x, dtype=np.int64)
        return cls(x, np.asarray(y, dtype=np.int64), np.full(x.shape, int(tile_size), dtype=np.int64))

    @classmethod
    def empty(cls) -> "SamplePositions":
        return cls.uniform(np.empty(0, dtype=np.int64), np.empty(0, dtype=np.int64), 0)

    @property
    def count(self) -> int:
        return int(self.x.shape[0])

    def __len__(self) -> int:
        return self.count

    def tile_sizes(self) -> List[int]:
        return sorted(int(t) for t in np.unique(self.tile_size))

    def deduplicated(self) -> "SamplePositions":
        if self.count == 0:
            return self
        stacked = np.stack([self.x, self.y, self.tile_size], axis=1)
        _, index = np.unique(stacked, axis=0, return_index=True)
        index = np.sort(index)
        return SamplePositions(self.x[index], self.y[index], self.tile_size[index])


class SamplingStrategy(ABC):
    @abstractmethod
    def select_positions(
        self,
        data: np.ndarray,
        width: int,
        height: int,
        tile_size: int,
        signal_threshold: float
    ) -> SamplePositions:
        """Choose tile centres on the reference image."""

    @abstractmethod
    def output_grid_step(self, tile_size: int, sampling: float) -> int:
        """Node spacing of the distortion map built from these samples."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass


class GridSamplingStrategy(SamplingStrategy):
    """Uniform lattice with spacing ``max(8, tile_size * sampling)``."""

    def __init__(self, sampling: float):
        self.sampling = sampling

    def select_positions(self, data, width, height, tile_size, signal_threshold):
        increment = self.output_grid_step(tile_size, self.sampling)
        xs = np.arange(0, width - tile_size + 1, increment)
        ys = np.arange(0, height - tile_size + 1, increment)
        if xs.size == 0 or ys.size == 0:
            return SamplePositions.empty()
        gx, gy = np.meshgrid(xs, ys)
        gx = gx.ravel()
        gy = gy.ravel()
        avg = area_average(integral_image(data), gx, gy, tile_size, tile_size)
        keep = avg > signal_threshold
        offset = tile_size // 2
        return SamplePositions.uniform(gx[keep] + offset, gy[keep] + offset, tile_size)

    def output_grid_step(self, tile_size, sampling):
        return int(max(MIN_STEP, tile_size * sampling))

    @property
    def name(self):
        return f"Grid (sampling={self.sampling})"


class InterestPointSamplingStrategy(SamplingStrategy):
    """
    Tiles centred on local maxima of the gradient magnitude.

    Each layer keeps strict 8-neighbour maxima above 15% of the strongest
    gradient, then applies greedy non-maximum suppression with a minimum
    spacing of half a tile, also against earlier layers. In multiscale mode the
    layers use ``2T``, ``T`` and ``max(32, T/2)`` tiles, coarse first.
    """

    def __init__(self, multiscale: bool = False):
        self.multiscale = multiscale

    def select_positions(self, data, width, height, tile_size, signal_threshold):
        data = np.asarray(data, dtype=np.float32)
        integral = integral_image(data)
        gradient = self.gradient_magnitude(data)

        points: List[Tuple[int, int, int, float]] = []
        if self.multiscale:
            self._add_layer(points, width, height, tile_size * 2, integral, gradient, signal_threshold, "coarse")
            self._add_layer(points, width, height, tile_size, integral, gradient, signal_threshold, "main")
            small = max(MIN_TILE_SIZE, tile_size // 2)
            if small < tile_size:
                self._add_layer(points, width, height, small, integral, gradient, signal_threshold, "detail")
        else:
            self._add_layer(points, width, height, tile_size, integral, gradient, signal_threshold, "uniform")

        if len(points) > MAX_SAMPLES:
            points.sort(key=lambda p: -p[3])
            del points[MAX_SAMPLES:]
            logger.debug(f"Trimmed to {MAX_SAMPLES} best samples")

        if not points:
            return SamplePositions.empty()
        arr = np.array([p[:3] for p in points], dtype=np.int64)
        positions = SamplePositions(arr[:, 0], arr[:, 1], arr[:, 2]).deduplicated()
        if logger.isEnabledFor(logging.DEBUG):
            sizes, counts = np.unique(positions.tile_size, return_counts=True)
            logger.debug(f"Layered selection: {positions.count} points, distribution: {dict(zip(sizes.tolist(), counts.tolist()))}")
        return positions

    @staticmethod
    def gradient_magnitude(data: np.ndarray) -> np.ndarray:
        data = np.ascontiguousarray(data, dtype=np.float32)
        gx = cv2.Sobel(data, cv2.CV_32F, 1, 0, ksize=3)
        gy = cv2.Sobel(data, cv2.CV_32F, 0, 1, ksize=3)
        return cv2.magnitude(gx, gy)

    def _add_layer(self, points, width, height, tile_size, integral, gradient, signal_threshold, layer_name):
        half = tile_size // 2
        min_spacing = int(tile_size * MIN_SAMPLE_SPACING_RATIO)
        if height - 2 * half <= 0 or width - 2 * half <= 0:
            return
        y0, y1 = max(half, 1), min(height - half, height - 1)
        x0, x1 = max(half, 1), min(width - half, width - 1)
        if y1 <= y0 or x1 <= x0:
            return

        max_gradient = float(gradient[half:height - half, half:width - half].max())
        threshold = max_gradient * MAX_GRADIENT_THRESHOLD

        center = gradient[y0:y1, x0:x1]
        is_max = center >= threshold
        for oy in (-1, 0, 1):
            for ox in (-1, 0, 1):
                if oy == 0 and ox == 0:
                    continue
                neighbour = gradient[y0 + oy:y1 + oy, x0 + ox:x1 + ox]
                is_max &= center > neighbour
        cy, cx = np.nonzero(is_max)
        cy = cy + y0
        cx = cx + x0
        if cx.size:
            avg = area_average(integral, cx - half, cy - half, tile_size, tile_size)
            keep = avg >= signal_threshold
            cx, cy = cx[keep], cy[keep]
        scores = gradient[cy, cx]
        logger.debug(f"Layer '{layer_name}': {cx.size} local maxima above {int(MAX_GRADIENT_THRESHOLD * 100)}% threshold")

        # Bucket grid with cell size min_spacing: only neighbouring cells can conflict
        cell = max(1, min_spacing)
        occupied: Dict[Tuple[int, int], List[Tuple[int, int]]] = {}
        for px, py, _, _ in points:
            occupied.setdefault((px // cell, py // cell), []).append((px, py))

        limit = min_spacing * min_spacing
        added = 0
        for i in np.argsort(-scores, kind="stable"):
            px, py = int(cx[i]), int(cy[i])
            kx, ky = px // cell, py // cell
            too_close = False
            for bx in (kx - 1, kx, kx + 1):
                for by in (ky - 1, ky, ky + 1):
                    for ex, ey in occupied.get((bx, by), ()):
                        if (px - ex) ** 2 + (py - ey) ** 2 < limit:
                            too_close = True
                            break
                    if too_close:
                        break
                if too_close:
                    break
            if not too_close:
                occupied.setdefault((kx, ky), []).append((px, py))
                points.append((px, py, tile_size, float(scores[i])))
                added += 1
        logger.debug(f"Layer '{layer_name}': added {added} tiles of size {tile_size} (min_spacing={min_spacing})")

    def output_grid_step(self, tile_size, sampling):
        return tile_size

    @property
    def name(self):
        return f"InterestPoint (multiscale={self.multiscale})"


def create_sampling_strategy(use_sparse: bool, sampling: float, multiscale: bool = False) -> SamplingStrategy:
    if use_sparse:
        return InterestPointSamplingStrategy(multiscale)
    return GridSamplingStrategy(sampling)
