"""
Scattered displacement samples with k-nearest-neighbour interpolation.

Interest-point sampling yields displacements at irregular positions. The
field answers queries anywhere in the image from the ``k`` nearest samples
and is converted to a regular ``DistortionMap`` for warping.
"""

import logging
from enum import Enum
from typing import Optional

import numpy as np
from scipy.spatial import cKDTree

from dedistort_backend.distortion_map import DistortionMap

logger = logging.getLogger(__name__)

DEFAULT_NEIGHBORS_K = 12
DEFAULT_RBF_EPSILON = 0.01
DEFAULT_IDW_POWER = 2.0
DEFAULT_BASE_TILE_SIZE = 64
EXACT_HIT = 1e-10


class InterpolationMethod(Enum):
    IDW = "idw"
    RBF_GAUSSIAN = "rbf_gaussian"
    RBF_THIN_PLATE = "rbf_thin_plate"


class SparseDistortionField:
    """
    Immutable set of displacement samples indexed by a k-d tree.

    Build instances with ``SparseDistortionField.builder(width, height)``.
    """

    def __init__(
        self,
        width: int,
        height: int,
        x: np.ndarray,
        y: np.ndarray,
        dx: np.ndarray,
        dy: np.ndarray,
        tile_size: np.ndarray,
        confidence: np.ndarray,
        neighbors_k: int = DEFAULT_NEIGHBORS_K,
        base_tile_size: int = DEFAULT_BASE_TILE_SIZE,
        use_tile_weighting: bool = False,
        method: InterpolationMethod = InterpolationMethod.RBF_THIN_PLATE,
        rbf_epsilon: float = DEFAULT_RBF_EPSILON,
        idw_power: float = DEFAULT_IDW_POWER
    ):
        self.width = width
        self.height = height
        self.x = x
        self.y = y
        self.dx = dx
        self.dy = dy
        self.tile_size = tile_size
        self.confidence = confidence
        self.neighbors_k = max(1, int(neighbors_k))
        self.base_tile_size = base_tile_size
        self.use_tile_weighting = use_tile_weighting
        self.method = method
        self.rbf_epsilon = rbf_epsilon
        self.idw_power = idw_power
        self._tree = cKDTree(np.column_stack([x, y])) if x.size else None

    @staticmethod
    def builder(width: int, height: int) -> "SparseDistortionFieldBuilder":
        return SparseDistortionFieldBuilder(width, height)

    @property
    def sample_count(self) -> int:
        return int(self.x.shape[0])

    def query(self, px: float, py: float):
        d = self.query_many(np.array([[px, py]], dtype=np.float64))[0]
        return float(d[0]), float(d[1])

    def query_many(self, points: np.ndarray) -> np.ndarray:
        """
        Interpolated displacements at ``points``.

        Args:
            points: Array (m, 2) of (x, y) pixel positions

        Returns:
            Array (m, 2) of (dx, dy)
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        result = np.zeros((points.shape[0], 2), dtype=np.float64)
        if self._tree is None or points.shape[0] == 0:
            return result

        k = min(self.neighbors_k, self.sample_count)
        dist, idx = self._tree.query(points, k=k)
        if k == 1:
            dist = dist[:, None]
            idx = idx[:, None]
        dist_sq = dist * dist
        ratio = self.tile_size[idx] / float(self.base_tile_size)

        if self.method is InterpolationMethod.IDW:
            weights = 1.0 / np.power(np.maximum(dist, EXACT_HIT), self.idw_power)
        elif self.method is InterpolationMethod.RBF_GAUSSIAN:
            epsilon = self.rbf_epsilon / ratio if self.use_tile_weighting else self.rbf_epsilon
            weights = np.exp(-(epsilon * epsilon) * dist_sq)
        else:
            with np.errstate(divide="ignore", invalid="ignore"):
                phi = np.where(dist_sq > 0, dist_sq * np.log(np.sqrt(np.maximum(dist_sq, EXACT_HIT))), 0.0)
            weights = 1.0 / (1.0 + np.abs(phi))
            if self.use_tile_weighting:
                weights = weights * ratio * ratio

        sdx = self.dx[idx]
        sdy = self.dy[idx]
        total = weights.sum(axis=1)
        ok = total >= EXACT_HIT
        safe_total = np.where(ok, total, 1.0)
        result[:, 0] = np.where(ok, (weights * sdx).sum(axis=1) / safe_total, 0.0)
        result[:, 1] = np.where(ok, (weights * sdy).sum(axis=1) / safe_total, 0.0)

        if self.method is not InterpolationMethod.RBF_GAUSSIAN:
            # An exact hit returns the sample itself
            hit = dist_sq[:, 0] < EXACT_HIT
            result[hit, 0] = sdx[hit, 0]
            result[hit, 1] = sdy[hit, 0]
        return result

    def to_regular_grid(self, step: int, **filter_options) -> DistortionMap:
        """
        Sample the field on a regular grid and clean it up.

        Every node ``(gx * step, gy * step)`` is queried, then the map goes
        through ``filter_and_smooth`` with ``filter_options``.
        """
        dmap = DistortionMap(self.width, self.height, step, step)
        px, py = dmap.node_positions()
        values = self.query_many(np.column_stack([px, py]))
        dmap.grid = values.reshape(dmap.rows, dmap.cols, 2)
        dmap.sampled[:] = True
        return dmap.filter_and_smooth(**filter_options)

    def total_distorsion(self) -> float:
        return float(np.hypot(self.dx, self.dy).sum())

    def __repr__(self) -> str:
        return f"SparseDistortionField({self.sample_count} samples, {self.method.name})"


class SparseDistortionFieldBuilder:
    """Accumulates samples in growable arrays."""

    def __init__(self, width: int, height: int, capacity: int = 1024):
        self.width = width
        self.height = height
        self._capacity = max(1, capacity)
        self._data = np.zeros((self._capacity, 6), dtype=np.float64)
        self._count = 0
        self._neighbors_k = DEFAULT_NEIGHBORS_K
        self._base_tile_size = DEFAULT_BASE_TILE_SIZE
        self._use_tile_weighting = False
        self._method = InterpolationMethod.RBF_THIN_PLATE
        self._rbf_epsilon = DEFAULT_RBF_EPSILON
        self._idw_power = DEFAULT_IDW_POWER

    def _ensure_capacity(self, extra: int) -> None:
        needed = self._count + extra
        if needed <= self._capacity:
            return
        while self._capacity < needed:
            self._capacity *= 2
        grown = np.zeros((self._capacity, 6), dtype=np.float64)
        grown[:self._count] = self._data[:self._count]
        self._data = grown

    def add_sample(
        self,
        x: float,
        y: float,
        dx: float,
        dy: float,
        tile_size: int,
        confidence: float = 1.0
    ) -> "SparseDistortionFieldBuilder":
        self._ensure_capacity(1)
        self._data[self._count] = (x, y, dx, dy, tile_size, confidence)
        self._count += 1
        return self

    def add_samples(self, samples) -> "SparseDistortionFieldBuilder":
        """Add a ``DisplacementSamples`` batch."""
        n = len(samples)
        self._ensure_capacity(n)
        block = np.column_stack([
            samples.x, samples.y, samples.dx, samples.dy, samples.tile_size, samples.confidence
        ]) if n else np.zeros((0, 6))
        self._data[self._count:self._count + n] = block
        self._count += n
        return self

    def neighbors_k(self, k: int) -> "SparseDistortionFieldBuilder":
        self._neighbors_k = k
        return self

    def base_tile_size(self, tile_size: int) -> "SparseDistortionFieldBuilder":
        self._base_tile_size = tile_size
        return self

    def use_tile_weighting(self, enabled: bool) -> "SparseDistortionFieldBuilder":
        self._use_tile_weighting = enabled
        return self

    def interpolation_method(self, method: InterpolationMethod) -> "SparseDistortionFieldBuilder":
        self._method = InterpolationMethod(method)
        return self

    def rbf_epsilon(self, epsilon: float) -> "SparseDistortionFieldBuilder":
        self._rbf_epsilon = epsilon
        return self

    def idw_power(self, power: float) -> "SparseDistortionFieldBuilder":
        self._idw_power = power
        return self

    def build(self) -> SparseDistortionField:
        data = self._data[:self._count]
        field = SparseDistortionField(
            self.width,
            self.height,
            x=data[:, 0].copy(),
            y=data[:, 1].copy(),
            dx=data[:, 2].copy(),
            dy=data[:, 3].copy(),
            tile_size=data[:, 4].copy(),
            confidence=data[:, 5].copy(),
            neighbors_k=self._neighbors_k,
            base_tile_size=self._base_tile_size,
            use_tile_weighting=self._use_tile_weighting,
            method=self._method,
            rbf_epsilon=self._rbf_epsilon,
            idw_power=self._idw_power
        )
        logger.debug(f"Built {field}")
        return field
