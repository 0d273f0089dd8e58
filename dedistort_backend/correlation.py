"""
Tile correlation in the frequency domain.

Sign convention: for a reference tile ``ref`` and a target tile whose content
is the reference content moved by ``(sx, sy)`` (``target(p) = ref(p - s)``),
the correlator returns ``(dx, dy) = (sx, sy)``. A target pixel at ``p + d``
holds what the reference holds at ``p``, so sampling the target at ``p + d``
registers it onto the reference.

Internally the cross-power spectrum is ``F(ref) * conj(F(target))``; its peak
sits at ``-s`` after the FFT shift, and the displacement is the negated peak
offset.

The batched functions take an array module (``numpy`` or ``cupy``) so the
same code runs on host and device arrays.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

# Below this edge length direct cross-correlation is used
PHASE_CORRELATION_MIN_SIZE = 32
MAGNITUDE_FLOOR = 1e-20
LOG_FLOOR = 1e-10
# Width of the Gaussian peak produced by the spectral weighting, in pixels
PEAK_SIGMA = 1.0
# Re-correlations with the target window moved to the running estimate
REFINEMENT_PASSES = 4


class HannWindowCache:
    """
    Memo of separable 2-D Hann windows and spectral peak weights by tile size.

    Safe for concurrent lookups; one instance is shared by every correlator of
    a run.
    """

    def __init__(self):
        self._windows: Dict[int, np.ndarray] = {}
        self._peak_weights: Dict[int, np.ndarray] = {}
        self._lock = threading.Lock()

    def window(self, size: int) -> np.ndarray:
        window = self._windows.get(size)
        if window is None:
            with self._lock:
                window = self._windows.get(size)
                if window is None:
                    window = hann_window_2d(size)
                    self._windows[size] = window
        return window

    def peak_weight(self, size: int) -> np.ndarray:
        weight = self._peak_weights.get(size)
        if weight is None:
            with self._lock:
                weight = self._peak_weights.get(size)
                if weight is None:
                    f = np.fft.fftfreq(size)
                    f2 = f[:, None] ** 2 + f[None, :] ** 2
                    weight = np.exp(-2.0 * np.pi ** 2 * PEAK_SIGMA ** 2 * f2)
                    self._peak_weights[size] = weight
        return weight

    def __len__(self) -> int:
        return len(self._windows)


def hann_window_2d(size: int) -> np.ndarray:
    """Outer product of ``0.5 * (1 - cos(2*pi*i / (size - 1)))``."""
    if size < 2:
        return np.ones((size, size), dtype=np.float64)
    i = np.arange(size, dtype=np.float64)
    w = 0.5 * (1.0 - np.cos(2.0 * np.pi * i / (size - 1)))
    return np.outer(w, w)


def shifted_hann_windows(size: int, shift, xp=np):
    """
    1-D Hann windows moved by ``shift`` pixels, one row per entry.

    Samples falling outside the original support are zero.
    """
    t = xp.arange(size, dtype=xp.float64)[None, :] - xp.asarray(shift, dtype=xp.float64)[:, None]
    w = 0.5 * (1.0 - xp.cos(2.0 * np.pi * t / max(size - 1, 1)))
    return xp.where((t >= 0) & (t <= size - 1), w, 0.0)


@dataclass(frozen=True)
class ShiftResult:
    dx: float
    dy: float
    confidence: float


def fft_shift(surface, xp=np):
    """Move the zero lag to ``(rows // 2, cols // 2)`` on the last two axes."""
    return xp.fft.fftshift(surface, axes=(-2, -1))


def find_max_index(surface: np.ndarray) -> Tuple[int, int]:
    """Peak of a correlation surface, ties resolved towards the centre."""
    py, px = find_max_indices(surface[None, :, :])
    return int(py[0]), int(px[0])


def find_max_indices(surfaces, xp=np):
    n, rows, cols = surfaces.shape
    yy, xx = xp.mgrid[0:rows, 0:cols]
    dist = ((yy - rows // 2) ** 2 + (xx - cols // 2) ** 2).astype(xp.float64)
    peaks = surfaces.reshape(n, -1).max(axis=1)
    ties = surfaces == peaks[:, None, None]
    flat = xp.where(ties, dist[None, :, :], xp.inf).reshape(n, -1).argmin(axis=1)
    return flat // cols, flat % cols


def fit_gaussian_2d(surface: np.ndarray, py: int, px: int) -> Tuple[float, float]:
    """
    Sub-pixel offset of a peak from a parabola fit in log magnitude.

    Uses the 3-point cross around ``(py, px)``. Values are floored at 1e-10
    before the logarithm; peaks on the border or flat neighbourhoods give no
    correction. Offsets are clamped to +/-1 pixel.

    Returns:
        Tuple (offset_y, offset_x)
    """
    oy, ox = fit_gaussian_batch(surface[None, :, :], np.array([py]), np.array([px]))
    return float(oy[0]), float(ox[0])


def fit_gaussian_batch(surfaces, py, px, xp=np):
    n, rows, cols = surfaces.shape
    inside = (py > 0) & (py < rows - 1) & (px > 0) & (px < cols - 1)
    idx = xp.arange(n)
    pyc = xp.clip(py, 1, rows - 2)
    pxc = xp.clip(px, 1, cols - 2)

    def log_at(yy, xx):
        return xp.log(xp.maximum(surfaces[idx, yy, xx], LOG_FLOOR))

    c = log_at(pyc, pxc)
    north = log_at(pyc - 1, pxc)
    south = log_at(pyc + 1, pxc)
    west = log_at(pyc, pxc - 1)
    east = log_at(pyc, pxc + 1)

    denom_y = 2.0 * (north + south - 2.0 * c)
    denom_x = 2.0 * (west + east - 2.0 * c)
    ok_y = inside & (xp.abs(denom_y) > 1e-10)
    ok_x = inside & (xp.abs(denom_x) > 1e-10)
    offset_y = xp.where(ok_y, (north - south) / xp.where(ok_y, denom_y, 1.0), 0.0)
    offset_x = xp.where(ok_x, (west - east) / xp.where(ok_x, denom_x, 1.0), 0.0)
    return xp.clip(offset_y, -1.0, 1.0), xp.clip(offset_x, -1.0, 1.0)


def peak_confidence(surface: np.ndarray, py: int, px: int) -> float:
    """
    Peak sharpness in [0, 1] from the peak-to-sidelobe ratio.

    The sidelobe is the highest value outside the 3x3 peak neighbourhood.
    """
    peak = float(surface[py, px])
    mean = float(surface.mean())
    mask = np.ones(surface.shape, dtype=bool)
    mask[max(0, py - 1):py + 2, max(0, px - 1):px + 2] = False
    if not mask.any():
        return 0.0
    second = float(surface[mask].max())
    psr = (peak - mean) / (second - mean + 1e-10)
    return float(np.clip(1.0 - 1.0 / (1.0 + psr * 0.5), 0.0, 1.0))


class TileCorrelator:
    """
    Displacement and confidence for pairs of equally sized tiles.

    Tiles with an edge of at least 32 pixels use phase correlation: both tiles
    are Hann windowed, the cross-power spectrum is normalised to unit
    magnitude (bins with squared magnitude <= 1e-20 are zeroed) and weighted
    by a Gaussian so that the correlation peak is Gaussian shaped. A window
    fixed on both tiles pulls the estimate towards zero shift, so the
    correlation is repeated ``REFINEMENT_PASSES`` times with the target window
    moved to the current estimate; the windowed tiles are then translates of
    each other and the peak lands on the true shift. Smaller tiles use the raw
    cross-correlation of the zero-mean tiles.

    The batched path returns a normalised cross-correlation confidence: the
    peak of the cross-correlation of the windowed zero-mean tiles divided by
    their windowed energies, clipped to [0, 1].
    """

    def __init__(self, window_cache: Optional[HannWindowCache] = None, xp=np):
        self.window_cache = window_cache if window_cache is not None else HannWindowCache()
        self.xp = xp

    def correlate(self, ref_tile: np.ndarray, target_tile: np.ndarray) -> ShiftResult:
        """Single tile pair with peak-sharpness confidence (host arrays)."""
        ref = np.asarray(ref_tile, dtype=np.float64)
        target = np.asarray(target_tile, dtype=np.float64)
        dx, dy, surfaces = self._estimate(ref[None], target[None], np)
        surface = surfaces[0]
        py, px = find_max_index(surface)
        return ShiftResult(dx=float(dx[0]), dy=float(dy[0]), confidence=peak_confidence(surface, py, px))

    def best_shift(self, ref_tile: np.ndarray, target_tile: np.ndarray) -> Tuple[float, float]:
        result = self.correlate(ref_tile, target_tile)
        return result.dx, result.dy

    def correlate_batch(self, ref_tiles, target_tiles):
        """
        Correlate a stack of tile pairs of one size.

        Args:
            ref_tiles: Reference tiles, shape (n, T, T)
            target_tiles: Target tiles, shape (n, T, T)

        Returns:
            Array (n, 3) of (dx, dy, confidence), in the correlator's array module
        """
        xp = self.xp
        ref = xp.asarray(ref_tiles, dtype=xp.float64)
        target = xp.asarray(target_tiles, dtype=xp.float64)
        if ref.shape != target.shape or ref.ndim != 3 or ref.shape[1] != ref.shape[2]:
            raise ValueError(f"tile stacks must be (n, T, T) and equal, got {ref.shape} and {target.shape}")
        n = ref.shape[0]
        if n == 0:
            return xp.zeros((0, 3))

        dx, dy, _ = self._estimate(ref, target, xp)
        result = xp.empty((n, 3))
        result[:, 0] = dx
        result[:, 1] = dy
        result[:, 2] = ncc_confidence(ref, target, self.window_cache, xp)
        return result

    def _estimate(self, ref, target, xp):
        surfaces = correlation_surfaces(ref, target, self.window_cache, xp)
        dx, dy = surface_displacements(surfaces, xp)
        if ref.shape[-1] < PHASE_CORRELATION_MIN_SIZE:
            return dx, dy, surfaces
        limit = ref.shape[-1] / 2.0
        for _ in range(REFINEMENT_PASSES):
            surfaces = phase_correlation_surfaces(
                ref, target, self.window_cache, xp,
                shift_x=xp.clip(dx, -limit, limit),
                shift_y=xp.clip(dy, -limit, limit)
            )
            dx, dy = surface_displacements(surfaces, xp)
        return dx, dy, surfaces


def surface_displacements(surfaces, xp=np):
    """Displacements ``(dx, dy)`` from the sub-pixel peaks of centred surfaces."""
    _, rows, cols = surfaces.shape
    py, px = find_max_indices(surfaces, xp)
    oy, ox = fit_gaussian_batch(surfaces, py, px, xp)
    return -(px - cols // 2 + ox), -(py - rows // 2 + oy)


def cross_correlation_surfaces(ref, target, xp=np):
    """Raw cross-correlation of the zero-mean tiles, zero lag at the centre."""
    ref = ref - ref.mean(axis=(-2, -1), keepdims=True)
    target = target - target.mean(axis=(-2, -1), keepdims=True)
    cross = xp.fft.fft2(ref) * xp.conj(xp.fft.fft2(target))
    return fft_shift(xp.fft.ifft2(cross).real, xp)


def phase_correlation_surfaces(ref, target, window_cache: HannWindowCache, xp=np, shift_x=None, shift_y=None):
    """
    Gaussian weighted phase correlation, zero lag at the centre.

    With ``shift_x``/``shift_y`` (one value per tile of a stack) the target
    window is moved by that displacement.
    """
    size = ref.shape[-1]
    window = xp.asarray(window_cache.window(size))
    if shift_x is None:
        target_window = window
    else:
        target_window = (shifted_hann_windows(size, shift_y, xp)[:, :, None]
                         * shifted_hann_windows(size, shift_x, xp)[:, None, :])
    cross = xp.fft.fft2(ref * window) * xp.conj(xp.fft.fft2(target * target_window))
    mag_sq = cross.real ** 2 + cross.imag ** 2
    valid = mag_sq > MAGNITUDE_FLOOR
    cross = xp.where(valid, cross / xp.sqrt(xp.where(valid, mag_sq, 1.0)), 0.0)
    cross = cross * xp.asarray(window_cache.peak_weight(size))
    return fft_shift(xp.fft.ifft2(cross).real, xp)


def correlation_surfaces(ref, target, window_cache: HannWindowCache, xp=np):
    if ref.shape[-1] < PHASE_CORRELATION_MIN_SIZE:
        return cross_correlation_surfaces(ref, target, xp)
    return phase_correlation_surfaces(ref, target, window_cache, xp)


def _peak_shift(surface: np.ndarray) -> Tuple[float, float]:
    py, px = find_max_index(surface)
    oy, ox = fit_gaussian_2d(surface, py, px)
    rows, cols = surface.shape
    return py - rows // 2 + oy, px - cols // 2 + ox


def cross_correlation_shift(ref: np.ndarray, target: np.ndarray) -> Tuple[float, float]:
    """Peak offset ``(sy, sx)`` of the raw cross-correlation."""
    ref = np.asarray(ref, dtype=np.float64)
    target = np.asarray(target, dtype=np.float64)
    return _peak_shift(cross_correlation_surfaces(ref, target))


def phase_correlation_shift(
    ref: np.ndarray,
    target: np.ndarray,
    window_cache: Optional[HannWindowCache] = None
) -> Tuple[float, float]:
    """Peak offset ``(sy, sx)`` of the windowed phase correlation."""
    if window_cache is None:
        window_cache = HannWindowCache()
    ref = np.asarray(ref, dtype=np.float64)
    target = np.asarray(target, dtype=np.float64)
    return _peak_shift(phase_correlation_surfaces(ref, target, window_cache))


def normalized_cross_correlation(ref: np.ndarray, target: np.ndarray, dx: float, dy: float) -> float:
    """
    Pearson correlation of the overlap after aligning ``target`` by the
    rounded displacement, clipped to [0, 1].
    """
    ref = np.asarray(ref, dtype=np.float64)
    target = np.asarray(target, dtype=np.float64)
    rows, cols = ref.shape
    ix, iy = int(round(dx)), int(round(dy))
    y0, y1 = max(0, -iy), min(rows, rows - iy)
    x0, x1 = max(0, -ix), min(cols, cols - ix)
    if y1 - y0 < 2 or x1 - x0 < 2:
        return 0.0
    a = ref[y0:y1, x0:x1]
    b = target[y0 + iy:y1 + iy, x0 + ix:x1 + ix]
    a = a - a.mean()
    b = b - b.mean()
    norm = np.sqrt((a * a).sum() * (b * b).sum())
    if norm <= 1e-10:
        return 0.0
    return float(np.clip((a * b).sum() / norm, 0.0, 1.0))


def ncc_confidence(ref, target, window_cache: HannWindowCache, xp=np):
    window = xp.asarray(window_cache.window(ref.shape[-1]))
    a = (ref - ref.mean(axis=(1, 2), keepdims=True)) * window
    b = (target - target.mean(axis=(1, 2), keepdims=True)) * window
    norm = xp.sqrt((a * a).sum(axis=(1, 2)) * (b * b).sum(axis=(1, 2)))
    cross = xp.fft.ifft2(xp.fft.fft2(a) * xp.conj(xp.fft.fft2(b))).real
    peak = cross.reshape(cross.shape[0], -1).max(axis=1)
    ok = norm > 1e-10
    confidence = xp.where(ok, peak / xp.where(ok, norm, 1.0), 0.0)
    return xp.clip(confidence, 0.0, 1.0)
