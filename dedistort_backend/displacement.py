"""
Displacement sampling between a reference and a target image.

Tiles centred on the sample positions are cut from both images and
correlated in size-homogeneous batches, on the device when both images are
resident there and on the CPU otherwise.
"""

import logging
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence, Tuple

import numpy as np

from dedistort_backend.correlation import TileCorrelator
from dedistort_backend.device import (
    MIN_TILES_FOR_DEVICE,
    DeviceContext,
    GPUImageCache,
    compute_batch_size,
)
from dedistort_backend.parallel import chunked, parallel_map
from dedistort_backend.sampling import SamplePositions, SignalEvaluator
from dedistort_runner.fallback_mechanism import FallbackMechanism

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DisplacementSample:
    x: float
    y: float
    dx: float
    dy: float
    tile_size: int
    confidence: float


@dataclass(frozen=True)
class DisplacementSamples:
    """Batch of displacement samples as parallel arrays."""
    x: np.ndarray
    y: np.ndarray
    dx: np.ndarray
    dy: np.ndarray
    tile_size: np.ndarray
    confidence: np.ndarray

    @classmethod
    def empty(cls) -> "DisplacementSamples":
        z = np.zeros(0, dtype=np.float64)
        return cls(z, z, z, z, np.zeros(0, dtype=np.int64), z)

    @classmethod
    def from_results(cls, x, y, tile_size: int, results: np.ndarray) -> "DisplacementSamples":
        x = np.asarray(x, dtype=np.float64)
        return cls(
            x,
            np.asarray(y, dtype=np.float64),
            results[:, 0].astype(np.float64),
            results[:, 1].astype(np.float64),
            np.full(x.shape, tile_size, dtype=np.int64),
            results[:, 2].astype(np.float64),
        )

    @classmethod
    def concatenate(cls, parts: Sequence["DisplacementSamples"]) -> "DisplacementSamples":
        parts = [p for p in parts if len(p)]
        if not parts:
            return cls.empty()
        return cls(*(np.concatenate([getattr(p, f) for p in parts]) for f in
                     ("x", "y", "dx", "dy", "tile_size", "confidence")))

    def __len__(self) -> int:
        return int(self.x.shape[0])

    def __iter__(self) -> Iterator[DisplacementSample]:
        for i in range(len(self)):
            yield DisplacementSample(
                float(self.x[i]), float(self.y[i]), float(self.dx[i]), float(self.dy[i]),
                int(self.tile_size[i]), float(self.confidence[i])
            )

    def select(self, index) -> "DisplacementSamples":
        return DisplacementSamples(
            self.x[index], self.y[index], self.dx[index], self.dy[index],
            self.tile_size[index], self.confidence[index]
        )

    def total_distorsion(self) -> float:
        return float(np.hypot(self.dx, self.dy).sum())


@dataclass
class SamplingStatistics:
    considered: int = 0
    correlated: int = 0
    rejected: int = 0
    device_batches: int = 0
    cpu_batches: int = 0


def reject_low_confidence(samples: DisplacementSamples, percentile: float) -> DisplacementSamples:
    """
    Drop the ``round(percentile * N)`` least confident samples.

    Ties are broken by position in the batch, so every removed confidence is
    lower than or equal to every retained one. The retained samples keep
    their order.
    """
    n = len(samples)
    if n == 0 or percentile <= 0:
        return samples
    remove = int(min(n, max(0, np.floor(percentile * n + 0.5))))
    if remove == 0:
        return samples
    order = np.argsort(samples.confidence, kind="stable")
    keep = np.sort(order[remove:])
    return samples.select(keep)


def extract_tiles(data: np.ndarray, x, y, tile_size: int) -> np.ndarray:
    """Stack of ``tile_size`` windows centred on ``(x, y)``, all inside ``data``."""
    half = tile_size // 2
    offsets = np.arange(tile_size)
    rows = (np.asarray(y, dtype=np.int64) - half)[:, None, None] + offsets[None, :, None]
    cols = (np.asarray(x, dtype=np.int64) - half)[:, None, None] + offsets[None, None, :]
    return data[rows, cols]


class DisplacementSampler:
    """
    Correlates reference/target tiles at sample positions.

    Args:
        correlator: CPU batched correlator
        device_context: Optional accelerator; used only when both images are
            resident in the image cache passed to ``sample``
        min_device_tiles: Smallest tile group sent to the device
        max_workers: Threads for CPU batches
    """

    def __init__(
        self,
        correlator: Optional[TileCorrelator] = None,
        device_context: Optional[DeviceContext] = None,
        min_device_tiles: int = MIN_TILES_FOR_DEVICE,
        max_workers: Optional[int] = None
    ):
        self.correlator = correlator if correlator is not None else TileCorrelator()
        self.device_context = device_context
        self.min_device_tiles = min_device_tiles
        self.max_workers = max_workers
        self.fallback = FallbackMechanism(__name__)

    def batch_size(self, tile_size: int) -> int:
        capabilities = self.device_context.capabilities if self.device_context else None
        return compute_batch_size(tile_size, capabilities)

    def sample(
        self,
        reference: np.ndarray,
        target: np.ndarray,
        positions: SamplePositions,
        signal_threshold: Optional[float] = None,
        signal_evaluator: Optional[SignalEvaluator] = None,
        rejection_percentile: float = 0.0,
        cache: Optional[GPUImageCache] = None,
        ref_key=None,
        target_key=None
    ) -> Tuple[DisplacementSamples, SamplingStatistics]:
        """
        Measure displacements at ``positions``.

        Windows running off the image are skipped. With a signal evaluator
        and threshold, tiles must pass the check on both images.

        Returns:
            Tuple (samples, statistics)
        """
        stats = SamplingStatistics(considered=positions.count)
        height, width = reference.shape
        parts: List[DisplacementSamples] = []

        for tile_size in positions.tile_sizes():
            group = positions.tile_size == tile_size
            x = positions.x[group]
            y = positions.y[group]
            half = tile_size // 2
            inside = (x - half >= 0) & (y - half >= 0) & (x - half + tile_size <= width) & (y - half + tile_size <= height)
            if signal_evaluator is not None and signal_threshold is not None:
                inside &= signal_evaluator.passes_threshold(x - half, y - half, tile_size, tile_size, signal_threshold)
            x = x[inside]
            y = y[inside]
            if x.size == 0:
                continue

            if self._device_eligible(tile_size, x.size, cache, ref_key, target_key):
                results = self.fallback.execute_with_fallback(
                    self._correlate_on_device,
                    lambda *_: self._correlate_on_cpu(reference, target, x, y, tile_size, stats),
                    None,
                    cache, ref_key, target_key, x, y, tile_size, stats
                )
            else:
                results = self._correlate_on_cpu(reference, target, x, y, tile_size, stats)
            parts.append(DisplacementSamples.from_results(x, y, tile_size, results))

        samples = DisplacementSamples.concatenate(parts)
        stats.correlated = len(samples)
        retained = reject_low_confidence(samples, rejection_percentile)
        stats.rejected = len(samples) - len(retained)
        logger.debug(
            f"Sampled {stats.correlated}/{stats.considered} tiles, rejected {stats.rejected} "
            f"(device batches {stats.device_batches}, cpu batches {stats.cpu_batches})"
        )
        return retained, stats

    def _device_eligible(self, tile_size, count, cache, ref_key, target_key) -> bool:
        context = self.device_context
        if context is None or cache is None:
            return False
        if not context.supports_tile_size(tile_size) or count < self.min_device_tiles:
            return False
        return cache.contains(ref_key) and cache.contains(target_key)

    def _correlate_on_device(self, cache, ref_key, target_key, x, y, tile_size, stats) -> np.ndarray:
        context = self.device_context
        batch = self.batch_size(tile_size)
        results = []
        with context.session():
            ref_handle = cache.get(ref_key)
            target_handle = cache.get(target_key)
            for start in range(0, x.size, batch):
                results.append(context.batched_correlation(
                    ref_handle, target_handle, x[start:start + batch], y[start:start + batch], tile_size
                ))
                stats.device_batches += 1
        return np.concatenate(results, axis=0)

    def _correlate_on_cpu(self, reference, target, x, y, tile_size, stats) -> np.ndarray:
        batch = self.batch_size(tile_size)
        # Bound host memory for tile stacks independently of device sizing
        batch = min(batch, max(64, (1 << 26) // (tile_size * tile_size * 8)))
        spans = list(chunked(range(x.size), batch))
        stats.cpu_batches += len(spans)

        def run(span):
            xs = x[span.start:span.stop]
            ys = y[span.start:span.stop]
            return self.correlator.correlate_batch(
                extract_tiles(reference, xs, ys, tile_size),
                extract_tiles(target, xs, ys, tile_size)
            )

        return np.concatenate(parallel_map(run, spans, self.max_workers), axis=0)


def tile_grid_displacements(
    reference: np.ndarray,
    target: np.ndarray,
    tile_size: int,
    increment: int,
    correlator: TileCorrelator,
    max_workers: Optional[int] = None
) -> DisplacementSamples:
    """
    Displacements of every lattice tile, including partial tiles at the
    right and bottom edges, which are zero padded.

    Samples are located at the tile centres.
    """
    height, width = reference.shape
    pad = ((0, tile_size), (0, tile_size))
    ref = np.pad(np.asarray(reference, dtype=np.float64), pad)
    tgt = np.pad(np.asarray(target, dtype=np.float64), pad)
    gy, gx = np.mgrid[0:height:increment, 0:width:increment]
    cx = gx.ravel() + tile_size // 2
    cy = gy.ravel() + tile_size // 2
    spans = list(chunked(range(cx.size), max(1, (1 << 24) // (tile_size * tile_size * 8))))

    def run(span):
        xs = cx[span.start:span.stop]
        ys = cy[span.start:span.stop]
        return correlator.correlate_batch(extract_tiles(ref, xs, ys, tile_size), extract_tiles(tgt, xs, ys, tile_size))

    results = np.concatenate(parallel_map(run, spans, max_workers), axis=0)
    return DisplacementSamples.from_results(cx, cy, tile_size, results)
