"""
Stacking of registered frames.

Two entry points:

* ``Stacker.stack`` measures a distortion map of every frame against a
  reference and fuses the frames sample by sample, each frame read at its
  displaced position. Weights are global (sharpness of the frames) or, when
  an explicit reference is given, derived per pixel from the similarity of
  each frame to the reference.
* ``Stacker.stack_dedistorted`` fuses frames that were already dedistorted,
  weighting them by the registration error recorded in their
  ``DistortionMaps``, globally or per pixel combined with a local sharpness
  estimate.
"""

import logging
import math
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

import cv2
import numpy as np

from dedistort_backend.configuration import StackingConfig, default_config, max_workers
from dedistort_backend.correlation import HannWindowCache, TileCorrelator
from dedistort_backend.displacement import tile_grid_displacements
from dedistort_backend.distortion_map import DistortionMap, DistortionMaps, estimate_turbulence_scale
from dedistort_backend.image import (
    ConsensusReference,
    Ellipse,
    Image,
    ReferenceWeights,
    SourceInfo,
    materialize,
    require_mono,
    require_same_size,
)
from dedistort_backend.parallel import parallel_for_rows, parallel_map
from dedistort_backend.progress import Broadcaster, NoOpBroadcaster, ProgressCounter, ProgressOperation
from dedistort_backend.sampling import area_average, integral_image
from dedistort_runner.error_handling import PreconditionError, require

logger = logging.getLogger(__name__)

DECAY_RATE = -2.0
PIXEL_DECAY = 8.0
MIN_STACK_TILE_SIZE = 4
MIN_INCREMENT = 2
STACK_SIGNAL = 1.0
DEFAULT_ECCENTRICITY = 0.99
MIN_FFT_WINDOW = 4
MIN_ENERGY = 1e-10


class ReferenceSelection(Enum):
    FIRST = "first"
    AVERAGE = "average"
    MEDIAN = "median"
    ECCENTRICITY = "eccentricity"
    SHARPNESS = "sharpness"
    MANUAL = "manual"
    CONSENSUS = "consensus"

    @classmethod
    def parse(cls, value: Union[str, "ReferenceSelection"]) -> "ReferenceSelection":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise PreconditionError(f"unknown reference selection '{value}'") from None


def _is_power_of_two(value: int) -> bool:
    return value > 0 and (value & (value - 1)) == 0


def _luminance(image: Image) -> np.ndarray:
    if image.is_mono:
        return image.data
    return np.mean(np.stack(image.planes, axis=0), axis=0, dtype=np.float64).astype(np.float32)


def _result_metadata(image: Image) -> Dict[type, Any]:
    metadata = image.metadata
    for kind in (DistortionMaps, ReferenceWeights, ConsensusReference):
        metadata.pop(kind, None)
    return metadata


def heuristic_weight(reference, value):
    """Similarity weight ``exp(-8 |a - b| / (max(a, b) + 1e-5))``; scalars or arrays."""
    reference = np.asarray(reference, dtype=np.float64)
    value = np.asarray(value, dtype=np.float64)
    return np.exp(-PIXEL_DECAY * np.abs(reference - value) / (np.maximum(reference, value) + 1e-5))


def estimate_sharpness(data: np.ndarray) -> float:
    """Variance of the Laplacian."""
    laplacian = cv2.Laplacian(np.ascontiguousarray(data, dtype=np.float32), cv2.CV_32F)
    return float(laplacian.var())


def _combine_planes(images: Sequence[Image], reducer) -> Image:
    first = images[0]
    planes = []
    for k in range(first.channel.plane_count):
        stack = np.stack([image.planes[k] for image in images], axis=0)
        planes.append(reducer(stack))
    return Image(planes, first.channel, _result_metadata(first))


def _matches_source(image: Image, best_source: Union[SourceInfo, str]) -> bool:
    source = image.find_metadata(SourceInfo)
    if source is None:
        return False
    if isinstance(best_source, SourceInfo):
        return source.filename == best_source.filename
    return source.filename == str(best_source)


def choose_reference(
    images: Sequence[Image],
    policy: Union[str, ReferenceSelection] = ReferenceSelection.SHARPNESS,
    best_source: Optional[Union[SourceInfo, str]] = None,
    max_workers: Optional[int] = None
) -> Image:
    """
    Pick or build the reference frame of a stack.

    Policies that measure sharpness attach the per-frame sharpness as
    ``ReferenceWeights`` to the returned reference; these become the global
    stacking weights.

    Args:
        images: Candidate frames
        policy: ``ReferenceSelection`` or its name
        best_source: Source of the frame to use with ``MANUAL``; without one
            the sharpest frame is used
        max_workers: Threads for the sharpness estimation

    Raises:
        PreconditionError: empty input, unknown policy, unknown manual source
    """
    images = [materialize(image) for image in images]
    require(len(images) > 0, "cannot choose a reference among zero images")
    policy = ReferenceSelection.parse(policy)

    if policy is ReferenceSelection.FIRST:
        return images[0]
    if policy is ReferenceSelection.AVERAGE:
        return _combine_planes(images, lambda stack: stack.mean(axis=0, dtype=np.float64))
    if policy is ReferenceSelection.MEDIAN:
        return _combine_planes(images, lambda stack: np.median(stack, axis=0))
    if policy is ReferenceSelection.ECCENTRICITY:
        def eccentricity(image):
            ellipse = image.find_metadata(Ellipse)
            return ellipse.eccentricity() if ellipse is not None else DEFAULT_ECCENTRICITY
        return min(images, key=eccentricity)
    if policy is ReferenceSelection.MANUAL and best_source is not None:
        for image in images:
            if _matches_source(image, best_source):
                return image
        raise PreconditionError(f"no image with source {best_source}")

    sharpness = parallel_map(lambda image: estimate_sharpness(_luminance(image)), images, max_workers)
    best = int(np.argmax(sharpness))
    logger.debug(f"Sharpest frame is #{best} ({images[best]!r}, sharpness {sharpness[best]:.4g})")
    reference = images[best].with_metadata(ReferenceWeights(tuple(float(s) for s in sharpness)))
    if policy is ReferenceSelection.CONSENSUS:
        reference = reference.copy().with_metadata(ConsensusReference())
    return reference


def weighted_average(images: Sequence[Image], weights: Sequence[float]) -> Image:
    """Per-plane weighted mean; the result carries the first image's metadata."""
    images = [materialize(image) for image in images]
    require(len(images) > 0, "cannot average zero images")
    require(len(images) == len(weights), f"got {len(weights)} weights for {len(images)} images")
    require_same_size(images)
    require(len({image.channel for image in images}) == 1, "images must share the same channel layout")
    weights = np.asarray(weights, dtype=np.float64)
    total = float(weights.sum())
    require(total > 0, "weights must have a positive sum")

    first = images[0]
    planes = []
    for k in range(first.channel.plane_count):
        acc = np.zeros(first.shape, dtype=np.float64)
        for image, weight in zip(images, weights):
            if weight != 0:
                acc += weight * image.planes[k]
        planes.append(acc / total)
    return Image(planes, first.channel, _result_metadata(first))


def high_frequency_ratio(window: np.ndarray) -> float:
    """Share of the spectral energy farther than ``min(w, h) // 4`` from DC."""
    spectrum = np.fft.fftshift(np.fft.fft2(np.asarray(window, dtype=np.float64)))
    energy = np.abs(spectrum) ** 2
    total = float(energy.sum())
    if total < MIN_ENERGY:
        return 0.0
    th, tw = window.shape
    yy, xx = np.mgrid[0:th, 0:tw]
    distance = np.hypot(xx - tw // 2, yy - th // 2)
    cutoff = min(tw, th) // 4
    return float(energy[distance > cutoff].sum() / total)


def gradient_sharpness(window: np.ndarray) -> float:
    """Gradient energy relative to intensity energy, central differences."""
    window = np.asarray(window, dtype=np.float64)
    if window.shape[0] < 3 or window.shape[1] < 3:
        return 0.0
    gx = 0.5 * (window[1:-1, 2:] - window[1:-1, :-2])
    gy = 0.5 * (window[2:, 1:-1] - window[:-2, 1:-1])
    intensity = float((window[1:-1, 1:-1] ** 2).sum())
    if intensity < MIN_ENERGY:
        return 0.0
    return float((gx * gx + gy * gy).sum() / intensity)


def local_sharpness(data: np.ndarray, cx: int, cy: int, tile_size: int) -> float:
    """
    Sharpness of the ``tile_size`` window centred on ``(cx, cy)``.

    Windows clipped by the image border are generally not a power of two;
    they use the gradient measure instead of the spectral one.
    """
    height, width = data.shape
    half = tile_size // 2
    x0, x1 = max(0, cx - half), min(width, cx + half)
    y0, y1 = max(0, cy - half), min(height, cy + half)
    window = data[y0:y1, x0:x1]
    th, tw = window.shape
    if th < MIN_FFT_WINDOW or tw < MIN_FFT_WINDOW or not _is_power_of_two(th) or not _is_power_of_two(tw):
        return gradient_sharpness(window)
    return high_frequency_ratio(window)


def compute_sharpness_map(data: np.ndarray, tile_size: int, max_workers: Optional[int] = None) -> np.ndarray:
    """
    Dense local sharpness, evaluated every ``tile_size / 2`` pixels and
    bilinearly interpolated in between.
    """
    height, width = data.shape
    stride = max(1, tile_size // 2)
    gw = (width + stride - 1) // stride + 1
    gh = (height + stride - 1) // stride + 1

    def row(gy):
        return [local_sharpness(data, gx * stride, gy * stride, tile_size) for gx in range(gw)]

    grid = np.asarray(parallel_map(row, range(gh), max_workers), dtype=np.float64)

    fx = np.arange(width, dtype=np.float64) / stride
    fy = np.arange(height, dtype=np.float64) / stride
    gx0 = np.floor(fx).astype(np.int64)
    gy0 = np.floor(fy).astype(np.int64)
    gx1 = np.minimum(gx0 + 1, gw - 1)
    gy1 = np.minimum(gy0 + 1, gh - 1)
    tx = (fx - gx0)[None, :]
    ty = (fy - gy0)[:, None]
    top = grid[gy0][:, gx0] * (1 - tx) + grid[gy0][:, gx1] * tx
    bottom = grid[gy1][:, gx0] * (1 - tx) + grid[gy1][:, gx1] * tx
    return top * (1 - ty) + bottom * ty


class Stacker:
    """
    Fuses frames into one image.

    Args:
        config: Nested configuration dictionary (see ``default_config``)
        broadcaster: Progress receiver
        window_cache: Shared Hann window memo
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        broadcaster: Optional[Broadcaster] = None,
        window_cache: Optional[HannWindowCache] = None
    ):
        self.config = config if config is not None else default_config()
        self.settings = StackingConfig(self.config)
        self.broadcaster = broadcaster if broadcaster is not None else NoOpBroadcaster()
        self.max_workers = max_workers(self.config)
        self.correlator = TileCorrelator(window_cache if window_cache is not None else HannWindowCache())

    def choose_reference(self, images, policy=None, best_source=None) -> Image:
        policy = self.settings.select if policy is None else policy
        return choose_reference(images, policy, best_source, self.max_workers)

    def distortion_map(self, reference: np.ndarray, target: np.ndarray, tile_size: int, increment: int) -> DistortionMap:
        """
        Map of every lattice tile of ``target`` against ``reference``.

        Tiles whose reference average is not above the signal level keep a
        zero displacement; nodes left without a tile are filled from their
        neighbours.
        """
        height, width = reference.shape
        samples = tile_grid_displacements(reference, target, tile_size, increment, self.correlator, self.max_workers)
        half = tile_size // 2
        signal = area_average(integral_image(reference), (samples.x - half).astype(np.int64),
                              (samples.y - half).astype(np.int64), tile_size, tile_size)
        has_signal = np.asarray(signal) > STACK_SIGNAL
        dmap = DistortionMap(width, height, tile_size, increment)
        dmap.record_many(
            samples.x, samples.y,
            np.where(has_signal, samples.dx, 0.0),
            np.where(has_signal, samples.dy, 0.0)
        )
        return dmap.fill_unsampled()

    def stack(
        self,
        images: Sequence[Image],
        tile_size: Optional[int] = None,
        sampling: Optional[float] = None,
        policy: Optional[Union[str, ReferenceSelection]] = None,
        reference: Optional[Image] = None,
        best_source: Optional[Union[SourceInfo, str]] = None
    ) -> Image:
        """
        Register every frame on a reference and fuse them.

        Args:
            images: Mono frames of identical size
            tile_size: Correlation tile edge, a power of two of at least 4
            sampling: Lattice increment as a fraction of the tile size
            policy: Reference selection when no ``reference`` is given
            reference: Explicit reference; switches to per-pixel weights
            best_source: Frame for the ``MANUAL`` policy

        Returns:
            The fused image; pixels no frame contributes to are 0
        """
        tile_size = self.settings.tile_size if tile_size is None else int(tile_size)
        sampling = self.settings.sampling if sampling is None else float(sampling)
        images = [materialize(image) for image in images]
        require(len(images) > 0, "stacking needs at least one image")
        require_mono(images)
        width, height = require_same_size(images)
        if len(images) == 1:
            return images[0]
        require(tile_size >= MIN_STACK_TILE_SIZE and _is_power_of_two(tile_size),
                f"tile size must be a power of two of at least {MIN_STACK_TILE_SIZE}, got {tile_size}")

        if reference is None:
            reference = self.choose_reference(images, policy, best_source)
            recorded = reference.find_metadata(ReferenceWeights)
            weights = np.asarray(recorded.weights) if recorded is not None else np.ones(len(images))
        else:
            reference = materialize(reference)
            require_mono([reference])
            require_same_size([reference] + images)
            weights = None

        increment = max(MIN_INCREMENT, int(tile_size * sampling))
        operation = ProgressOperation.root("Stacking")
        counter = ProgressCounter(self.broadcaster, operation.create_child("Distortion maps"), len(images))
        maps = []
        for image in images:
            maps.append(self.distortion_map(reference.data, image.data, tile_size, increment))
            counter.increment()
        counter.complete()

        result = self.assemble(images, reference.data, maps, weights, tile_size)
        logger.debug(f"Stacked {len(images)} images ({'global' if weights is not None else 'pixel'} weights)")
        return Image.mono(result).with_metadata(*_result_metadata(images[0]).values())

    def assemble(
        self,
        images: Sequence[Image],
        reference: np.ndarray,
        maps: Sequence[DistortionMap],
        weights: Optional[np.ndarray],
        tile_size: int
    ) -> np.ndarray:
        """
        ``sum(w * image(p + d(p))) / sum(w)`` over the frames whose displaced
        position lies inside the image.

        With ``weights=None`` the weight of a frame at ``p`` is the smaller of
        its tile similarity to the reference and the similarity of its pixel
        at ``p`` to the displaced sample.
        """
        height, width = reference.shape
        data = [np.ascontiguousarray(image.data, dtype=np.float32) for image in images]
        fields = [dmap.displacement_field(width, height) for dmap in maps]
        pixel_weights = weights is None
        if pixel_weights:
            reference_integral = integral_image(reference)
            integrals = [integral_image(plane) for plane in data]
        result = np.zeros((height, width), dtype=np.float32)
        offset = tile_size // 2
        xs = np.arange(width, dtype=np.float32)[None, :]

        def band(y0: int, y1: int) -> None:
            ys = np.arange(y0, y1, dtype=np.float32)[:, None]
            total = np.zeros((y1 - y0, width), dtype=np.float64)
            count = np.zeros((y1 - y0, width), dtype=np.float64)
            if pixel_weights:
                iy, ix = np.mgrid[y0:y1, 0:width]
                ax = np.maximum(0, ix - offset)
                ay = np.maximum(0, iy - offset)
                reference_avg = area_average(reference_integral, ax, ay, tile_size, tile_size)
            for i, plane in enumerate(data):
                dx, dy = fields[i]
                sx = np.ascontiguousarray(xs + dx[y0:y1])
                sy = np.ascontiguousarray(ys + dy[y0:y1])
                inside = (sx >= 0) & (sx < width) & (sy >= 0) & (sy < height)
                value = cv2.remap(plane, sx, sy, interpolation=cv2.INTER_LINEAR, borderMode=cv2.BORDER_REPLICATE)
                if pixel_weights:
                    tile_weight = heuristic_weight(reference_avg, area_average(integrals[i], ax, ay, tile_size, tile_size))
                    w = np.minimum(tile_weight, heuristic_weight(plane[y0:y1], value))
                else:
                    w = float(weights[i])
                total += np.where(inside, w * value, 0.0)
                count += np.where(inside, w, 0.0)
            result[y0:y1] = np.where(count > 0, total / np.where(count > 0, count, 1.0), 0.0)

        parallel_for_rows(band, height, self.max_workers)
        return result

    def stack_dedistorted(
        self,
        images: Sequence[Image],
        best_fraction: Optional[float] = None,
        use_local_weights: Optional[bool] = None
    ) -> Image:
        """
        Fuse dedistorted frames, favouring those registered with little error.

        The error of a frame is the mean magnitude of the combination of its
        recorded maps. Only the best ``ceil(best_fraction * N)`` frames are
        kept, globally or per pixel.

        Raises:
            PreconditionError: a frame carries no ``DistortionMaps``
        """
        best_fraction = self.settings.best if best_fraction is None else float(best_fraction)
        use_local_weights = self.settings.local if use_local_weights is None else bool(use_local_weights)
        images = [materialize(image) for image in images]
        require(len(images) > 0, "stacking needs at least one image")
        width, height = require_same_size(images)
        if len(images) == 1:
            return images[0]

        ratio = min(1.0, max(0.0, best_fraction))
        maps = []
        for image in images:
            recorded = image.find_metadata(DistortionMaps)
            if recorded is None or len(recorded) == 0:
                raise PreconditionError(f"{image!r} carries no distortion maps")
            maps.append(recorded.combined())
        keep = max(1, int(math.ceil(ratio * len(images))))

        if use_local_weights:
            return self._stack_local(images, maps, keep, width, height)

        errors = np.array([dmap.error() for dmap in maps])
        max_error = float(errors.max())
        if max_error > 0:
            weights = np.exp(DECAY_RATE * errors / max_error)
        else:
            weights = np.ones(len(images))
        order = np.argsort(-weights, kind="stable")[:keep]
        logger.debug(f"Keeping {keep} of {len(images)} frames, max error {max_error:.3f}")
        return weighted_average([images[i] for i in order], weights[order])

    def _stack_local(self, images: List[Image], maps: List[DistortionMap], keep: int, width: int, height: int) -> Image:
        count = len(images)
        tile_size = estimate_turbulence_scale(maps)
        logger.debug(f"Local weights with tile size {tile_size}, keeping {keep} of {count} frames per pixel")
        operation = ProgressOperation.root("Local weights")
        counter = ProgressCounter(self.broadcaster, operation, count)
        sharpness = []
        for image in images:
            sharpness.append(compute_sharpness_map(_luminance(image), tile_size, self.max_workers))
            counter.increment()
        counter.complete()
        sharpness = np.stack(sharpness, axis=0)
        errors = np.stack([dmap.tile_error_field(width, height, tile_size) for dmap in maps], axis=0)
        first = images[0]
        plane_stacks = [
            np.stack([image.planes[k] for image in images], axis=0)
            for k in range(first.channel.plane_count)
        ]
        outputs = [np.zeros((height, width), dtype=np.float32) for _ in plane_stacks]
        fallback = np.zeros(count)
        fallback[:keep] = 1.0

        def band(y0: int, y1: int) -> None:
            err = errors[:, y0:y1]
            sharp = sharpness[:, y0:y1]
            local_max = err.max(axis=0)
            max_sharp = sharp.max(axis=0)
            weighted = (local_max > 0) & (max_sharp > 0)
            w = (np.exp(DECAY_RATE * err / np.where(local_max > 0, local_max, 1.0))
                 * sharp / np.where(max_sharp > 0, max_sharp, 1.0))
            if keep < count:
                rank = np.argsort(np.argsort(-w, axis=0, kind="stable"), axis=0)
                w = np.where(rank < keep, w, 0.0)
            w = np.where(weighted[None], w, fallback[:, None, None])
            total = w.sum(axis=0)
            for stack, out in zip(plane_stacks, outputs):
                acc = (w * stack[:, y0:y1]).sum(axis=0)
                out[y0:y1] = np.where(total > 0, acc / np.where(total > 0, total, 1.0), 0.0)

        parallel_for_rows(band, height, self.max_workers)
        return Image(outputs, first.channel, _result_metadata(first))
