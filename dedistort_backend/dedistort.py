"""
Local distortion estimation and correction against a single reference.

Each iteration estimates a distortion map between the reference and the
current state of the target, optionally refined at smaller tile sizes, and
keeps it only when the total distortion did not increase. The output is the
ORIGINAL target warped once with the combination of the kept maps, so
interpolation losses do not accumulate over iterations.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from dedistort_backend.configuration import (
    DedistortConfig,
    DeviceConfig,
    FilterConfig,
    default_config,
    max_workers,
)
from dedistort_backend.consensus import ConsensusEngine
from dedistort_backend.correlation import HannWindowCache, TileCorrelator
from dedistort_backend.device import DeviceContext, GPUImageCache, GPUMemoryBudget
from dedistort_backend.displacement import DisplacementSampler
from dedistort_backend.distortion_map import DistortionMap, DistortionMaps, warp_image
from dedistort_backend.image import ConsensusReference, Image, materialize, require_mono, require_same_size
from dedistort_backend.parallel import parallel_map
from dedistort_backend.progress import Broadcaster, NoOpBroadcaster, ProgressCounter, ProgressOperation
from dedistort_backend.sampling import SignalEvaluator, create_sampling_strategy
from dedistort_backend.sparse_field import SparseDistortionField
from dedistort_runner.error_handling import AcceleratorError, PreconditionError, require

logger = logging.getLogger(__name__)

MIN_TILE_SIZE = 16
MIN_REFINEMENT_TILE_SIZE = 32
DEFAULT_SIGNAL_THRESHOLD = 1.0
REFERENCE_KEY = "reference"
TARGET_KEY = "target"


def count_refinement_levels(tile_size: int, refine: bool = True) -> List[int]:
    """Tile sizes of one iteration: the base size, then halved while above 32."""
    sizes = [tile_size]
    if refine:
        while sizes[-1] > MIN_REFINEMENT_TILE_SIZE:
            sizes.append(sizes[-1] // 2)
    return sizes


class DedistortEngine:
    """
    Estimates and applies distortion maps.

    Args:
        config: Nested configuration dictionary (see ``default_config``)
        broadcaster: Progress receiver
        device_context: Optional accelerator
        window_cache: Shared Hann window memo
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        broadcaster: Optional[Broadcaster] = None,
        device_context: Optional[DeviceContext] = None,
        window_cache: Optional[HannWindowCache] = None
    ):
        self.config = config if config is not None else default_config()
        self.settings = DedistortConfig(self.config)
        self.filter_settings = FilterConfig(self.config)
        self.broadcaster = broadcaster if broadcaster is not None else NoOpBroadcaster()
        self.window_cache = window_cache if window_cache is not None else HannWindowCache()
        self.device_context = device_context
        self.max_workers = max_workers(self.config)
        self.correlator = TileCorrelator(self.window_cache)
        self.sampler = DisplacementSampler(
            self.correlator,
            device_context,
            min_device_tiles=DeviceConfig(self.config).min_tiles,
            max_workers=self.max_workers
        )

    def compute_distortion_map(
        self,
        reference: np.ndarray,
        target: np.ndarray,
        tile_size: int,
        sampling: float,
        signal: float,
        use_sparse: bool = False,
        multiscale: bool = False,
        symmetric_signal: bool = False,
        cache: Optional[GPUImageCache] = None,
        ref_key=REFERENCE_KEY,
        target_key=TARGET_KEY
    ) -> DistortionMap:
        """
        Distortion map such that warping ``target`` with it matches ``reference``.

        Args:
            reference: Reference plane
            target: Target plane, same shape
            tile_size: Correlation tile edge
            sampling: Grid spacing as a fraction of the tile size
            signal: Tiles whose mean is not above this value are skipped
            use_sparse: Interest-point sampling and sparse interpolation
            multiscale: Multiscale interest points (sparse mode only)
            symmetric_signal: Apply the signal check to the target as well
            cache: Resident image cache holding both planes, if any

        Returns:
            Filtered and smoothed distortion map
        """
        height, width = reference.shape
        strategy = create_sampling_strategy(use_sparse, sampling, multiscale)
        positions = strategy.select_positions(reference, width, height, tile_size, signal)
        evaluator = SignalEvaluator(reference, target) if symmetric_signal else None
        samples, stats = self.sampler.sample(
            reference, target, positions,
            signal_threshold=signal,
            signal_evaluator=evaluator,
            rejection_percentile=self.settings.rejection_percentile,
            cache=cache,
            ref_key=ref_key,
            target_key=target_key
        )
        step = strategy.output_grid_step(tile_size, sampling)
        filter_options = self.filter_settings.as_kwargs()

        if use_sparse:
            field = (SparseDistortionField.builder(width, height)
                     .neighbors_k(self.settings.neighbors_k)
                     .base_tile_size(tile_size)
                     .use_tile_weighting(self.settings.tile_weighting)
                     .add_samples(samples)
                     .build())
            dmap = field.to_regular_grid(step, **filter_options)
        else:
            dmap = DistortionMap(width, height, tile_size, step)
            dmap.record_many(samples.x, samples.y, samples.dx, samples.dy)
            dmap.filter_and_smooth(**filter_options)

        logger.debug(
            f"{strategy.name}, tile {tile_size}: {len(samples)} samples, "
            f"totalDistortion={dmap.total_distorsion():.3f}"
        )
        return dmap

    def _open_pair_cache(self, reference: np.ndarray, target: np.ndarray, tile_size: int) -> Optional[GPUImageCache]:
        context = self.device_context
        if context is None:
            return None
        height, width = reference.shape
        budget = GPUMemoryBudget(context.capabilities, tile_size, self.sampler.batch_size(tile_size))
        if not budget.fits(2, width, height):
            logger.debug("Device budget too small for a resident image pair, using CPU")
            return None
        try:
            with context.session():
                cache = GPUImageCache(context, 2)
                cache.get_or_upload(REFERENCE_KEY, reference)
                cache.get_or_upload(TARGET_KEY, target)
            return cache
        except AcceleratorError as e:
            context.record_error("pair upload", e)
            return None

    def _update_target(self, cache: Optional[GPUImageCache], data: np.ndarray) -> Optional[GPUImageCache]:
        if cache is None:
            return None
        try:
            with cache.context.session():
                cache.replace_buffer(TARGET_KEY, data)
            return cache
        except AcceleratorError as e:
            cache.context.record_error("target upload", e)
            return None

    @staticmethod
    def _close_cache(cache: Optional[GPUImageCache]) -> None:
        if cache is not None:
            with cache.context.session():
                cache.release_all()

    def dedistort(
        self,
        reference: Image,
        target: Image,
        tile_size: Optional[int] = None,
        sampling: Optional[float] = None,
        background_threshold: Optional[float] = None,
        iterations: Optional[int] = None,
        use_sparse: Optional[bool] = None,
        multiscale: Optional[bool] = None,
        refine: Optional[bool] = None,
        operation: Optional[ProgressOperation] = None
    ) -> Image:
        """
        Register ``target`` onto ``reference``.

        Returns:
            The warped target carrying the kept maps as ``DistortionMaps``

        Raises:
            PreconditionError: non-mono images, different sizes, tile size below 16
        """
        settings = self.settings
        tile_size = settings.tile_size if tile_size is None else tile_size
        sampling = settings.sampling if sampling is None else sampling
        if background_threshold is None:
            background_threshold = settings.threshold
        signal = DEFAULT_SIGNAL_THRESHOLD if background_threshold is None else background_threshold
        iterations = settings.iterations if iterations is None else iterations
        use_sparse = settings.sparse if use_sparse is None else use_sparse
        multiscale = settings.multiscale if multiscale is None else multiscale
        refine = settings.refine if refine is None else refine

        reference = materialize(reference)
        target = materialize(target)
        require_mono([reference, target])
        width, height = require_same_size([reference, target])
        require(tile_size >= MIN_TILE_SIZE, f"tile size must be at least {MIN_TILE_SIZE}, got {tile_size}")
        require(iterations >= 1, f"at least one iteration is required, got {iterations}")

        ref = reference.data
        original = target.data
        levels = count_refinement_levels(tile_size, refine)
        operation = (operation or ProgressOperation.root("Dedistort")).create_child("Dedistort iterations")
        counter = ProgressCounter(self.broadcaster, operation, iterations * len(levels))

        cache = self._open_pair_cache(ref, original, tile_size)
        kept: List[DistortionMap] = []
        previous_total: Optional[float] = None
        current = original
        try:
            for iteration in range(iterations):
                iteration_input = current
                work = current
                level_maps = []
                for level_size in levels:
                    dmap = self.compute_distortion_map(
                        ref, work, level_size, sampling, signal, use_sparse, multiscale, cache=cache
                    )
                    level_maps.append(dmap)
                    work = warp_image(work, dmap)
                    cache = self._update_target(cache, work)
                    counter.increment()
                if len(level_maps) == 1:
                    iteration_map = level_maps[0]
                else:
                    iteration_map = DistortionMap.synthesize(level_maps, width, height)

                total = iteration_map.total_distorsion()
                if previous_total is not None and total > previous_total:
                    logger.warning(
                        f"Distortion increased in iteration {iteration + 1} "
                        f"({previous_total:.3f} -> {total:.3f}), keeping previous result"
                    )
                    break
                kept.append(iteration_map)
                if previous_total is not None:
                    improvement = (previous_total - total) / previous_total if previous_total > 0 else 0.0
                    if improvement < settings.convergence_threshold:
                        logger.debug(f"Converged after {iteration + 1} iterations (improvement {improvement:.4f})")
                        break
                previous_total = total
                if iteration + 1 < iterations:
                    current = warp_image(iteration_input, iteration_map)
                    cache = self._update_target(cache, current)
        finally:
            self._close_cache(cache)
        counter.complete()

        final_map = kept[0] if len(kept) == 1 else DistortionMap.synthesize(kept, width, height)
        logger.debug(f"Dedistort complete: {len(kept)} maps, finalDistortion={final_map.total_distorsion():.3f}")
        return target.with_data(warp_image(original, final_map)).with_metadata(DistortionMaps(kept))

    def dedistort_many(self, reference: Image, targets: Sequence[Image], **options) -> List[Image]:
        """
        Register every target onto ``reference`` in parallel.

        A reference tagged with ``ConsensusReference`` registers the targets
        onto their consensus geometry instead.
        """
        if reference.find_metadata(ConsensusReference) is not None:
            consensus_options = {k: v for k, v in options.items() if k in (
                "tile_size", "sampling", "iterations", "use_sparse", "multiscale"
            )}
            if options.get("background_threshold") is not None:
                consensus_options["signal"] = options["background_threshold"]
            return ConsensusEngine(self).dedistort_consensus(list(targets), **consensus_options)

        reference = materialize(reference)
        operation = ProgressOperation.root("Dedistort")
        counter = ProgressCounter(self.broadcaster, operation, len(targets))

        def process(target):
            result = self.dedistort(reference, target, operation=operation, **options)
            counter.increment()
            return result

        results = parallel_map(process, targets, self.max_workers)
        counter.complete()
        return results


def apply_distortion_maps(images: Sequence[Image], references: Sequence[Image]) -> List[Image]:
    """
    Replay the maps recorded on ``references[i]`` onto ``images[i]``.

    Works on every plane, so maps measured on a mono frame can be applied to
    the matching colour frame.
    """
    require(len(images) == len(references),
            f"got {len(images)} images for {len(references)} references")
    results = []
    for image, reference in zip(images, references):
        maps = reference.find_metadata(DistortionMaps)
        if maps is None:
            raise PreconditionError(f"reference {reference!r} carries no distortion maps")
        image = materialize(image)
        results.append(image.map_planes(maps.apply).with_metadata(maps))
    return results
