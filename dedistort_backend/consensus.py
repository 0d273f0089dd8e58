"""
Consensus registration without a reference frame.

Every frame is compared with a set of partners. The map measured with frame
``i`` as reference and frame ``j`` as target tells where the content of ``i``
sits in ``j``; averaging these over the partners and negating yields the
correction that moves ``i`` onto the mean geometry of the set. Repeating the
process shrinks the residual differences between frames.
"""

import logging
import random
from typing import Dict, List, Optional, Sequence, Set, Tuple

import numpy as np

from dedistort_backend.configuration import ConsensusConfig
from dedistort_backend.device import MIN_CACHE_IMAGES, GPUImageCache, GPUMemoryBudget
from dedistort_backend.distortion_map import DistortionMap, DistortionMaps, warp_image
from dedistort_backend.image import Image, SourceInfo, materialize, require_mono, require_same_size
from dedistort_backend.parallel import parallel_map
from dedistort_backend.progress import ProgressCounter, ProgressOperation
from dedistort_runner.error_handling import AcceleratorError, require

logger = logging.getLogger(__name__)

MIN_RECOMMENDED_IMAGES = 5

Pair = Tuple[int, int]


def sort_by_source(images: Sequence[Image]) -> List[Image]:
    """Order by source file name; images without a name keep their relative order."""
    def key(image):
        source = image.find_metadata(SourceInfo)
        return source.filename if source is not None else ""
    return sorted(images, key=key)


def select_partners(count: int, iteration: int, max_comparisons: int = 30, seed: int = 42) -> List[List[int]]:
    """
    Comparison partners of every image for one iteration.

    With more candidates than ``max_comparisons`` each image shuffles the
    others with ``random.Random(seed + i + iteration * count)`` and keeps the
    first ones, so runs are reproducible.
    """
    k = min(count - 1, max_comparisons)
    partners = []
    for i in range(count):
        others = [j for j in range(count) if j != i]
        if k < len(others):
            random.Random(seed + i + iteration * count).shuffle(others)
            others = others[:k]
        partners.append(others)
    return partners


def directed_pairs(partners: Sequence[Sequence[int]]) -> List[Pair]:
    """Both directions of every compared pair, in a stable order."""
    pairs: Set[Pair] = set()
    for i, others in enumerate(partners):
        for j in others:
            pairs.add((i, j))
            pairs.add((j, i))
    return sorted(pairs)


class ConsensusEngine:
    """
    Registers a set of frames onto their consensus geometry.

    Uses the map estimation and device of a ``DedistortEngine``.
    """

    def __init__(self, engine):
        self.engine = engine
        self.settings = ConsensusConfig(engine.config)
        self._resident_cache: Optional[GPUImageCache] = None

    def dedistort_consensus(
        self,
        images: Sequence[Image],
        tile_size: Optional[int] = None,
        sampling: Optional[float] = None,
        iterations: Optional[int] = None,
        use_sparse: Optional[bool] = None,
        multiscale: Optional[bool] = None,
        signal: Optional[float] = None
    ) -> List[Image]:
        """
        Returns:
            The registered frames sorted by source file name, each carrying
            the corrections applied to it as ``DistortionMaps``
        """
        settings = self.engine.settings
        tile_size = settings.tile_size if tile_size is None else tile_size
        sampling = settings.sampling if sampling is None else sampling
        iterations = settings.iterations if iterations is None else iterations
        use_sparse = settings.sparse if use_sparse is None else use_sparse
        multiscale = settings.multiscale if multiscale is None else multiscale
        if signal is None:
            signal = settings.threshold if settings.threshold is not None else 1.0

        require(len(images) > 0, "consensus registration needs at least one image")
        images = sort_by_source([materialize(image) for image in images])
        require_mono(images)
        width, height = require_same_size(images)
        require(tile_size >= 16, f"tile size must be at least 16, got {tile_size}")

        count = len(images)
        if count == 1:
            return [images[0]]
        if count < MIN_RECOMMENDED_IMAGES:
            logger.warning(f"Consensus registration with only {count} images, results may be unreliable")

        current = [image.data for image in images]
        histories: List[List[DistortionMap]] = [[] for _ in range(count)]
        capacity = self._cache_capacity(count, width, height, tile_size)
        operation = ProgressOperation.root("Consensus dedistort")
        previous_mean: Optional[float] = None

        try:
            for iteration in range(iterations):
                partners = select_partners(count, iteration, self.settings.max_comparisons, self.settings.seed)
                pairs = directed_pairs(partners)
                child = operation.create_child(f"Iteration {iteration + 1}")
                counter = ProgressCounter(self.engine.broadcaster, child, len(pairs))

                def estimate(pair: Pair, cache: Optional[GPUImageCache] = None) -> DistortionMap:
                    i, j = pair
                    if cache is not None:
                        cache.get_or_upload(i, current[i])
                        cache.get_or_upload(j, current[j])
                    dmap = self.engine.compute_distortion_map(
                        current[i], current[j], tile_size, sampling, signal, use_sparse, multiscale,
                        symmetric_signal=True, cache=cache, ref_key=i, target_key=j
                    )
                    counter.increment()
                    return dmap

                context = self.engine.device_context
                if context is not None and capacity >= MIN_CACHE_IMAGES:
                    maps = self._estimate_on_device(context, capacity, count, pairs, estimate)
                else:
                    maps = dict(zip(pairs, parallel_map(estimate, pairs, self.engine.max_workers)))
                counter.complete()
                corrections = self._corrections(count, pairs, maps)

                mean_total = float(np.mean([c.total_distorsion() for c in corrections]))
                logger.debug(f"Consensus iteration {iteration + 1}: mean distortion {mean_total:.3f}")
                if previous_mean is not None and mean_total > previous_mean:
                    logger.warning(
                        f"Mean distortion increased in iteration {iteration + 1} "
                        f"({previous_mean:.3f} -> {mean_total:.3f}), stopping"
                    )
                    break

                current = self._warp_all(current, corrections)
                for i, correction in enumerate(corrections):
                    histories[i].append(correction)

                if previous_mean is not None:
                    improvement = (previous_mean - mean_total) / previous_mean if previous_mean > 0 else 0.0
                    if improvement < self.engine.settings.convergence_threshold:
                        logger.debug(f"Consensus converged after {iteration + 1} iterations")
                        break
                previous_mean = mean_total
        finally:
            self._release_resident()
        return self._finish(images, current, histories)

    @staticmethod
    def _corrections(count: int, pairs: Sequence[Pair], maps: Dict[Pair, DistortionMap]) -> List[DistortionMap]:
        corrections = []
        for i in range(count):
            own = [maps[(a, b)] for a, b in pairs if a == i]
            corrections.append(DistortionMap.average(own).negate())
        return corrections

    def _cache_capacity(self, count: int, width: int, height: int, tile_size: int) -> int:
        context = self.engine.device_context
        if context is None:
            return 0
        budget = GPUMemoryBudget(context.capabilities, tile_size, self.engine.sampler.batch_size(tile_size))
        capacity = min(count, budget.max_resident_images(width, height))
        if capacity >= count:
            logger.debug(f"All {count} images resident on {context.capabilities.name}")
        elif capacity >= MIN_CACHE_IMAGES:
            logger.debug(f"Device cache of {capacity} images for {count} images")
        else:
            logger.debug("Device memory too small for resident images, using CPU")
        return capacity

    def _estimate_on_device(self, context, capacity: int, count: int, pairs, estimate) -> Dict[Pair, DistortionMap]:
        """
        Estimate every pair map inside one device session.

        When all images fit, the cache is kept across iterations and its
        buffers are warped in place; otherwise a cache of ``capacity`` images
        lives for this iteration only.
        """
        resident = capacity >= count
        try:
            with context.session():
                if resident:
                    if self._resident_cache is None:
                        self._resident_cache = GPUImageCache(context, capacity)
                    cache = self._resident_cache
                else:
                    cache = GPUImageCache(context, capacity)
                try:
                    return {pair: estimate(pair, cache) for pair in pairs}
                finally:
                    if not resident:
                        cache.release_all()
        except AcceleratorError as e:
            context.record_error("consensus iteration", e)
            self._release_resident()
            return dict(zip(pairs, parallel_map(estimate, pairs, self.engine.max_workers)))

    def _warp_all(self, current: List[np.ndarray], corrections: List[DistortionMap]) -> List[np.ndarray]:
        cache = self._resident_cache
        if cache is not None:
            context = cache.context
            try:
                warped = []
                with context.session():
                    for i, correction in enumerate(corrections):
                        handle = cache.get_or_upload(i, current[i])
                        context.warp(handle, correction)
                        warped.append(context.read(handle))
                return warped
            except AcceleratorError as e:
                context.record_error("resident warp", e)
                self._release_resident()
        return parallel_map(
            lambda item: warp_image(item[0], item[1]),
            list(zip(current, corrections)),
            self.engine.max_workers
        )

    def _release_resident(self) -> None:
        cache = self._resident_cache
        self._resident_cache = None
        if cache is not None:
            with cache.context.session():
                cache.release_all()

    @staticmethod
    def _finish(images, current, histories) -> List[Image]:
        return [
            image.with_data(data).with_metadata(DistortionMaps(history))
            for image, data, history in zip(images, current, histories)
        ]
