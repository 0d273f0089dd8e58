import numpy as np
import pytest
from scipy import ndimage

from dedistort_backend.correlation import TileCorrelator
from dedistort_backend.device import ArrayDeviceContext, GPUImageCache
from dedistort_backend.displacement import (
    DisplacementSampler,
    DisplacementSamples,
    extract_tiles,
    reject_low_confidence,
    tile_grid_displacements,
)
from dedistort_backend.sampling import GridSamplingStrategy, SamplePositions
from dedistort_runner.error_handling import AcceleratorError


def _texture(shape=(256, 256), sigma=2.5):
    noise = np.random.normal(0, 1, shape)
    tex = ndimage.gaussian_filter(noise, sigma, mode="wrap")
    return (tex / tex.std() * 20 + 100).astype(np.float32)


def _samples(confidence):
    confidence = np.asarray(confidence, dtype=np.float64)
    n = confidence.size
    idx = np.arange(n, dtype=np.float64)
    return DisplacementSamples(idx, idx, idx, -idx, np.full(n, 32), confidence)


class FailingContext(ArrayDeviceContext):
    def batched_correlation(self, ref_handle, target_handle, x, y, tile_size):
        raise AcceleratorError("kernel failed")


class TestRejectLowConfidence:
    def test_removes_exact_count(self):
        samples = _samples([0.9, 0.1, 0.5, 0.3, 0.8, 0.2, 0.7, 0.4, 0.6, 0.05])

        retained = reject_low_confidence(samples, 0.25)

        # round(0.25 * 10) = 3 removed
        assert len(retained) == 7
        assert retained.confidence.min() >= 0.3

    def test_retained_samples_keep_their_order(self):
        samples = _samples([0.9, 0.1, 0.5, 0.3, 0.8])
        retained = reject_low_confidence(samples, 0.4)
        assert retained.x.tolist() == [0.0, 2.0, 4.0]

    def test_ties_are_broken_by_position(self):
        samples = _samples([0.5, 0.5, 0.5, 0.5])
        retained = reject_low_confidence(samples, 0.5)
        assert retained.x.tolist() == [2.0, 3.0]

    def test_zero_percentile_keeps_everything(self):
        samples = _samples([0.2, 0.1])
        assert len(reject_low_confidence(samples, 0.0)) == 2

    def test_full_percentile_discards_everything(self):
        samples = _samples([0.2, 0.1, 0.3])
        assert len(reject_low_confidence(samples, 1.0)) == 0

    def test_empty_batch(self):
        assert len(reject_low_confidence(DisplacementSamples.empty(), 0.5)) == 0


class TestDisplacementSamples:
    def test_concatenate_and_iterate(self):
        merged = DisplacementSamples.concatenate([_samples([0.1, 0.2]), DisplacementSamples.empty(), _samples([0.3])])
        assert len(merged) == 3
        first = next(iter(merged))
        assert first.tile_size == 32
        assert first.confidence == pytest.approx(0.1)

    def test_total_distorsion(self):
        samples = _samples([1.0, 1.0])
        assert samples.total_distorsion() == pytest.approx(np.sqrt(2.0))


def test_extract_tiles():
    data = np.arange(100, dtype=np.float64).reshape(10, 10)
    tiles = extract_tiles(data, np.array([4]), np.array([5]), 4)
    assert tiles.shape == (1, 4, 4)
    assert np.array_equal(tiles[0], data[3:7, 2:6])


class TestDisplacementSampler:
    def setup_method(self):
        np.random.seed(42)
        self.reference = _texture()
        self.target = ndimage.shift(self.reference, (-2.0, 1.5), order=3, mode="wrap").astype(np.float32)
        self.positions = GridSamplingStrategy(0.5).select_positions(self.reference, 256, 256, 64, 1.0)

    def test_measures_global_shift(self):
        sampler = DisplacementSampler(TileCorrelator(), max_workers=2)

        samples, stats = sampler.sample(self.reference, self.target, self.positions)

        assert stats.considered == 49
        assert stats.correlated == 49
        assert np.median(samples.dx) == pytest.approx(1.5, abs=0.2)
        assert np.median(samples.dy) == pytest.approx(-2.0, abs=0.2)

    def test_rejection_percentile_is_applied(self):
        sampler = DisplacementSampler()
        samples, stats = sampler.sample(self.reference, self.target, self.positions, rejection_percentile=0.5)
        assert stats.rejected == 25
        assert len(samples) == 24

    def test_windows_off_the_image_are_skipped(self):
        positions = SamplePositions.uniform([5, 128], [128, 128], 64)
        samples, stats = DisplacementSampler().sample(self.reference, self.target, positions)
        assert stats.considered == 2
        assert len(samples) == 1
        assert samples.x[0] == 128

    def test_device_path_matches_cpu(self):
        context = ArrayDeviceContext(np)
        sampler = DisplacementSampler(device_context=context, min_device_tiles=1)
        with context.session():
            cache = GPUImageCache(context, 2)
            cache.get_or_upload("ref", self.reference)
            cache.get_or_upload("tgt", self.target)

        on_device, device_stats = sampler.sample(
            self.reference, self.target, self.positions, cache=cache, ref_key="ref", target_key="tgt"
        )
        on_cpu, _ = DisplacementSampler().sample(self.reference, self.target, self.positions)

        assert device_stats.device_batches > 0
        assert np.allclose(on_device.dx, on_cpu.dx, atol=1e-6)
        assert np.allclose(on_device.dy, on_cpu.dy, atol=1e-6)

    def test_device_failure_falls_back_to_cpu(self):
        context = FailingContext(np)
        sampler = DisplacementSampler(device_context=context, min_device_tiles=1)
        with context.session():
            cache = GPUImageCache(context, 2)
            cache.get_or_upload("ref", self.reference)
            cache.get_or_upload("tgt", self.target)

        samples, stats = sampler.sample(
            self.reference, self.target, self.positions, cache=cache, ref_key="ref", target_key="tgt"
        )

        assert len(samples) == 49
        assert stats.cpu_batches > 0
        assert sampler.fallback.fallback_count == 1

    def test_small_groups_stay_on_cpu(self):
        context = ArrayDeviceContext(np)
        sampler = DisplacementSampler(device_context=context)
        with context.session():
            cache = GPUImageCache(context, 2)
            cache.get_or_upload("ref", self.reference)
            cache.get_or_upload("tgt", self.target)
        _, stats = sampler.sample(self.reference, self.target, self.positions, cache=cache, ref_key="ref", target_key="tgt")
        assert stats.device_batches == 0


def test_tile_grid_displacements_cover_the_image():
    np.random.seed(42)
    reference = _texture((128, 96))
    target = ndimage.shift(reference, (1.0, -1.0), order=3, mode="wrap")

    samples = tile_grid_displacements(reference, target, 32, 16, TileCorrelator(), max_workers=1)

    # 8 rows x 6 columns of tiles, centres at the tile middle
    assert len(samples) == 48
    assert samples.x.min() == 16
    assert samples.y.max() == 112 + 16
    interior = (samples.x + 16 <= 96) & (samples.y + 16 <= 128)
    assert np.median(samples.dx[interior]) == pytest.approx(-1.0, abs=0.25)
    assert np.median(samples.dy[interior]) == pytest.approx(1.0, abs=0.25)
