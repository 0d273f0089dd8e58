import numpy as np
import pytest

from dedistort_backend.sampling import (
    GridSamplingStrategy,
    InterestPointSamplingStrategy,
    SamplePositions,
    SignalEvaluator,
    area_average,
    create_sampling_strategy,
    integral_image,
)


def _blobs(shape=(256, 256), centres=((64, 64), (64, 190), (190, 128)), sigma=4.0):
    yy, xx = np.mgrid[0:shape[0], 0:shape[1]]
    image = np.full(shape, 10.0)
    for cy, cx in centres:
        image += 200.0 * np.exp(-((yy - cy) ** 2 + (xx - cx) ** 2) / (2 * sigma ** 2))
    return image.astype(np.float32)


class TestIntegralImage:
    def setup_method(self):
        np.random.seed(42)
        self.image = np.random.uniform(0, 100, (40, 30))
        self.integral = integral_image(self.image)

    def test_area_average_matches_direct_mean(self):
        assert area_average(self.integral, 5, 7, 10, 12) == pytest.approx(self.image[7:19, 5:15].mean())

    def test_area_average_is_vectorised(self):
        averages = area_average(self.integral, np.array([0, 10]), np.array([0, 20]), 8, 8)
        assert averages.shape == (2,)
        assert averages[1] == pytest.approx(self.image[20:28, 10:18].mean())

    def test_rectangles_are_clipped(self):
        assert area_average(self.integral, 25, 35, 10, 10) == pytest.approx(self.image[35:40, 25:30].mean())

    def test_empty_intersection_averages_to_zero(self):
        assert area_average(self.integral, 100, 100, 5, 5) == 0.0


class TestSignalEvaluator:
    def test_both_images_must_pass(self):
        ref = np.full((32, 32), 50.0)
        target = np.zeros((32, 32))
        target[:, 16:] = 50.0
        evaluator = SignalEvaluator(ref, target)

        passes = evaluator.passes_threshold(np.array([0, 16]), np.array([0, 0]), 16, 16, 1.0)

        assert passes.tolist() == [False, True]

    def test_reference_only(self):
        evaluator = SignalEvaluator(np.full((16, 16), 5.0))
        assert bool(evaluator.passes_threshold(0, 0, 8, 8, 1.0))
        assert not bool(evaluator.passes_threshold(0, 0, 8, 8, 5.0))


class TestSamplePositions:
    def test_uniform_and_count(self):
        positions = SamplePositions.uniform([1, 2, 3], [4, 5, 6], 32)
        assert positions.count == 3
        assert len(positions) == 3
        assert positions.tile_sizes() == [32]

    def test_empty(self):
        assert SamplePositions.empty().count == 0

    def test_deduplicated_keeps_first_occurrence_order(self):
        positions = SamplePositions(
            np.array([5, 1, 5, 3]), np.array([5, 1, 5, 3]), np.array([32, 32, 32, 64])
        )
        unique = positions.deduplicated()
        assert unique.x.tolist() == [5, 1, 3]
        assert unique.tile_size.tolist() == [32, 32, 64]


class TestGridSampling:
    def setup_method(self):
        self.image = np.full((256, 256), 100.0, dtype=np.float32)

    def test_lattice_positions_are_tile_centres(self):
        strategy = GridSamplingStrategy(0.5)
        positions = strategy.select_positions(self.image, 256, 256, 64, 1.0)

        assert positions.count == 49
        assert positions.x.min() == 32
        assert positions.x.max() == 224
        assert set(positions.tile_size.tolist()) == {64}

    def test_background_tiles_are_skipped(self):
        image = self.image.copy()
        image[:, :128] = 0.0
        positions = GridSamplingStrategy(0.5).select_positions(image, 256, 256, 64, 1.0)

        # Tiles entirely inside the dark half are dropped, the straddling one is kept
        assert positions.count > 0
        assert positions.x.min() - 32 == 96

    def test_step_has_a_lower_bound(self):
        strategy = GridSamplingStrategy(0.25)
        assert strategy.output_grid_step(16, 0.25) == 8
        assert strategy.output_grid_step(64, 0.5) == 32

    def test_image_smaller_than_tile(self):
        positions = GridSamplingStrategy(0.5).select_positions(self.image[:16, :16], 16, 16, 32, 1.0)
        assert positions.count == 0


class TestInterestPointSampling:
    def setup_method(self):
        self.image = _blobs()

    def test_points_respect_minimum_spacing(self):
        strategy = InterestPointSamplingStrategy()
        positions = strategy.select_positions(self.image, 256, 256, 32, 1.0)

        assert positions.count > 0
        pts = np.stack([positions.x, positions.y], axis=1).astype(float)
        for i in range(len(pts)):
            for j in range(i + 1, len(pts)):
                assert np.hypot(*(pts[i] - pts[j])) >= 16

    def test_points_lie_inside_the_image(self):
        positions = InterestPointSamplingStrategy().select_positions(self.image, 256, 256, 32, 1.0)
        assert np.all(positions.x - 16 >= 0)
        assert np.all(positions.x + 16 <= 256)
        assert np.all(positions.y - 16 >= 0)
        assert np.all(positions.y + 16 <= 256)

    def test_multiscale_layers(self):
        positions = InterestPointSamplingStrategy(multiscale=True).select_positions(self.image, 256, 256, 64, 1.0)
        assert set(positions.tile_sizes()) <= {128, 64, 32}
        assert 128 in positions.tile_sizes()

    def test_repeated_points_are_emitted_once(self, monkeypatch):
        def add_layer(strategy, points, *args):
            points.extend([(40, 40, 32, 2.0), (60, 40, 32, 1.5), (40, 40, 32, 1.0)])

        monkeypatch.setattr(InterestPointSamplingStrategy, "_add_layer", add_layer)
        positions = InterestPointSamplingStrategy().select_positions(self.image, 256, 256, 32, 1.0)

        assert positions.x.tolist() == [40, 60]
        assert positions.y.tolist() == [40, 40]

    def test_output_step_is_tile_size(self):
        assert InterestPointSamplingStrategy().output_grid_step(64, 0.5) == 64

    def test_flat_image_has_no_points(self):
        flat = np.full((128, 128), 50.0, dtype=np.float32)
        assert InterestPointSamplingStrategy().select_positions(flat, 128, 128, 32, 1.0).count == 0


def test_strategy_factory():
    assert isinstance(create_sampling_strategy(False, 0.5), GridSamplingStrategy)
    strategy = create_sampling_strategy(True, 0.5, multiscale=True)
    assert isinstance(strategy, InterestPointSamplingStrategy)
    assert strategy.multiscale
