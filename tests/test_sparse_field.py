import numpy as np
import pytest

from dedistort_backend.displacement import DisplacementSamples
from dedistort_backend.sparse_field import InterpolationMethod, SparseDistortionField


def _constant_field(method=InterpolationMethod.RBF_THIN_PLATE, dx=1.5, dy=-0.5, n=40):
    np.random.seed(42)
    builder = SparseDistortionField.builder(256, 256).interpolation_method(method)
    for x, y in np.random.uniform(0, 256, (n, 2)):
        builder.add_sample(x, y, dx, dy, 32, 1.0)
    return builder.build()


class TestSparseDistortionField:
    @pytest.mark.parametrize("method", list(InterpolationMethod))
    def test_constant_field_is_reproduced(self, method):
        field = _constant_field(method)
        result = field.query_many(np.array([[10.0, 10.0], [128.0, 200.0], [250.0, 3.0]]))
        assert np.allclose(result[:, 0], 1.5)
        assert np.allclose(result[:, 1], -0.5)

    def test_exact_hit_returns_the_sample(self):
        field = (SparseDistortionField.builder(100, 100)
                 .add_sample(10, 10, 1.0, 0.0, 32)
                 .add_sample(50, 50, -3.0, 2.0, 32)
                 .add_sample(90, 10, 0.0, 5.0, 32)
                 .build())
        assert field.query(50, 50) == pytest.approx((-3.0, 2.0))

    def test_empty_field_gives_zero(self):
        field = SparseDistortionField.builder(64, 64).build()
        assert field.sample_count == 0
        assert field.query(10, 10) == (0.0, 0.0)

    def test_k_is_limited_by_sample_count(self):
        field = (SparseDistortionField.builder(64, 64)
                 .neighbors_k(12)
                 .add_sample(32, 32, 2.0, 1.0, 32)
                 .build())
        assert field.query(0, 0) == pytest.approx((2.0, 1.0))

    def test_nearer_samples_dominate(self):
        field = (SparseDistortionField.builder(200, 200)
                 .interpolation_method(InterpolationMethod.IDW)
                 .add_sample(10, 10, 4.0, 0.0, 32)
                 .add_sample(190, 190, 0.0, 0.0, 32)
                 .build())
        dx, _ = field.query(20, 20)
        assert dx > 3.5

    def test_tile_weighting_favours_large_tiles(self):
        def build(weighting):
            return (SparseDistortionField.builder(200, 200)
                    .use_tile_weighting(weighting)
                    .base_tile_size(64)
                    .add_sample(90, 100, 1.0, 0.0, 128)
                    .add_sample(110, 100, -1.0, 0.0, 32)
                    .build())
        unweighted = build(False).query(100, 100)[0]
        weighted = build(True).query(100, 100)[0]
        assert unweighted == pytest.approx(0.0, abs=1e-9)
        assert weighted > 0.5

    def test_builder_grows_and_accepts_batches(self):
        n = 3000
        idx = np.arange(n, dtype=np.float64)
        batch = DisplacementSamples(idx % 100, idx // 100, np.ones(n), np.zeros(n), np.full(n, 32), np.ones(n))
        field = SparseDistortionField.builder(100, 100).add_samples(batch).build()
        assert field.sample_count == n
        assert field.total_distorsion() == pytest.approx(n)

    def test_to_regular_grid(self):
        field = _constant_field()
        dmap = field.to_regular_grid(32)
        assert dmap.step == 32
        assert dmap.sampled.all()
        assert np.allclose(dmap.grid[:, :, 0], 1.5)
        assert np.allclose(dmap.grid[:, :, 1], -0.5)
