import importlib.util

import numpy as np
import pytest

from dedistort_backend.configuration import DeviceConfig
from dedistort_backend.device import (
    ArrayDeviceContext,
    DeviceCapabilities,
    GPUImageCache,
    GPUMemoryBudget,
    bytes_per_tile,
    compute_batch_size,
    get_device_context,
)
from dedistort_backend.distortion_map import DistortionMap, warp_image
from dedistort_runner.error_handling import AcceleratorError, PreconditionError

GIB = 10 ** 9


def _caps(global_mem=GIB, max_alloc=GIB):
    return DeviceCapabilities(name="test", global_mem_size=global_mem, max_mem_alloc_size=max_alloc)


class TestBatchSizing:
    def test_bytes_per_tile(self):
        assert bytes_per_tile(32) == 32 * 32 * 36

    def test_batch_size_from_max_allocation(self):
        assert compute_batch_size(64, _caps(max_alloc=GIB)) == 3390

    def test_batch_size_has_a_floor(self):
        assert compute_batch_size(64, _caps(max_alloc=1000)) == 100

    def test_batch_size_does_not_depend_on_free_memory(self):
        caps = _caps()
        assert compute_batch_size(32, caps) == compute_batch_size(32, caps)


class TestGPUMemoryBudget:
    def test_reserves_thirty_percent(self):
        budget = GPUMemoryBudget(_caps(), 32, 1000)

        assert budget.reserved == 300_000_000
        assert budget.available == 350_000_000
        assert budget.max_resident_images(1000, 1000) == 87
        assert budget.fits(87, 1000, 1000)
        assert not budget.fits(88, 1000, 1000)

    def test_reserves_a_full_batch(self):
        budget = GPUMemoryBudget(_caps(), 32, 20000)
        assert budget.reserved == 20000 * bytes_per_tile(32)
        assert budget.max_resident_images(1000, 1000) == 32

    def test_batch_size_uses_device_capabilities(self):
        budget = GPUMemoryBudget(_caps(max_alloc=GIB), 64, 100)
        assert budget.batch_size() == 3390


class TestArrayDeviceContext:
    def setup_method(self):
        np.random.seed(42)
        self.context = ArrayDeviceContext(np, capabilities=_caps())

    def test_operations_require_a_session(self):
        with pytest.raises(AcceleratorError):
            self.context.allocate((4, 4))

    def test_sessions_are_reentrant(self):
        assert not self.context.in_session()
        with self.context.session():
            with self.context.session():
                assert self.context.in_session()
            assert self.context.in_session()
        assert not self.context.in_session()

    def test_upload_and_read(self):
        data = np.random.uniform(0, 1, (8, 6)).astype(np.float32)
        with self.context.session():
            handle = self.context.upload(data)
            assert np.array_equal(self.context.read(handle), data)
            self.context.release(handle)
            with pytest.raises(AcceleratorError):
                self.context.read(handle)

    def test_write_checks_shape(self):
        with self.context.session():
            handle = self.context.allocate((4, 4))
            with pytest.raises(AcceleratorError):
                self.context.write(handle, np.zeros((3, 3)))

    def test_unsupported_tile_size(self):
        data = np.zeros((64, 64), dtype=np.float32)
        with self.context.session():
            handle = self.context.upload(data)
            with pytest.raises(AcceleratorError):
                self.context.batched_correlation(handle, handle, [32], [32], 16)

    def test_batched_correlation_of_identical_buffers(self):
        data = np.random.normal(100, 10, (128, 128)).astype(np.float32)
        with self.context.session():
            handle = self.context.upload(data)
            result = self.context.batched_correlation(handle, handle, np.array([32, 96]), np.array([64, 64]), 32)
        assert result.shape == (2, 3)
        assert np.allclose(result[:, :2], 0.0, atol=1e-6)

    def test_warp_matches_host_warp(self):
        data = np.random.uniform(0, 100, (64, 64)).astype(np.float32)
        dmap = DistortionMap.from_grid(16, 32, np.random.normal(0, 1, (6, 6, 2)))
        with self.context.session():
            handle = self.context.upload(data)
            self.context.warp(handle, dmap)
            warped = self.context.read(handle)
        assert np.allclose(warped, warp_image(data, dmap), atol=1e-4)

    def test_record_error(self):
        self.context.record_error("warp", RuntimeError("boom"))
        assert self.context.errors[0][0] == "warp"


class TestGPUImageCache:
    def setup_method(self):
        self.context = ArrayDeviceContext(np, capabilities=_caps())
        self.images = [np.full((4, 4), i, dtype=np.float32) for i in range(3)]

    def test_capacity_lower_bound(self):
        with pytest.raises(AcceleratorError):
            GPUImageCache(self.context, 1)

    def test_least_recently_used_is_evicted(self):
        with self.context.session():
            cache = GPUImageCache(self.context, 2)
            cache.get_or_upload(0, self.images[0])
            cache.get_or_upload(1, self.images[1])
            cache.get(0)
            cache.get_or_upload(2, self.images[2])

        assert cache.contains(0)
        assert not cache.contains(1)
        assert cache.contains(2)
        assert self.context.buffer_count == 2

    def test_get_or_upload_reuses_resident_buffer(self):
        with self.context.session():
            cache = GPUImageCache(self.context, 2)
            first = cache.get_or_upload(0, self.images[0])
            assert cache.get_or_upload(0, self.images[1]) == first
            assert self.context.read(first)[0, 0] == 0.0

    def test_replace_buffer(self):
        with self.context.session():
            cache = GPUImageCache(self.context, 2)
            handle = cache.get_or_upload(0, self.images[0])
            assert cache.replace_buffer(0, self.images[2]) == handle
            assert self.context.read(handle)[0, 0] == 2.0
            cache.replace_buffer(1, self.images[1])
        assert len(cache) == 2

    def test_release_all(self):
        with self.context.session():
            cache = GPUImageCache(self.context, 3)
            for i, image in enumerate(self.images):
                cache.get_or_upload(i, image)
            cache.release_all()
        assert len(cache) == 0
        assert self.context.buffer_count == 0

    def test_mutation_requires_a_session(self):
        with self.context.session():
            cache = GPUImageCache(self.context, 2)
        with pytest.raises(AcceleratorError):
            cache.get_or_upload(0, self.images[0])


class TestGetDeviceContext:
    def test_disabled(self):
        assert get_device_context(DeviceConfig({'device': {'enabled': False}})) is None

    def test_numpy_backend(self):
        context = get_device_context(DeviceConfig({'device': {'enabled': True, 'backend': 'numpy'}}))
        assert isinstance(context, ArrayDeviceContext)
        assert context.capabilities.name == "host"

    def test_unknown_backend(self):
        with pytest.raises(PreconditionError):
            get_device_context(DeviceConfig({'device': {'enabled': True, 'backend': 'opencl'}}))

    @pytest.mark.skipif(importlib.util.find_spec("cupy") is not None, reason="cupy is installed")
    def test_missing_cupy_falls_back_to_cpu(self):
        assert get_device_context(DeviceConfig({'device': {'enabled': True, 'backend': 'cupy'}})) is None
