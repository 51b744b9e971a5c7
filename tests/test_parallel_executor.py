"""
Unit tests for parallel seed processing infrastructure.

Tests SeedParallelExecutor for correctness, ordering and error handling.
"""

import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).parent.parent / "src"))

from scan_registration.acceleration import SeedParallelExecutor


# Module-level worker functions for pickling compatibility
def _simple_worker(item):
    """Simple worker that returns the item."""
    return item


def _scaling_worker(item, scale=1):
    """Worker that scales the item after a short random delay."""
    import time
    import random
    time.sleep(random.uniform(0.001, 0.01))
    return item * scale


def _error_worker(item):
    """Worker that raises an error."""
    raise ValueError(f"Intentional error on seed {item}")


class TestSeedParallelExecutor:
    """Test suite for SeedParallelExecutor."""

    def test_executor_initialization(self):
        """Test executor initializes with correct worker count."""
        executor = SeedParallelExecutor()
        assert executor.n_workers >= 1

        executor = SeedParallelExecutor(n_workers=4)
        assert executor.n_workers == 4

        # Minimum workers (should be at least 1)
        executor = SeedParallelExecutor(n_workers=0)
        assert executor.n_workers == 1

    def test_sequential_fallback_one_seed(self):
        """Test executor uses sequential processing for a single seed."""
        executor = SeedParallelExecutor(n_workers=4)
        results = executor.map_seeds(items=[7], worker_fn=_scaling_worker, worker_kwargs={'scale': 2})
        assert results == [14]

    def test_sequential_fallback_one_worker(self):
        """Test executor uses sequential processing with 1 worker."""
        executor = SeedParallelExecutor(n_workers=1)
        results = executor.map_seeds(items=list(range(5)), worker_fn=_scaling_worker, worker_kwargs={'scale': 1})
        assert results == [0, 1, 2, 3, 4]

    def test_parallel_processing_order_preserved(self):
        """Test parallel processing preserves seed order."""
        executor = SeedParallelExecutor(n_workers=2)
        results = executor.map_seeds(items=list(range(10)), worker_fn=_scaling_worker, worker_kwargs={'scale': 3})
        assert results == [i * 3 for i in range(10)]

    def test_empty_seed_list(self):
        """Test executor handles an empty seed list gracefully."""
        executor = SeedParallelExecutor(n_workers=4)
        assert executor.map_seeds(items=[], worker_fn=_simple_worker, worker_kwargs={}) == []

    def test_worker_error_handling(self):
        """Test executor reports worker errors."""
        executor = SeedParallelExecutor(n_workers=2)
        with pytest.raises(RuntimeError, match="failed"):
            executor.map_seeds(items=list(range(5)), worker_fn=_error_worker, worker_kwargs={})

    def test_sequential_error_handling(self):
        """Test the sequential path wraps worker errors."""
        executor = SeedParallelExecutor(n_workers=1)
        with pytest.raises(RuntimeError, match="Seed processing failed"):
            executor.map_seeds(items=[1, 2], worker_fn=_error_worker, worker_kwargs={})

    def test_progress_callback(self):
        """Test progress callback is called once per seed."""
        executor = SeedParallelExecutor(n_workers=2)
        progress_calls = []

        def progress_callback(completed, total):
            progress_calls.append((completed, total))

        executor.map_seeds(
            items=list(range(5)),
            worker_fn=_simple_worker,
            worker_kwargs={},
            progress_callback=progress_callback,
        )

        assert len(progress_calls) == 5
        assert progress_calls[-1] == (5, 5)


class TestWorkerFunctions:
    """Test suite for worker functions."""

    def test_worker_is_picklable(self):
        """Test that the seed worker can be pickled for multiprocessing."""
        import pickle
        from scan_registration.alignment.fine_registration import refine_seed

        assert pickle.loads(pickle.dumps(refine_seed)) is refine_seed

    def test_seed_inputs_are_picklable(self):
        """Test that seeds and pyramid levels survive a pickle round trip."""
        import pickle
        import numpy as np
        from scan_registration.alignment.coarse_registration import CoarseSeed
        from scan_registration.preprocessing.pyramid import PointCloud
        from scan_registration.utils.transforms import Pose

        seed = CoarseSeed(pose=Pose.from_translation([1.0, 2.0, 3.0]), yaw_degrees=90.0)
        cloud = PointCloud.from_points(np.random.default_rng(0).random((20, 3)), voxel_size=0.1)

        seed_copy = pickle.loads(pickle.dumps(seed))
        cloud_copy = pickle.loads(pickle.dumps(cloud))

        np.testing.assert_array_equal(seed_copy.pose.matrix, seed.pose.matrix)
        assert seed_copy.yaw_degrees == 90.0
        np.testing.assert_array_equal(cloud_copy.points, cloud.points)
        assert cloud_copy.voxel_size == 0.1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
