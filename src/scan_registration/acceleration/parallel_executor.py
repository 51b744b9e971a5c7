"""
Parallel execution infrastructure for seed-level refinement.

Provides SeedParallelExecutor for distributing independent ICP seeds across
multiple CPU cores using multiprocessing.
"""

from __future__ import annotations

import logging
import time
from multiprocessing import Pool, cpu_count
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


def _worker_wrapper(args: Tuple[int, Any, Callable, Dict[str, Any]]) -> Tuple[int, Any, Optional[str]]:
    """
    Worker wrapper function for parallel seed processing.

    Must be at module level for pickling on Windows.

    Args:
        args: Tuple of (seed_index, seed, worker_fn, worker_kwargs)

    Returns:
        Tuple of (seed_index, result, error_message)
    """
    idx, item, worker_fn, worker_kwargs = args
    try:
        result = worker_fn(item, **worker_kwargs)
        return (idx, result, None)
    except Exception as e:
        error_msg = f"{type(e).__name__}: {str(e)}"
        logger.error(f"Worker error on seed {idx}: {error_msg}")
        return (idx, None, error_msg)


class SeedParallelExecutor:
    """
    Parallel executor for independent registration seeds.

    Manages the worker pool, distributes seeds to workers and collects results
    in input order. Work items and worker kwargs must be picklable.

    Example:
        executor = SeedParallelExecutor(n_workers=4)
        results = executor.map_seeds(
            items=seeds,
            worker_fn=refine_seed,
            worker_kwargs={'model_pyramid': model_pyr, 'scan_pyramid': scan_pyr, ...}
        )
    """

    def __init__(self, n_workers: Optional[int] = None):
        """
        Initialize parallel executor.

        Args:
            n_workers: Number of worker processes. If None, uses cpu_count - 1
                to leave one core for coordination. Minimum is 1.
        """
        if n_workers is None:
            n_workers = max(1, cpu_count() - 1)
        else:
            n_workers = max(1, int(n_workers))

        self.n_workers = n_workers

        logger.info(
            f"Initialized SeedParallelExecutor with {self.n_workers} workers "
            f"(total CPUs: {cpu_count()})"
        )

    def map_seeds(
        self,
        items: List[Any],
        worker_fn: Callable,
        worker_kwargs: Dict[str, Any],
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> List[Any]:
        """
        Map worker function over seeds in parallel.

        Args:
            items: Work items (typically CoarseSeed objects)
            worker_fn: Function applied to each item. Must be picklable and
                have signature: worker_fn(item, **worker_kwargs) -> result
            worker_kwargs: Fixed keyword arguments passed to each worker call
            progress_callback: Optional callback called after each item
                completes. Signature: callback(completed_count, total_count)

        Returns:
            List of results in the same order as ``items``

        Raises:
            RuntimeError: If any worker fails
        """
        n_items = len(items)

        if n_items == 0:
            logger.warning("No seeds to process")
            return []

        logger.info(f"Processing {n_items} seeds with {self.n_workers} workers")
        start_time = time.time()

        # If only 1 worker or 1 seed, use sequential processing (no pool overhead)
        if self.n_workers == 1 or n_items == 1:
            logger.info("Using sequential processing (1 worker or 1 seed)")
            results = []
            for i, item in enumerate(items):
                try:
                    results.append(worker_fn(item, **worker_kwargs))
                except Exception as e:
                    logger.error(f"Error processing seed {i}: {e}", exc_info=True)
                    raise RuntimeError(f"Seed processing failed: {e}") from e
                if progress_callback:
                    progress_callback(i + 1, n_items)

            total_time = time.time() - start_time
            logger.info(f"Sequential processing complete: {n_items} seeds in {total_time:.1f}s")
            return results

        results = self._parallel_map(items, worker_fn, worker_kwargs, progress_callback)
        total_time = time.time() - start_time
        logger.info(f"Parallel processing complete: {n_items} seeds in {total_time:.1f}s")
        return results

    def _parallel_map(
        self,
        items: List[Any],
        worker_fn: Callable,
        worker_kwargs: Dict[str, Any],
        progress_callback: Optional[Callable],
    ) -> List[Any]:
        """
        Execute parallel mapping using multiprocessing.Pool.

        Uses imap_unordered for responsiveness, then reorders results to match
        input order.
        """
        n_items = len(items)
        worker_args = [(i, item, worker_fn, worker_kwargs) for i, item in enumerate(items)]

        results_dict: Dict[int, Any] = {}
        errors = []
        with Pool(processes=min(self.n_workers, n_items)) as pool:
            for completed, (idx, result, error) in enumerate(
                pool.imap_unordered(_worker_wrapper, worker_args), start=1
            ):
                if error:
                    errors.append((idx, error))
                    logger.error(f"Seed {idx} failed: {error}")
                else:
                    results_dict[idx] = result

                if progress_callback:
                    progress_callback(completed, n_items)

        if errors:
            error_msg = f"{len(errors)} seeds failed out of {n_items}"
            logger.error(error_msg)
            for idx, error in errors[:5]:
                logger.error(f"  Seed {idx}: {error}")
            if len(errors) > 5:
                logger.error(f"  ... and {len(errors) - 5} more errors")
            raise RuntimeError(f"{error_msg}: " + "; ".join(err for _, err in errors[:5]))

        return [results_dict[i] for i in range(n_items)]
