"""Tests for the request worker pool."""

from __future__ import annotations

import asyncio
import threading
from unittest.mock import patch

import pytest

from verifyx.config import Settings
from verifyx.ml.inference import InferencePool, PoolSaturatedError


class TestInferencePool:
    async def test_runs_function_in_worker_thread(self) -> None:
        pool = InferencePool(Settings(max_concurrent=1))
        try:
            name = await pool.run(lambda: threading.current_thread().name)
        finally:
            pool.shutdown()
        assert name.startswith("verifyx-worker")

    async def test_errors_propagate(self) -> None:
        def _fail() -> None:
            raise ValueError("boom")

        pool = InferencePool(Settings(max_concurrent=1))
        try:
            with pytest.raises(ValueError, match="boom"):
                await pool.run(_fail)
            assert pool.active_count == 0
        finally:
            pool.shutdown()

    async def test_saturated_pool_rejects(self) -> None:
        release = threading.Event()
        pool = InferencePool(Settings(max_concurrent=1))
        try:
            with patch("verifyx.ml.inference.SEMAPHORE_TIMEOUT_SECONDS", 0.05):
                busy = asyncio.create_task(pool.run(release.wait, 5.0))
                await asyncio.sleep(0.01)
                assert pool.active_count == 1

                with pytest.raises(PoolSaturatedError):
                    await pool.run(lambda: None)
                assert pool.queue_depth == 0

                release.set()
                assert await busy is True
        finally:
            release.set()
            pool.shutdown()
