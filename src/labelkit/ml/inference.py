"""Inference concurrency layer.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> ONNX inference

Requests beyond the semaphore limit queue with a 5s timeout, then get 503.
Streamed frames bypass the queue: a single-slot FrameThrottle drops any frame
that arrives while another one is still being classified.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import TYPE_CHECKING, TypeVar

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from numpy.typing import NDArray

    from labelkit.config import Settings
    from labelkit.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEMAPHORE_TIMEOUT_SECONDS: float = 5.0


class InferencePool:
    """Manages the semaphore and thread pool for ML inference."""

    def __init__(self, settings: Settings) -> None:
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="onnx-inference",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Submit a synchronous function to the inference thread pool.

        Acquires the semaphore (with timeout), runs the function in the
        executor, then releases.

        Raises:
            TimeoutError: If the semaphore cannot be acquired within the timeout.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(
                self._semaphore.acquire(),
                timeout=SEMAPHORE_TIMEOUT_SECONDS,
            )
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active_count -= 1

    @property
    def active_count(self) -> int:
        """Number of currently running inference tasks."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a semaphore slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)


class FrameThrottle:
    """Single-slot in-flight guard for streamed frames.

    At most one frame is processed at a time. A frame offered while the slot
    is taken is dropped, never queued. There is no cancellation: once a frame
    holds the slot it runs to completion and frees it, success or failure.
    """

    def __init__(self) -> None:
        self._slot = threading.Lock()
        self._counter_lock = threading.Lock()
        self._dropped: int = 0

    def try_acquire(self) -> bool:
        """Take the slot if it is free; count a dropped frame otherwise."""
        if self._slot.acquire(blocking=False):
            return True
        with self._counter_lock:
            self._dropped += 1
        return False

    def release(self) -> None:
        self._slot.release()

    @contextmanager
    def slot(self) -> Iterator[bool]:
        """Yield whether the slot was acquired; release it on exit if so."""
        acquired = self.try_acquire()
        try:
            yield acquired
        finally:
            if acquired:
                self.release()

    @property
    def in_flight(self) -> bool:
        return self._slot.locked()

    @property
    def dropped_count(self) -> int:
        """Number of frames dropped since creation."""
        with self._counter_lock:
            return self._dropped


class OnnxInference:
    """Runs one registered model: input tensor in, raw output tensor out.

    The session is fetched from the model manager on every call so idle
    eviction and reload stay transparent to callers.
    """

    def __init__(self, manager: ModelManager, model_name: str) -> None:
        self._manager = manager
        self._model_name = model_name
        session = manager.get_session(model_name)
        self._input_name: str = session.get_inputs()[0].name

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def num_classes(self) -> int | None:
        """Class count from the model's output shape, if it is static."""
        shape = self._manager.get_session(self._model_name).get_outputs()[0].shape
        if not shape:
            return None
        last = shape[-1]
        return last if isinstance(last, int) else None

    def __call__(self, tensor: NDArray[np.generic]) -> NDArray[np.generic]:
        session = self._manager.get_session(self._model_name)
        outputs = session.run(None, {self._input_name: tensor})
        return np.asarray(outputs[0])
