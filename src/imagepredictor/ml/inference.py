"""Asynchronous classification engine.

Architecture:
    perform(requests) -> ThreadPoolExecutor(N) -> ONNX inference -> request.completion_handler

``perform`` only hands requests to the worker pool and returns. Each request
later gets exactly one call to its completion handler, on a worker thread,
with either ``request.results`` filled in or an error.
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np

from imagepredictor.errors import DispatchError
from imagepredictor.ml.image_classifier import ClassificationObservation, FeatureValueObservation
from imagepredictor.ml.preprocessing import (
    ImageCropAndScaleOption,
    Orientation,
    apply_orientation,
    crop_and_scale,
    to_input_tensor,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from numpy.typing import NDArray

    from imagepredictor.ml.image_classifier import Observation
    from imagepredictor.ml.model_manager import ClassifierHandle

logger = logging.getLogger(__name__)


def _new_request_id() -> str:
    return uuid.uuid4().hex


@dataclass(eq=False)
class ClassificationRequest:
    """A single image classification request.

    ``results`` stays ``None`` until the engine completes the request
    successfully.
    """

    classifier: ClassifierHandle
    completion_handler: Callable[[ClassificationRequest, BaseException | None], None]
    crop_and_scale: ImageCropAndScaleOption = ImageCropAndScaleOption.CENTER_CROP
    request_id: str = field(default_factory=_new_request_id)
    results: list[Observation] | None = None


class ClassificationEngine:
    """Runs classification requests on a worker pool."""

    def __init__(self, max_workers: int) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="onnx-inference",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._closed = False
        self._counter_lock = threading.Lock()

    def perform(
        self,
        requests: Sequence[ClassificationRequest],
        pixels: NDArray[np.uint8],
        orientation: Orientation = Orientation.UP,
    ) -> None:
        """Schedule ``requests`` against one image and return immediately.

        Raises:
            DispatchError: If there is nothing to perform or the engine no
                longer accepts work.
        """
        if not requests:
            raise DispatchError("No requests to perform")

        for request in requests:
            with self._counter_lock:
                if self._closed:
                    raise DispatchError("Classification engine is shut down")
                self._queue_depth += 1
            try:
                self._executor.submit(self._run, request, pixels, orientation)
            except RuntimeError as exc:
                with self._counter_lock:
                    self._queue_depth -= 1
                raise DispatchError(f"Cannot schedule request {request.request_id}: {exc}") from exc

    @property
    def active_count(self) -> int:
        """Number of currently running classification jobs."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of jobs waiting for a worker."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Stop accepting work and wait for running jobs to finish."""
        with self._counter_lock:
            self._closed = True
        self._executor.shutdown(wait=True)

    # -- Internal -----------------------------------------------------------

    def _run(self, request: ClassificationRequest, pixels: NDArray[np.uint8], orientation: Orientation) -> None:
        with self._counter_lock:
            self._queue_depth -= 1
            self._active_count += 1

        error: BaseException | None = None
        try:
            request.results = self._classify(request, pixels, orientation)
        except BaseException as exc:
            request.results = None
            error = exc
        finally:
            with self._counter_lock:
                self._active_count -= 1

        try:
            request.completion_handler(request, error)
        except Exception:
            logger.exception("Completion handler for request %s raised", request.request_id)

        # The handler has seen it; let interpreter-level exits keep unwinding.
        if error is not None and not isinstance(error, Exception):
            raise error

    @staticmethod
    def _classify(
        request: ClassificationRequest,
        pixels: NDArray[np.uint8],
        orientation: Orientation,
    ) -> list[Observation]:
        handle = request.classifier
        upright = apply_orientation(pixels, orientation)
        fitted = crop_and_scale(upright, handle.input_size, request.crop_and_scale)
        tensor = to_input_tensor(fitted, handle.mean, handle.std)
        outputs = handle.session.run(None, {handle.input_name: tensor})
        return build_observations(outputs[0], handle.labels, apply_softmax=handle.apply_softmax)


def softmax(scores: NDArray[np.float32]) -> NDArray[np.float32]:
    exp = np.exp(scores - np.max(scores))
    return (exp / exp.sum()).astype(np.float32)


def build_observations(
    output: NDArray[np.float32],
    labels: Sequence[str],
    *,
    apply_softmax: bool,
) -> list[Observation]:
    """Turn a single-image model output into observations.

    Classification observations are ranked by descending confidence. An
    output whose width does not match ``labels`` yields a single
    ``FeatureValueObservation``.
    """
    scores = np.asarray(output, dtype=np.float32).reshape(-1)
    if scores.size != len(labels):
        return [FeatureValueObservation(values=scores)]

    if apply_softmax:
        scores = softmax(scores)

    order = np.argsort(-scores, kind="stable")
    return [ClassificationObservation(identifier=labels[i], confidence=float(scores[i])) for i in order]
