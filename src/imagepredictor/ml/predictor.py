"""Image predictor: runs the shared classifier on an image and reports ranked labels.

Each call to ``Predictor.predict``:

- reads the image's EXIF orientation and extracts its pixel buffer
- gets the shared classifier handle, building it on first use
- registers the caller's completion handler under a fresh request id
- dispatches one classification request to the engine

The engine later calls ``_handle_completion`` on a worker thread, which
converts the observations into ``ClassificationResult`` values and calls the
caller's handler exactly once.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from typing import TYPE_CHECKING

from imagepredictor.errors import DispatchError
from imagepredictor.ml.image_classifier import ClassificationObservation, ClassificationResult
from imagepredictor.ml.inference import ClassificationRequest
from imagepredictor.ml.preprocessing import ImageCropAndScaleOption, extract_pixel_buffer, read_orientation

if TYPE_CHECKING:
    from PIL import Image

    from imagepredictor.ml.inference import ClassificationEngine
    from imagepredictor.ml.model_manager import SharedClassifier

logger = logging.getLogger(__name__)

PredictionHandler = Callable[[list[ClassificationResult] | None], None]


class Predictor:
    """Makes image classification predictions with a shared classifier."""

    def __init__(
        self,
        classifier: SharedClassifier,
        engine: ClassificationEngine,
        crop_and_scale: ImageCropAndScaleOption = ImageCropAndScaleOption.CENTER_CROP,
    ) -> None:
        self._classifier = classifier
        self._engine = engine
        self._crop_and_scale = crop_and_scale
        self._lock = threading.Lock()
        self._pending: dict[str, PredictionHandler] = {}

    @property
    def pending_count(self) -> int:
        """Number of dispatched requests still waiting for completion."""
        with self._lock:
            return len(self._pending)

    def predict(self, image: Image.Image, on_complete: PredictionHandler) -> None:
        """Classify ``image`` and call ``on_complete`` with the ranked results.

        ``on_complete`` runs once, on an engine worker thread, with ``None``
        when classification fails after dispatch.

        Raises:
            PixelBufferError: The image has no usable pixel data.
            ClassifierLoadError: The shared classifier could not be built.
            DispatchError: The engine rejected the request.

        ``on_complete`` is never called when this method raises.
        """
        orientation = read_orientation(image)
        pixels = extract_pixel_buffer(image)
        classifier = self._classifier.get()

        request = ClassificationRequest(
            classifier=classifier,
            completion_handler=self._handle_completion,
            crop_and_scale=self._crop_and_scale,
        )

        with self._lock:
            self._pending[request.request_id] = on_complete

        try:
            self._engine.perform([request], pixels, orientation)
        except DispatchError:
            with self._lock:
                self._pending.pop(request.request_id, None)
            raise

    async def predict_async(self, image: Image.Image) -> list[ClassificationResult] | None:
        """Awaitable form of ``predict``; resolves with the handler's argument.

        The setup phase (pixel extraction, first classifier load) runs in a
        worker thread so the event loop keeps serving other requests.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[list[ClassificationResult] | None] = loop.create_future()

        def resolve(predictions: list[ClassificationResult] | None) -> None:
            loop.call_soon_threadsafe(_set_result, future, predictions)

        await asyncio.to_thread(self.predict, image, resolve)
        return await future

    def _handle_completion(self, request: ClassificationRequest, error: BaseException | None) -> None:
        with self._lock:
            handler = self._pending.pop(request.request_id, None)

        if handler is None:
            logger.error("Every request must have a prediction handler (request %s)", request.request_id)
            return

        # Start with None in case there's a problem.
        predictions: list[ClassificationResult] | None = None
        try:
            if error is not None:
                logger.warning("Image classification error for request %s: %s", request.request_id, error)
                return

            if not request.results:
                logger.warning("Classification request %s had no results", request.request_id)
                return

            observations = [o for o in request.results if isinstance(o, ClassificationObservation)]
            if len(observations) != len(request.results):
                # Only image classifiers produce classification observations.
                logger.warning(
                    "Classification request %s produced the wrong result type: %s",
                    request.request_id,
                    sorted({type(o).__name__ for o in request.results}),
                )
                return

            predictions = [ClassificationResult(label=o.identifier, confidence=o.confidence) for o in observations]
        finally:
            handler(predictions)


def _set_result(
    future: asyncio.Future[list[ClassificationResult] | None],
    predictions: list[ClassificationResult] | None,
) -> None:
    if not future.done():
        future.set_result(predictions)
