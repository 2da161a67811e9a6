"""Exception hierarchy for ImagePredictor.

Only setup and dispatch problems are raised to callers of
``Predictor.predict``. Anything discovered after the engine accepts a
request is reported as a ``None`` prediction instead.
"""

from __future__ import annotations


class PredictorError(Exception):
    """Base class for all ImagePredictor errors."""


class ImageDecodeError(PredictorError, ValueError):
    """Raised when input bytes cannot be decoded into an image."""


class PixelBufferError(PredictorError):
    """Raised when a decoded image has no usable pixel data."""


class ClassifierLoadError(PredictorError):
    """Raised when the shared classifier could not be constructed.

    Once raised for a process, the same error is raised for every later
    request; loading is never retried.
    """


class DispatchError(PredictorError):
    """Raised when the classification engine rejects a request."""
