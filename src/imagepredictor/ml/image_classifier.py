"""Classification result and engine observation types."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction returned to callers."""

    label: str
    confidence: float


@dataclass(frozen=True)
class ClassificationObservation:
    """One ranked label slot produced by the engine for an image."""

    identifier: str
    confidence: float


@dataclass(frozen=True)
class FeatureValueObservation:
    """Raw model output that is not a distribution over the model's labels.

    Produced when the loaded model is not an image classifier, e.g. an
    embedding model.
    """

    values: NDArray[np.float32]
    confidence: float = 1.0


Observation = ClassificationObservation | FeatureValueObservation
