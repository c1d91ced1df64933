"""Product image classifier.

Runs an ONNX image-classification model over a captured photo and returns
the product categories ranked by confidence.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

import numpy as np

from catalogsnap.errors import InferenceError
from catalogsnap.ml.preprocessing import preprocess_for_classification

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from catalogsnap.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)


class Orientation(StrEnum):
    """The eight canonical image orientations."""

    UP = "up"
    UP_MIRRORED = "up_mirrored"
    DOWN = "down"
    DOWN_MIRRORED = "down_mirrored"
    LEFT = "left"
    LEFT_MIRRORED = "left_mirrored"
    RIGHT = "right"
    RIGHT_MIRRORED = "right_mirrored"

    @classmethod
    def from_exif(cls, value: int) -> Orientation:
        """Map an EXIF orientation tag (1-8) to an Orientation."""
        try:
            return _EXIF_ORIENTATIONS[value]
        except KeyError:
            raise ValueError(f"Invalid EXIF orientation: {value}") from None


_EXIF_ORIENTATIONS: dict[int, Orientation] = {
    1: Orientation.UP,
    2: Orientation.UP_MIRRORED,
    3: Orientation.DOWN,
    4: Orientation.DOWN_MIRRORED,
    5: Orientation.LEFT_MIRRORED,
    6: Orientation.RIGHT,
    7: Orientation.RIGHT_MIRRORED,
    8: Orientation.LEFT,
}


@dataclass(frozen=True)
class ImageSample:
    """A captured photo: encoded image bytes plus its orientation tag."""

    data: bytes
    orientation: Orientation = Orientation.UP


@dataclass(frozen=True)
class Classification:
    """A single classification prediction."""

    label: str
    confidence: float


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, sample: ImageSample) -> list[Classification]:
        """Classify an image and return ranked product categories.

        Args:
            sample: Encoded image and orientation tag.

        Returns:
            List of classifications sorted by confidence (descending).

        Raises:
            DecodeError: If the sample does not decode to a non-empty image.
            InferenceError: If the model cannot be loaded or run.
        """
        ...


def rank_scores(labels: list[str], scores: NDArray[np.float32]) -> list[Classification]:
    """Pair scores with labels, highest first.

    Ties keep model output order (stable sort).
    """
    if len(labels) != len(scores):
        raise ValueError(f"Model produced {len(scores)} scores for {len(labels)} labels")
    order = np.argsort(-scores, kind="stable")
    return [Classification(label=labels[i], confidence=float(np.clip(scores[i], 0.0, 1.0))) for i in order]


def softmax(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = logits - np.max(logits)
    exp = np.exp(shifted)
    return exp / exp.sum()


class OnnxImageClassifier:
    """ImageClassifier backed by an ONNX Runtime session."""

    def __init__(
        self,
        model_manager: ModelManager,
        model_name: str,
        *,
        input_size: int = 224,
        apply_softmax: bool = True,
        max_image_pixels: int = 16_777_216,
    ) -> None:
        self._model_manager = model_manager
        self._model_name = model_name
        self._default_input_size = input_size
        self._apply_softmax = apply_softmax
        self._max_image_pixels = max_image_pixels

    @property
    def model_name(self) -> str:
        return self._model_name

    def classify(self, sample: ImageSample) -> list[Classification]:
        try:
            session = self._model_manager.get_session(self._model_name)
            labels = self._model_manager.get_labels(self._model_name)
        except Exception as exc:
            raise InferenceError(
                f"Model '{self._model_name}' is unavailable: {exc}", stage="classifying", cause=exc
            ) from exc

        model_input = session.get_inputs()[0]
        size = self._input_size(model_input.shape)
        tensor = preprocess_for_classification(sample.data, sample.orientation, size, self._max_image_pixels)

        try:
            outputs = session.run(None, {model_input.name: tensor})
            scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
            if self._apply_softmax:
                scores = softmax(scores)
            ranked = rank_scores(labels, scores)
        except Exception as exc:
            raise InferenceError(f"Inference failed: {exc}", stage="classifying", cause=exc) from exc

        if ranked:
            logger.debug("Top classification %s (%.3f)", ranked[0].label, ranked[0].confidence)
        return ranked

    def _input_size(self, shape: list[int | str | None]) -> int:
        # Static NCHW shapes carry the size; dynamic ones fall back to the registry value.
        if len(shape) == 4 and isinstance(shape[2], int) and shape[2] > 0:
            return shape[2]
        return self._default_input_size
