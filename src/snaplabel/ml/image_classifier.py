"""Image classification models.

The inference engine itself is opaque: ``OnnxImageClassifier`` only adapts an
RGB tensor to the model's input layout and turns raw scores into ranked
predictions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal, Protocol

import numpy as np
from PIL import Image

from snaplabel.errors import InferenceError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from snaplabel.ml.tensor import InputTensor


@dataclass(frozen=True)
class Prediction:
    """A single classification prediction."""

    label: str
    probability: float


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, tensor: InputTensor) -> list[Prediction]:
        """Classify an image tensor and return ranked predictions.

        Args:
            tensor: HxWx3 RGB uint8 tensor.

        Returns:
            Top-k predictions sorted by probability (descending).
        """
        ...


class OnnxImageClassifier:
    """Runs an ONNX classification model over RGB tensors."""

    def __init__(
        self,
        model_name: str,
        session: InferenceSession,
        labels: Sequence[str],
        *,
        input_size: int,
        layout: Literal["nchw", "nhwc"],
        mean: tuple[float, float, float],
        std: tuple[float, float, float],
        apply_softmax: bool,
        top_k: int,
    ) -> None:
        self._model_name = model_name
        self._session = session
        self._labels = list(labels)
        self._input_name = session.get_inputs()[0].name
        self._input_size = input_size
        self._layout = layout
        self._mean = np.asarray(mean, dtype=np.float32)
        self._std = np.asarray(std, dtype=np.float32)
        self._apply_softmax = apply_softmax
        self._top_k = top_k

    @property
    def model_name(self) -> str:
        return self._model_name

    def classify(self, tensor: InputTensor) -> list[Prediction]:
        batch = self.preprocess(tensor)
        outputs = self._session.run(None, {self._input_name: batch})
        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)

        if scores.shape[0] != len(self._labels):
            raise InferenceError(
                f"Model '{self._model_name}' produced {scores.shape[0]} scores for {len(self._labels)} labels"
            )
        if self._apply_softmax:
            scores = _softmax(scores)

        k = min(self._top_k, scores.shape[0])
        top = np.argsort(scores)[::-1][:k]
        return [Prediction(label=self._labels[i], probability=float(scores[i])) for i in top]

    def preprocess(self, tensor: InputTensor) -> NDArray[np.float32]:
        """Resize, normalize, and lay out a tensor as a batch of one."""
        image = Image.fromarray(tensor.data)
        if image.size != (self._input_size, self._input_size):
            image = image.resize((self._input_size, self._input_size), Image.Resampling.BILINEAR)

        arr = np.asarray(image, dtype=np.float32) / 255.0
        arr = (arr - self._mean) / self._std
        if self._layout == "nchw":
            arr = np.transpose(arr, (2, 0, 1))
        return np.expand_dims(arr, 0).astype(np.float32)


def _softmax(scores: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = np.exp(scores - np.max(scores))
    return shifted / shifted.sum()
