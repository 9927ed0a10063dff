"""Classification pipeline: resolve -> decode -> pack -> infer."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from snaplabel.errors import ClassificationError

if TYPE_CHECKING:
    from snaplabel.ml.decoder import JpegDecoder
    from snaplabel.ml.image_classifier import Prediction
    from snaplabel.ml.model_registry import ModelRegistry
    from snaplabel.ml.source import ImageReference, ImageSourceResolver
    from snaplabel.ml.tensor import TensorPacker

logger = logging.getLogger(__name__)


class ClassificationOrchestrator:
    """Runs the classification pipeline for one request at a time.

    Stages run strictly in order and each is attempted once. The first
    failure propagates as its stage-tagged ClassificationError and no later
    stage runs. Concurrent calls are independent of each other.
    """

    def __init__(
        self,
        resolver: ImageSourceResolver,
        decoder: JpegDecoder,
        packer: TensorPacker,
        registry: ModelRegistry,
    ) -> None:
        self._resolver = resolver
        self._decoder = decoder
        self._packer = packer
        self._registry = registry

    async def classify(self, reference: ImageReference, model_id: str | None = None) -> list[Prediction]:
        """Classify the image behind ``reference`` (active model when ``model_id`` is None)."""
        try:
            raw = await self._resolver.resolve(reference)
        except ClassificationError as exc:
            logger.warning("Classification of %s failed: %s", reference.uri[:128], exc)
            raise
        return await self.classify_bytes(raw, model_id)

    async def classify_bytes(self, raw: bytes, model_id: str | None = None) -> list[Prediction]:
        """Classify already-resolved JPEG bytes."""
        target = model_id or self._registry.active_model_id
        try:
            decoded = self._decoder.decode(raw)
            tensor = self._packer.pack(decoded)
            predictions = await self._registry.infer(target, tensor)
        except ClassificationError as exc:
            logger.warning("Classification with %s failed: %s", target, exc)
            raise

        logger.info(
            "Classified %dx%d image with %s (top: %s)",
            decoded.width,
            decoded.height,
            target,
            predictions[0].label if predictions else "-",
        )
        return predictions
