"""Model registry: asynchronous load lifecycle and inference dispatch.

Each configured model moves through ``unloaded -> loading -> ready | failed``
exactly once. Loads are started at application startup; duplicate load
requests join the single in-flight task. Inference never waits for a load:
asking a model that is not ready fails immediately with ModelNotReady.

Artifacts come from the HuggingFace Hub (or a bundled file under
``models_dir``) and are wrapped in ONNX Runtime sessions.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Literal, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from snaplabel.errors import ClassificationError, InferenceError, ModelNotReady
from snaplabel.ml.image_classifier import ImageClassifier, OnnxImageClassifier

if TYPE_CHECKING:
    from collections.abc import Sequence

    from snaplabel.config import Settings
    from snaplabel.ml.image_classifier import Prediction
    from snaplabel.ml.inference import InferencePool
    from snaplabel.ml.tensor import InputTensor

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Model catalog
# ---------------------------------------------------------------------------


class ModelTask(StrEnum):
    GENERAL = "general_classification"
    SPECIALIZED = "specialized_classification"


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX classification model.

    ``repo_id=None`` means the artifact is bundled under ``models_dir``.
    """

    name: str
    repo_id: str | None
    filename: str
    labels_filename: str
    subfolder: str | None
    task: ModelTask
    license: str
    input_size: int
    layout: Literal["nchw", "nhwc"]
    mean: tuple[float, float, float] = (0.0, 0.0, 0.0)
    std: tuple[float, float, float] = (1.0, 1.0, 1.0)
    apply_softmax: bool = True

    @property
    def source(self) -> str:
        location = f"{self.subfolder}/{self.filename}" if self.subfolder else self.filename
        return f"hf://{self.repo_id}/{location}" if self.repo_id else f"bundled://{location}"


_IMAGENET_MEAN = (0.485, 0.456, 0.406)
_IMAGENET_STD = (0.229, 0.224, 0.225)

MODEL_CATALOG: dict[str, ModelSpec] = {
    "mobilenet_v2": ModelSpec(
        name="mobilenet_v2",
        repo_id="snaplabel/classification-models",
        filename="mobilenet_v2.onnx",
        labels_filename="imagenet_labels.txt",
        subfolder="imagenet",
        task=ModelTask.GENERAL,
        license="Apache-2.0",
        input_size=224,
        layout="nchw",
        mean=_IMAGENET_MEAN,
        std=_IMAGENET_STD,
    ),
    "inception_v3_inaturalist": ModelSpec(
        name="inception_v3_inaturalist",
        repo_id="snaplabel/classification-models",
        filename="inception_v3_inaturalist.onnx",
        labels_filename="inaturalist_labels.txt",
        subfolder="inaturalist",
        task=ModelTask.SPECIALIZED,
        license="Apache-2.0",
        input_size=299,
        layout="nhwc",
    ),
}


def get_spec(model_name: str) -> ModelSpec:
    try:
        return MODEL_CATALOG[model_name]
    except KeyError:
        raise KeyError(f"Unknown model: {model_name}") from None


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class ModelLoader(Protocol):
    """Blocking loader that turns a model id into a ready classifier."""

    def load(self, model_name: str) -> ImageClassifier:
        """Download (if needed) and initialize a model."""
        ...


class OnnxModelLoader:
    """Downloads model artifacts and builds ONNX Runtime classifiers."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    def load(self, model_name: str) -> OnnxImageClassifier:
        spec = get_spec(model_name)
        model_path = self.ensure_downloaded(spec, spec.filename)
        labels = self.load_labels(spec)
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )
        return OnnxImageClassifier(
            spec.name,
            session,
            labels,
            input_size=spec.input_size,
            layout=spec.layout,
            mean=spec.mean,
            std=spec.std,
            apply_softmax=spec.apply_softmax,
            top_k=self._settings.top_k,
        )

    def ensure_downloaded(self, spec: ModelSpec, filename: str) -> Path:
        """Return a local path to one of the model's files, downloading it if needed."""
        if spec.repo_id is None:
            bundled = self._models_dir / (spec.subfolder or "") / filename
            if not bundled.is_file():
                raise FileNotFoundError(f"Bundled model file missing: {bundled}")
            return bundled

        downloaded = Path(
            hf_hub_download(
                repo_id=spec.repo_id,
                filename=filename,
                subfolder=spec.subfolder,
                local_dir=str(self._models_dir),
            )
        )
        logger.info("Fetched %s/%s to %s", spec.name, filename, downloaded)
        return downloaded

    def load_labels(self, spec: ModelSpec) -> list[str]:
        path = self.ensure_downloaded(spec, spec.labels_filename)
        labels = [line.strip() for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
        if not labels:
            raise ValueError(f"Labels file for '{spec.name}' is empty: {path}")
        return labels

    # -- Internal -----------------------------------------------------------

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ModelState(StrEnum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass
class ModelHandle:
    """Load state of one registered model."""

    model_id: str
    state: ModelState = ModelState.UNLOADED
    error: str | None = None
    classifier: ImageClassifier | None = None

    @property
    def is_ready(self) -> bool:
        return self.state is ModelState.READY


class ModelRegistry:
    """Owns the load lifecycle of every configured model."""

    def __init__(
        self,
        loader: ModelLoader,
        pool: InferencePool,
        model_ids: Sequence[str],
        active_model: str,
    ) -> None:
        self._loader = loader
        self._pool = pool
        self._handles: dict[str, ModelHandle] = {model_id: ModelHandle(model_id) for model_id in model_ids}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._active_model = self._get_handle(active_model).model_id

    @classmethod
    def from_settings(cls, settings: Settings, loader: ModelLoader, pool: InferencePool) -> ModelRegistry:
        return cls(loader, pool, settings.models, settings.active_model)

    # -- Lifecycle ----------------------------------------------------------

    def start(self) -> None:
        """Begin loading every registered model in the background."""
        for model_id in self._handles:
            self._ensure_loading(model_id)

    async def load(self, model_id: str) -> ModelState:
        """Load a model (or join its in-flight load) and return the terminal state."""
        task = self._ensure_loading(model_id)
        await asyncio.shield(task)
        return self._handles[model_id].state

    async def shutdown(self) -> None:
        """Cancel loads still in flight."""
        pending = [task for task in self._tasks.values() if not task.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    # -- Queries ------------------------------------------------------------

    def is_ready(self, model_id: str) -> bool:
        handle = self._handles.get(model_id)
        return handle is not None and handle.is_ready

    def state(self, model_id: str) -> ModelState:
        return self._get_handle(model_id).state

    def handles(self) -> list[ModelHandle]:
        return list(self._handles.values())

    @property
    def active_model_id(self) -> str:
        return self._active_model

    def set_active(self, model_id: str) -> None:
        self._active_model = self._get_handle(model_id).model_id
        logger.info("Active model set to %s", model_id)

    def active_model(self) -> ModelHandle:
        """Return the active model's handle.

        Raises:
            ModelNotReady: If the active model has not finished loading.
        """
        handle = self._handles[self._active_model]
        if not handle.is_ready:
            raise ModelNotReady(f"Active model '{handle.model_id}' is {handle.state}")
        return handle

    # -- Inference ----------------------------------------------------------

    async def infer(self, model_id: str, tensor: InputTensor) -> list[Prediction]:
        """Classify ``tensor`` with a ready model.

        Raises:
            ModelNotReady: If the model is unknown or not in the ready state.
            InferenceError: If the engine fails.
        """
        handle = self._handles.get(model_id)
        if handle is None:
            raise ModelNotReady(f"Model '{model_id}' is not registered")
        if not handle.is_ready or handle.classifier is None:
            raise ModelNotReady(f"Model '{model_id}' is {handle.state}")

        try:
            return await self._pool.run(handle.classifier.classify, tensor)
        except ClassificationError:
            raise
        except Exception as exc:
            raise InferenceError(f"Model '{model_id}' failed: {exc}") from exc

    # -- Internal -----------------------------------------------------------

    def _get_handle(self, model_id: str) -> ModelHandle:
        try:
            return self._handles[model_id]
        except KeyError:
            raise KeyError(f"Unknown model: {model_id}") from None

    def _ensure_loading(self, model_id: str) -> asyncio.Task[None]:
        handle = self._get_handle(model_id)
        task = self._tasks.get(model_id)
        if task is None:
            handle.state = ModelState.LOADING
            task = asyncio.create_task(self._load(handle), name=f"load-{model_id}")
            self._tasks[model_id] = task
        return task

    async def _load(self, handle: ModelHandle) -> None:
        logger.info("Loading model %s", handle.model_id)
        try:
            classifier = await asyncio.to_thread(self._loader.load, handle.model_id)
        except Exception as exc:
            handle.error = str(exc)
            handle.state = ModelState.FAILED
            logger.exception("Model %s failed to load", handle.model_id)
            return
        handle.classifier = classifier
        handle.state = ModelState.READY
        logger.info("Model %s ready", handle.model_id)
