"""Tests for the model registry, the ONNX loader, and the ONNX classifier."""

from __future__ import annotations

import asyncio
import threading
from collections import Counter
from pathlib import Path
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from snaplabel.config import Settings
from snaplabel.errors import InferenceError, ModelNotReady
from snaplabel.ml.image_classifier import OnnxImageClassifier, Prediction
from snaplabel.ml.inference import InferencePool
from snaplabel.ml.model_registry import (
    MODEL_CATALOG,
    ModelRegistry,
    ModelSpec,
    ModelState,
    ModelTask,
    OnnxModelLoader,
    get_spec,
)
from snaplabel.ml.tensor import InputTensor

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": "/tmp/snaplabel_test_models",
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "gpu_mem_limit": 2_147_483_648,
        "max_concurrent": 2,
        "top_k": 3,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def _tensor(height: int = 4, width: int = 6) -> InputTensor:
    return InputTensor(data=np.zeros((height, width, 3), dtype=np.uint8))


class _FakeClassifier:
    def __init__(self, model_name: str, error: Exception | None = None) -> None:
        self._model_name = model_name
        self._error = error

    @property
    def model_name(self) -> str:
        return self._model_name

    def classify(self, tensor: InputTensor) -> list[Prediction]:
        if self._error is not None:
            raise self._error
        return [Prediction(label=f"{self._model_name}-top", probability=0.9), Prediction(label="other", probability=0.1)]


class _FakeLoader:
    """Counts load calls; optional per-model gates hold a load until released."""

    def __init__(self, *, failing: Iterable[str] = (), gates: dict[str, threading.Event] | None = None) -> None:
        self.calls: Counter[str] = Counter()
        self._failing = set(failing)
        self._gates = gates or {}

    def load(self, model_name: str) -> _FakeClassifier:
        self.calls[model_name] += 1
        gate = self._gates.get(model_name)
        if gate is not None:
            gate.wait(timeout=5)
        if model_name in self._failing:
            raise RuntimeError(f"cannot fetch {model_name}")
        return _FakeClassifier(model_name)


@pytest.fixture()
def pool() -> Iterator[InferencePool]:
    inference_pool = InferencePool(_make_settings())
    yield inference_pool
    inference_pool.shutdown()


def _hf_download_writer(labels: list[str]):
    """Fake hf_hub_download that materializes files under local_dir."""

    def _download(*, repo_id: str, filename: str, subfolder: str | None, local_dir: str) -> str:
        path = Path(local_dir) / (subfolder or "") / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("\n".join(labels) + "\n" if filename.endswith(".txt") else "onnx", encoding="utf-8")
        return str(path)

    return _download


def _mock_session(scores: list[float]) -> MagicMock:
    session = MagicMock()
    input_meta = MagicMock()
    input_meta.name = "pixels"
    session.get_inputs.return_value = [input_meta]
    session.run.return_value = [np.asarray([scores], dtype=np.float32)]
    return session


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class TestModelCatalog:
    def test_known_model_lookup(self) -> None:
        spec = get_spec("mobilenet_v2")
        assert spec.name == "mobilenet_v2"
        assert spec.task == "general_classification"

    def test_unknown_model_raises_keyerror(self) -> None:
        with pytest.raises(KeyError, match="Unknown model"):
            get_spec("nonexistent_model")

    def test_general_and_specialized_models_present(self) -> None:
        tasks = {spec.task for spec in MODEL_CATALOG.values()}
        assert tasks == {ModelTask.GENERAL, ModelTask.SPECIALIZED}

    def test_catalog_is_general_plus_specialized(self) -> None:
        assert set(MODEL_CATALOG) == {"mobilenet_v2", "inception_v3_inaturalist"}

    def test_default_settings_models_are_cataloged(self) -> None:
        assert set(Settings().models) <= set(MODEL_CATALOG)

    def test_source_strings(self) -> None:
        assert MODEL_CATALOG["mobilenet_v2"].source == "hf://snaplabel/classification-models/imagenet/mobilenet_v2.onnx"
        bundled = ModelSpec(
            name="local",
            repo_id=None,
            filename="m.onnx",
            labels_filename="labels.txt",
            subfolder=None,
            task=ModelTask.GENERAL,
            license="MIT",
            input_size=224,
            layout="nchw",
        )
        assert bundled.source == "bundled://m.onnx"


# ---------------------------------------------------------------------------
# ModelRegistry
# ---------------------------------------------------------------------------


class TestModelRegistryLifecycle:
    async def test_initial_state_is_unloaded(self, pool: InferencePool) -> None:
        registry = ModelRegistry(_FakeLoader(), pool, ["general", "special"], "general")
        assert registry.state("general") is ModelState.UNLOADED
        assert not registry.is_ready("general")

    async def test_start_moves_models_to_loading_then_ready(self, pool: InferencePool) -> None:
        loader = _FakeLoader()
        registry = ModelRegistry(loader, pool, ["general", "special"], "general")

        registry.start()
        assert registry.state("general") is ModelState.LOADING
        assert registry.state("special") is ModelState.LOADING

        assert await registry.load("general") is ModelState.READY
        assert await registry.load("special") is ModelState.READY
        assert loader.calls == Counter({"general": 1, "special": 1})

    async def test_concurrent_loads_collapse_into_one(self, pool: InferencePool) -> None:
        gate = threading.Event()
        loader = _FakeLoader(gates={"general": gate})
        registry = ModelRegistry(loader, pool, ["general"], "general")

        first = asyncio.create_task(registry.load("general"))
        second = asyncio.create_task(registry.load("general"))
        await asyncio.sleep(0)
        gate.set()
        states = await asyncio.gather(first, second)

        assert states == [ModelState.READY, ModelState.READY]
        assert loader.calls["general"] == 1

    async def test_failed_load_is_terminal(self, pool: InferencePool) -> None:
        loader = _FakeLoader(failing=["general"])
        registry = ModelRegistry(loader, pool, ["general"], "general")

        results = await asyncio.gather(registry.load("general"), registry.load("general"))
        assert results == [ModelState.FAILED, ModelState.FAILED]
        assert await registry.load("general") is ModelState.FAILED
        assert loader.calls["general"] == 1

        handle = registry.handles()[0]
        assert handle.error == "cannot fetch general"
        assert handle.classifier is None

    async def test_one_failure_does_not_block_others(self, pool: InferencePool) -> None:
        registry = ModelRegistry(_FakeLoader(failing=["special"]), pool, ["general", "special"], "general")
        registry.start()

        assert await registry.load("special") is ModelState.FAILED
        assert await registry.load("general") is ModelState.READY

    async def test_unknown_model_load_raises_keyerror(self, pool: InferencePool) -> None:
        registry = ModelRegistry(_FakeLoader(), pool, ["general"], "general")
        with pytest.raises(KeyError, match="Unknown model"):
            await registry.load("nope")

    def test_unknown_active_model_rejected(self, pool: InferencePool) -> None:
        with pytest.raises(KeyError, match="Unknown model"):
            ModelRegistry(_FakeLoader(), pool, ["general"], "special")

    async def test_shutdown_cancels_pending_loads(self, pool: InferencePool) -> None:
        gate = threading.Event()
        registry = ModelRegistry(_FakeLoader(gates={"general": gate}), pool, ["general"], "general")
        registry.start()
        try:
            await registry.shutdown()
            assert registry.state("general") is ModelState.LOADING
        finally:
            gate.set()


class TestModelRegistryInference:
    async def test_infer_before_ready_raises_model_not_ready(self, pool: InferencePool) -> None:
        registry = ModelRegistry(_FakeLoader(), pool, ["general"], "general")
        with pytest.raises(ModelNotReady, match="unloaded"):
            await registry.infer("general", _tensor())

    async def test_infer_while_loading_does_not_wait(self, pool: InferencePool) -> None:
        gate = threading.Event()
        registry = ModelRegistry(_FakeLoader(gates={"general": gate}), pool, ["general"], "general")
        registry.start()
        try:
            with pytest.raises(ModelNotReady, match="loading"):
                await registry.infer("general", _tensor())
        finally:
            gate.set()
        assert await registry.load("general") is ModelState.READY

    async def test_only_ready_model_serves(self, pool: InferencePool) -> None:
        gate = threading.Event()
        registry = ModelRegistry(_FakeLoader(gates={"special": gate}), pool, ["general", "special"], "general")
        registry.start()
        try:
            assert await registry.load("general") is ModelState.READY
            assert registry.is_ready("general")
            assert not registry.is_ready("special")

            with pytest.raises(ModelNotReady):
                await registry.infer("special", _tensor())
            predictions = await registry.infer("general", _tensor())
        finally:
            gate.set()

        assert predictions[0] == Prediction(label="general-top", probability=0.9)

    async def test_failed_model_never_serves(self, pool: InferencePool) -> None:
        registry = ModelRegistry(_FakeLoader(failing=["general"]), pool, ["general"], "general")
        await registry.load("general")
        with pytest.raises(ModelNotReady, match="failed"):
            await registry.infer("general", _tensor())

    async def test_unregistered_model_is_not_ready(self, pool: InferencePool) -> None:
        registry = ModelRegistry(_FakeLoader(), pool, ["general"], "general")
        with pytest.raises(ModelNotReady, match="not registered"):
            await registry.infer("ghost", _tensor())

    async def test_engine_failure_becomes_inference_error(self, pool: InferencePool) -> None:
        registry = ModelRegistry(_FakeLoader(), pool, ["general"], "general")
        await registry.load("general")
        registry.handles()[0].classifier = _FakeClassifier("general", error=ValueError("bad input shape"))

        with pytest.raises(InferenceError, match="bad input shape"):
            await registry.infer("general", _tensor())

    async def test_active_model_switching(self, pool: InferencePool) -> None:
        registry = ModelRegistry(_FakeLoader(failing=["special"]), pool, ["general", "special"], "general")
        registry.start()
        await registry.load("general")
        await registry.load("special")

        assert registry.active_model().model_id == "general"

        registry.set_active("special")
        assert registry.active_model_id == "special"
        with pytest.raises(ModelNotReady):
            registry.active_model()

        with pytest.raises(KeyError):
            registry.set_active("ghost")
        assert registry.active_model_id == "special"


# ---------------------------------------------------------------------------
# OnnxModelLoader
# ---------------------------------------------------------------------------


class TestOnnxModelLoader:
    @patch("snaplabel.ml.model_registry.InferenceSession")
    @patch("snaplabel.ml.model_registry.hf_hub_download")
    def test_load_downloads_model_and_labels(
        self, mock_download: MagicMock, mock_session_cls: MagicMock, tmp_path: Path
    ) -> None:
        mock_download.side_effect = _hf_download_writer(["cat", "dog", "fox"])
        mock_session_cls.return_value = _mock_session([0.0, 1.0, 2.0])
        loader = OnnxModelLoader(_make_settings(models_dir=str(tmp_path)))

        classifier = loader.load("mobilenet_v2")

        assert classifier.model_name == "mobilenet_v2"
        filenames = [c.kwargs["filename"] for c in mock_download.call_args_list]
        assert filenames == ["mobilenet_v2.onnx", "imagenet_labels.txt"]
        assert mock_download.call_args_list[0].kwargs["repo_id"] == "snaplabel/classification-models"
        assert mock_download.call_args_list[0].kwargs["local_dir"] == str(tmp_path)
        model_path = mock_session_cls.call_args.args[0]
        assert model_path == str(tmp_path / "imagenet" / "mobilenet_v2.onnx")

    @patch("snaplabel.ml.model_registry.hf_hub_download")
    def test_empty_labels_file_fails(self, mock_download: MagicMock, tmp_path: Path) -> None:
        mock_download.side_effect = _hf_download_writer([])
        loader = OnnxModelLoader(_make_settings(models_dir=str(tmp_path)))

        with pytest.raises(ValueError, match="empty"):
            loader.load_labels(get_spec("mobilenet_v2"))

    def test_bundled_model_missing(self, tmp_path: Path) -> None:
        loader = OnnxModelLoader(_make_settings(models_dir=str(tmp_path)))
        spec = ModelSpec(
            name="local",
            repo_id=None,
            filename="m.onnx",
            labels_filename="labels.txt",
            subfolder=None,
            task=ModelTask.GENERAL,
            license="MIT",
            input_size=224,
            layout="nchw",
        )
        with pytest.raises(FileNotFoundError, match="Bundled model file missing"):
            loader.ensure_downloaded(spec, spec.filename)

        (tmp_path / "m.onnx").write_bytes(b"onnx")
        assert loader.ensure_downloaded(spec, spec.filename) == tmp_path / "m.onnx"

    def test_unknown_model_raises_keyerror(self, tmp_path: Path) -> None:
        loader = OnnxModelLoader(_make_settings(models_dir=str(tmp_path)))
        with pytest.raises(KeyError, match="Unknown model"):
            loader.load("totally_fake_model")

    def test_provider_building_cpu(self, tmp_path: Path) -> None:
        loader = OnnxModelLoader(_make_settings(device="cpu", models_dir=str(tmp_path)))
        assert loader._providers == ["CPUExecutionProvider"]

    def test_provider_building_cuda(self, tmp_path: Path) -> None:
        loader = OnnxModelLoader(_make_settings(device="cuda", models_dir=str(tmp_path)))
        assert len(loader._providers) == 2
        provider_name, provider_opts = loader._providers[0]  # type: ignore[misc]
        assert provider_name == "CUDAExecutionProvider"
        assert provider_opts["device_id"] == 0
        assert loader._providers[1] == "CPUExecutionProvider"

    def test_provider_building_openvino(self, tmp_path: Path) -> None:
        loader = OnnxModelLoader(_make_settings(device="openvino", models_dir=str(tmp_path)))
        provider_name, _provider_opts = loader._providers[0]  # type: ignore[misc]
        assert provider_name == "OpenVINOExecutionProvider"


# ---------------------------------------------------------------------------
# OnnxImageClassifier
# ---------------------------------------------------------------------------


def _classifier(scores: list[float], labels: list[str], **overrides: object) -> OnnxImageClassifier:
    options: dict[str, object] = {
        "input_size": 8,
        "layout": "nchw",
        "mean": (0.5, 0.5, 0.5),
        "std": (0.5, 0.5, 0.5),
        "apply_softmax": True,
        "top_k": 2,
    }
    options.update(overrides)
    return OnnxImageClassifier("test_model", _mock_session(scores), labels, **options)  # type: ignore[arg-type]


class TestOnnxImageClassifier:
    def test_top_k_sorted_descending(self) -> None:
        classifier = _classifier([1.0, 3.0, 2.0], ["a", "b", "c"])
        predictions = classifier.classify(_tensor())

        assert [p.label for p in predictions] == ["b", "c"]
        assert predictions[0].probability > predictions[1].probability
        assert all(0.0 <= p.probability <= 1.0 for p in predictions)

    def test_softmax_probabilities(self) -> None:
        classifier = _classifier([0.0, 0.0], ["a", "b"])
        predictions = classifier.classify(_tensor())
        assert [p.probability for p in predictions] == pytest.approx([0.5, 0.5])

    def test_probabilities_passed_through_without_softmax(self) -> None:
        classifier = _classifier([0.1, 0.7, 0.2], ["a", "b", "c"], apply_softmax=False, top_k=5)
        predictions = classifier.classify(_tensor())
        assert [(p.label, round(p.probability, 3)) for p in predictions] == [("b", 0.7), ("c", 0.2), ("a", 0.1)]

    def test_label_count_mismatch(self) -> None:
        classifier = _classifier([1.0, 2.0, 3.0], ["a", "b"])
        with pytest.raises(InferenceError, match="3 scores for 2 labels"):
            classifier.classify(_tensor())

    def test_preprocess_nchw(self) -> None:
        classifier = _classifier([0.0], ["a"], input_size=8, layout="nchw")
        batch = classifier.preprocess(InputTensor(data=np.full((4, 6, 3), 255, dtype=np.uint8)))

        assert batch.shape == (1, 3, 8, 8)
        assert batch.dtype == np.float32
        assert np.allclose(batch, 1.0)

    def test_preprocess_nhwc(self) -> None:
        classifier = _classifier([0.0], ["a"], input_size=5, layout="nhwc", mean=(0.0, 0.0, 0.0), std=(1.0, 1.0, 1.0))
        batch = classifier.preprocess(InputTensor(data=np.zeros((5, 5, 3), dtype=np.uint8)))

        assert batch.shape == (1, 5, 5, 3)
        assert np.allclose(batch, 0.0)

    def test_session_fed_by_input_name(self) -> None:
        classifier = _classifier([0.0, 1.0], ["a", "b"])
        classifier.classify(_tensor())

        session: MagicMock = classifier._session  # type: ignore[assignment]
        _output_names, feeds = session.run.call_args.args
        assert list(feeds) == ["pixels"]
        assert feeds["pixels"].shape == (1, 3, 8, 8)
