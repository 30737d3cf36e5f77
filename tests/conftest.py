"""Shared pytest fixtures for genloop tests.

Model handles are replaced by :class:`StubHandle` instances that declare
the same input/output names as the real ONNX graphs and return fixed
tensors, so the full pipeline runs without onnxruntime or model weights.
"""

import json
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Generator

import numpy as np
import pytest

from genloop.core.buffer_pool import BufferPool
from genloop.core.config import GenloopConfig
from genloop.core.model_handles import ModelHandle, TensorSpec
from genloop.core.model_manager import ModelManager, ModelPaths
from genloop.core.pipeline import GenerationEngine


class StubHandle(ModelHandle):
    """In-process model handle with a declared signature.

    Args:
        name: Model label.
        inputs: Declared input specs.
        outputs: Declared output specs.
        fn: Callable receiving the feeds and returning a list of arrays, one
            per declared output.
        release_error: Exception raised by :meth:`release`, if any.
    """

    def __init__(
        self,
        name: str,
        inputs: list[TensorSpec],
        outputs: list[TensorSpec],
        fn: Callable[[dict], list[np.ndarray]],
        release_error: Exception | None = None,
    ) -> None:
        self.name = name
        self._inputs = inputs
        self._outputs = outputs
        self._fn = fn
        self._release_error = release_error
        self.calls: list[dict[str, np.ndarray]] = []
        self.released = False

    @property
    def inputs(self) -> list[TensorSpec]:
        return list(self._inputs)

    @property
    def outputs(self) -> list[TensorSpec]:
        return list(self._outputs)

    def run(self, feeds):
        self.calls.append(dict(feeds))
        return dict(zip(self.output_names, self._fn(feeds)))

    def release(self) -> None:
        if self._release_error is not None:
            raise self._release_error
        self.released = True


def make_text_encoder(dtype: str = "int32") -> StubHandle:
    return StubHandle(
        "Text Encoder",
        inputs=[TensorSpec("input_ids", (1, 77), dtype)],
        outputs=[
            TensorSpec("last_hidden_state", (1, 77, 8), "float32"),
            TensorSpec("pooler_output", (1, 8), "float32"),
        ],
        fn=lambda feeds: [np.full((1, 77, 8), 0.5, dtype=np.float32), np.zeros((1, 8), np.float32)],
    )


def make_denoiser() -> StubHandle:
    # Identity over the sample: the denoised latent equals the input noise.
    return StubHandle(
        "UNet",
        inputs=[
            TensorSpec("sample", (1, 4, None, None), "float32"),
            TensorSpec("timestep", (1,), "int64"),
            TensorSpec("encoder_hidden_states", (1, 77, None), "float32"),
            TensorSpec("timestep_cond", (1, 256), "float32"),
        ],
        outputs=[TensorSpec("out_sample", (1, 4, None, None), "float32")],
        fn=lambda feeds: [feeds["sample"].copy()],
    )


def make_decoder(
    value: float = 0.0,
    size: int = 64,
    input_name: str = "latent_sample",
    channels: int | None = 3,
) -> StubHandle:
    return StubHandle(
        "VAE Decoder",
        inputs=[TensorSpec(input_name, (1, channels, None, None), "float32")],
        outputs=[TensorSpec("sample", (1, 3, size, size), "float32")],
        fn=lambda feeds: [np.full((1, 3, size, size), value, dtype=np.float32)],
    )


class StubOpener:
    """Stands in for ``open_onnx_model``, keyed by model label.

    Labels listed in ``fail`` raise instead of returning their handle.
    """

    def __init__(self, handles: dict[str, ModelHandle], fail: set[str] | None = None) -> None:
        self.handles = handles
        self.fail = set(fail or ())
        self.calls: list[tuple[Path, str, str]] = []

    def __call__(self, path: Path, backend: str, name: str, min_bytes: int = 0) -> ModelHandle:
        self.calls.append((path, backend, name))
        if name in self.fail:
            raise RuntimeError(f"{name} could not be created")
        return self.handles[name]


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> GenloopConfig:
    """Create a test configuration with a temporary models directory.

    Args:
        temp_dir: Temporary directory from fixture

    Returns:
        GenloopConfig instance for testing
    """
    return GenloopConfig(
        _env_file=None,
        models_dir=str(temp_dir / "models"),
        backend="cpu",
        min_model_bytes=1,
    )


@pytest.fixture
def vocab() -> dict[str, int]:
    """A tiny CLIP-style vocabulary."""
    return {
        "<|startoftext|>": 49406,
        "<|endoftext|>": 49407,
        "<unk>": 1,
        "a": 320,
        "red</w>": 736,
        "fox": 3240,
        ",": 267,
        "x": 343,
        "y": 344,
        "z": 345,
    }


@pytest.fixture
def model_paths(test_config: GenloopConfig, vocab: dict[str, int]) -> ModelPaths:
    """Write placeholder model and tokenizer files and return their paths."""
    paths = ModelPaths.from_config(test_config)
    for path in (paths.unet, paths.text_encoder, paths.vae_decoder):
        path.write_bytes(b"onnx" * 16)

    paths.tokenizer_vocab.parent.mkdir(parents=True, exist_ok=True)
    paths.tokenizer_vocab.write_text(json.dumps(vocab))
    paths.tokenizer_merges.write_text("#version: 0.2\nr e\nf o\n")
    return paths


@pytest.fixture
def stub_handles() -> dict[str, StubHandle]:
    """Stub text encoder, denoiser and decoder keyed by model label."""
    return {
        "Text Encoder": make_text_encoder(),
        "UNet": make_denoiser(),
        "VAE Decoder": make_decoder(),
    }


@pytest.fixture
def stub_opener(stub_handles: dict[str, StubHandle]) -> StubOpener:
    return StubOpener(stub_handles)


@pytest.fixture
def manager(test_config: GenloopConfig, stub_opener: StubOpener) -> ModelManager:
    """ModelManager that constructs stub handles."""
    return ModelManager(test_config, opener=stub_opener)


@pytest.fixture
def engine(test_config: GenloopConfig, manager: ModelManager) -> GenerationEngine:
    """Engine over the stub manager, with no models loaded."""
    return GenerationEngine(manager, test_config, BufferPool())


@pytest.fixture
def ready_engine(engine: GenerationEngine, model_paths: ModelPaths) -> GenerationEngine:
    """Engine with the stub models loaded."""
    result = engine.load_models("cpu", model_paths)
    assert result.success, result.error
    return engine


@pytest.fixture
def decoder_factory() -> Callable[..., StubHandle]:
    """Factory for stub decoders with a chosen output value, size and input."""
    return make_decoder


@pytest.fixture
def text_encoder_factory() -> Callable[..., StubHandle]:
    return make_text_encoder


@pytest.fixture
def opener_factory() -> type[StubOpener]:
    return StubOpener


@pytest.fixture
def stub_handle_cls() -> type[StubHandle]:
    return StubHandle


@pytest.fixture
def test_client(engine: GenerationEngine):
    """FastAPI TestClient whose engine constructs stub models.

    The lifespan still runs (and disposes on exit); its engine is swapped
    for the stub-backed one before any request is made.
    """
    from fastapi.testclient import TestClient

    from genloop.api.main import app

    with TestClient(app) as client:
        app.state.engine = engine
        yield client
