"""Inference handles for the three pipeline models.

Every model the engine drives has one capability: accept named tensors and
return named tensors.  :class:`ModelHandle` captures that, plus the declared
input/output signatures the engine uses to pick input names, dtypes and the
expected latent depth.  :class:`OnnxModelHandle` implements it on top of an
``onnxruntime.InferenceSession``; tests substitute lightweight stubs.

``onnxruntime`` is imported lazily inside :func:`open_onnx_model` so the rest
of the package imports without it.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import numpy as np

from genloop.core.errors import LoadError

logger = logging.getLogger(__name__)

Backend = Literal["cpu", "gpu"]
BACKENDS: tuple[str, ...] = ("cpu", "gpu")

# ONNX element type strings -> numpy dtype names.
_ONNX_DTYPES = {
    "tensor(float)": "float32",
    "tensor(float16)": "float16",
    "tensor(double)": "float64",
    "tensor(int64)": "int64",
    "tensor(int32)": "int32",
    "tensor(uint8)": "uint8",
    "tensor(bool)": "bool",
}


@dataclass(frozen=True)
class TensorSpec:
    """Declared signature of one model input or output.

    Attributes:
        name: Tensor name in the graph.
        shape: Dimensions; symbolic or unknown dimensions are ``None``.
        dtype: numpy dtype name, or ``None`` when unknown.
    """

    name: str
    shape: tuple[int | None, ...] = ()
    dtype: str | None = None


class ModelHandle(ABC):
    """A loaded model that maps named input tensors to named output tensors."""

    name: str = "model"

    @property
    @abstractmethod
    def inputs(self) -> list[TensorSpec]:
        """Declared inputs, in graph order."""

    @property
    @abstractmethod
    def outputs(self) -> list[TensorSpec]:
        """Declared outputs, in graph order."""

    @abstractmethod
    def run(self, feeds: dict[str, np.ndarray]) -> dict[str, np.ndarray]:
        """Run the model.

        Args:
            feeds: Input tensors by name.

        Returns:
            Output tensors by name, in declared output order.
        """

    @abstractmethod
    def release(self) -> None:
        """Free the model's native resources."""

    @property
    def input_names(self) -> list[str]:
        return [spec.name for spec in self.inputs]

    @property
    def output_names(self) -> list[str]:
        return [spec.name for spec in self.outputs]

    def input_spec(self, name: str) -> TensorSpec | None:
        return next((spec for spec in self.inputs if spec.name == name), None)

    def describe(self) -> dict[str, Any]:
        return {"inputs": self.input_names, "outputs": self.output_names}


def _spec_from_node(node: Any) -> TensorSpec:
    shape = tuple(dim if isinstance(dim, int) else None for dim in (node.shape or ()))
    return TensorSpec(name=node.name, shape=shape, dtype=_ONNX_DTYPES.get(node.type))


class OnnxModelHandle(ModelHandle):
    """:class:`ModelHandle` backed by an ``onnxruntime.InferenceSession``."""

    def __init__(self, session: Any, name: str = "model") -> None:
        self._session = session
        self.name = name
        self._inputs = [_spec_from_node(node) for node in session.get_inputs()]
        self._outputs = [_spec_from_node(node) for node in session.get_outputs()]

    @property
    def inputs(self) -> list[TensorSpec]:
        return list(self._inputs)

    @property
    def outputs(self) -> list[TensorSpec]:
        return list(self._outputs)

    def run(self, feeds: dict[str, np.ndarray]) -> dict[str, np.ndarray]:
        if self._session is None:
            raise RuntimeError(f"{self.name} session has been released")
        names = self.output_names
        results = self._session.run(names, feeds)
        return dict(zip(names, results))

    def release(self) -> None:
        # InferenceSession has no explicit close; dropping the reference
        # frees the native allocation once the last owner is gone.
        self._session = None


def execution_providers(backend: str) -> list[str]:
    """Return the onnxruntime provider list for a backend name."""
    if backend == "gpu":
        return ["CUDAExecutionProvider", "CPUExecutionProvider"]
    return ["CPUExecutionProvider"]


def validate_model_file(path: Path, min_bytes: int) -> int:
    """Check that a model file exists and is plausibly complete.

    Returns:
        File size in bytes.

    Raises:
        LoadError: If the file is missing or smaller than *min_bytes*.
    """
    if not path.is_file():
        raise LoadError(f"Model file not found: {path}")

    size = path.stat().st_size
    if size < min_bytes:
        raise LoadError(
            f"Model file appears to be corrupted (too small): {path} "
            f"({size} bytes, expected at least {min_bytes})"
        )

    external = path.with_name(path.name + "_data")
    if external.exists():
        logger.info("Found external weights for %s.", path.name)
    else:
        logger.warning("No external data file for %s; assuming a single-file model.", path.name)
    return size


def open_onnx_model(path: Path, backend: str, name: str, min_bytes: int = 0) -> ModelHandle:
    """Create an :class:`OnnxModelHandle` for a model file.

    Args:
        path: Location of the ``.onnx`` file.
        backend: ``"cpu"`` or ``"gpu"``.
        name: Human-readable model name used in logs and errors.
        min_bytes: Minimum plausible file size.

    Raises:
        LoadError: If the file is invalid or the session cannot be created.
    """
    path = Path(path)
    size = validate_model_file(path, min_bytes)

    try:
        import onnxruntime as ort
    except ImportError as exc:
        raise LoadError("onnxruntime is not installed") from exc

    options = ort.SessionOptions()
    options.enable_mem_pattern = False
    options.enable_cpu_mem_arena = False
    options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_BASIC

    logger.info(
        "Loading %s from %s (%.2f MB, backend=%s).", name, path, size / (1024 * 1024), backend
    )
    try:
        session = ort.InferenceSession(
            str(path),
            sess_options=options,
            providers=execution_providers(backend),
        )
    except Exception as exc:
        raise LoadError(f"Failed to initialise {name} session: {exc}") from exc

    handle = OnnxModelHandle(session, name=name)
    logger.info(
        "%s loaded: inputs=%s outputs=%s", name, handle.input_names, handle.output_names
    )
    return handle
