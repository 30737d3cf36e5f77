"""Model lifecycle management for the generation engine.

This module provides :class:`ModelManager`, the single owner of the three
inference handles (text encoder, denoiser, VAE decoder) and the prompt
tokenizer.  No other component keeps a reference to a handle; the
:class:`~genloop.core.pipeline.GenerationEngine` reads them through the
manager it is given.

Key Responsibilities
--------------------
- **Atomic model set**: the three handles are ready together or not at all.
  If any of them fails to construct, the ones that did construct are released
  before :meth:`ModelManager.load` raises, so a failed load never leaks
  native memory.
- **Tokenizer selection**: the vocabulary tokenizer is used when its files
  are present; otherwise the degraded hash tokenizer keeps the pipeline
  runnable.
- **State tracking**: :class:`EngineState` follows
  ``UNLOADED -> LOADING -> READY | ERROR`` and
  ``READY -> DISPOSING -> UNLOADED``.  ``ERROR`` is left by a new load.
- **Best-effort disposal**: :meth:`ModelManager.dispose` never raises.
  Release failures are logged and returned to the caller.

The manager does no locking of its own; the engine serialises every call.

Usage
-----
::

    from genloop.core.config import config
    from genloop.core.model_manager import ModelManager, ModelPaths

    mgr = ModelManager(config)
    mgr.load("cpu", ModelPaths.from_config(config))
    assert mgr.is_ready
    mgr.dispose()
"""

from __future__ import annotations

import gc
import logging
from collections.abc import Callable
from dataclasses import dataclass, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, NoReturn

from genloop.core.config import GenloopConfig
from genloop.core.errors import DisposeError, LoadError
from genloop.core.model_handles import BACKENDS, ModelHandle, open_onnx_model
from genloop.core.tokenizer import PromptTokenizer, load_tokenizer

logger = logging.getLogger(__name__)

ModelOpener = Callable[..., ModelHandle]


class EngineState(str, Enum):
    """Lifecycle state of a :class:`ModelManager`."""

    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    DISPOSING = "disposing"
    ERROR = "error"


@dataclass(frozen=True)
class ModelPaths:
    """File locations of the models and tokenizer."""

    unet: Path
    text_encoder: Path
    vae_decoder: Path
    tokenizer_vocab: Path | None = None
    tokenizer_merges: Path | None = None

    @classmethod
    def from_config(cls, config: GenloopConfig) -> ModelPaths:
        return cls(
            unet=config.model_path(config.unet_filename),
            text_encoder=config.model_path(config.text_encoder_filename),
            vae_decoder=config.model_path(config.vae_decoder_filename),
            tokenizer_vocab=config.model_path(config.tokenizer_vocab_filename),
            tokenizer_merges=config.model_path(config.tokenizer_merges_filename),
        )

    def with_overrides(self, **overrides: str | Path | None) -> ModelPaths:
        """Return a copy with the non-``None`` overrides applied."""
        known = {f.name for f in fields(self)}
        changes = {
            key: Path(value) for key, value in overrides.items() if value is not None and key in known
        }
        return replace(self, **changes)


@dataclass
class ModelSet:
    """The three inference handles, owned by a :class:`ModelManager`."""

    text_encoder: ModelHandle | None = None
    denoiser: ModelHandle | None = None
    decoder: ModelHandle | None = None

    def items(self) -> list[tuple[str, ModelHandle | None]]:
        return [
            ("text_encoder", self.text_encoder),
            ("denoiser", self.denoiser),
            ("decoder", self.decoder),
        ]

    @property
    def complete(self) -> bool:
        return all(handle is not None for _, handle in self.items())


class ModelManager:
    """Owns the model handles and tokenizer for one engine.

    Attributes:
        _config (GenloopConfig):
            Application configuration (minimum model size, defaults).
        _opener:
            Callable ``(path, backend, name, min_bytes) -> ModelHandle`` used
            to construct handles.  Defaults to :func:`open_onnx_model`.
        _models (ModelSet):
            Currently held handles.
        _tokenizer (PromptTokenizer | None):
            Active tokenizer, or ``None`` when not loaded.
    """

    def __init__(self, config: GenloopConfig, opener: ModelOpener | None = None) -> None:
        self._config = config
        self._opener: ModelOpener = opener or open_onnx_model

        self._models = ModelSet()
        self._tokenizer: PromptTokenizer | None = None
        self._state = EngineState.UNLOADED
        self._last_error: str | None = None
        self._backend: str | None = None

    # -- Public interface ---------------------------------------------------

    def load(self, backend: str, paths: ModelPaths) -> None:
        """Load the text encoder, denoiser, decoder and tokenizer.

        All three models are attempted even after one fails, so the error
        names every missing piece.  On any failure the handles that were
        constructed are released and the manager enters ``ERROR``.

        Args:
            backend: ``"cpu"`` or ``"gpu"``.  The text encoder always runs
                on CPU.
            paths: Model and tokenizer file locations.

        Raises:
            LoadError: If the backend is unknown or any model fails to load.
        """
        if self._state in (EngineState.READY, EngineState.ERROR) or self._has_handles():
            logger.info("Reloading models; disposing current set first.")
            self.dispose()

        self._state = EngineState.LOADING
        self._last_error = None

        if backend not in BACKENDS:
            self._fail(f"Unknown backend '{backend}' (expected one of {', '.join(BACKENDS)})")

        logger.info("Loading models with backend=%s.", backend)

        specs = [
            ("text_encoder", "Text Encoder", paths.text_encoder, "cpu"),
            ("denoiser", "UNet", paths.unet, backend),
            ("decoder", "VAE Decoder", paths.vae_decoder, backend),
        ]
        failures: list[str] = []
        for slot, label, path, slot_backend in specs:
            try:
                handle = self._opener(
                    Path(path), slot_backend, label, self._config.min_model_bytes
                )
            except Exception as exc:
                logger.error("Failed to load %s: %s", label, exc)
                failures.append(f"{label}: {exc}")
                continue
            setattr(self._models, slot, handle)

        if failures:
            self._release_all()
            self._fail("Model loading failed: " + "; ".join(failures))

        self._tokenizer = load_tokenizer(paths.tokenizer_vocab, paths.tokenizer_merges)
        self._backend = backend
        self._state = EngineState.READY
        logger.info("All models loaded successfully (tokenizer=%s).", self._tokenizer.name)

    def dispose(self) -> list[DisposeError]:
        """Release every handle and reset to ``UNLOADED``.

        Safe to call at any time, including when nothing is loaded.

        Returns:
            Errors for handles that could not be released.  They have
            already been logged.
        """
        if not self._has_handles() and self._tokenizer is None:
            self._state = EngineState.UNLOADED
            self._last_error = None
            self._backend = None
            return []

        self._state = EngineState.DISPOSING
        self._last_error = None
        errors = self._release_all()
        self._tokenizer = None
        self._backend = None

        # Break reference cycles that could keep native buffers alive.
        gc.collect()

        self._state = EngineState.UNLOADED
        if errors:
            logger.warning("Models disposed with %d release error(s).", len(errors))
        else:
            logger.info("All model sessions disposed.")
        return errors

    def describe(self) -> dict[str, Any]:
        """Return a JSON-friendly status summary."""
        return {
            "state": self._state.value,
            "ready": self.is_ready,
            "backend": self._backend,
            "error": self._last_error,
            "tokenizer": self._tokenizer.name if self._tokenizer else None,
            "models": {
                slot: handle.describe() if handle is not None else None
                for slot, handle in self._models.items()
            },
        }

    # -- Internals ----------------------------------------------------------

    def _has_handles(self) -> bool:
        return any(handle is not None for _, handle in self._models.items())

    def _release_all(self) -> list[DisposeError]:
        errors: list[DisposeError] = []
        for slot, handle in self._models.items():
            if handle is None:
                continue
            try:
                handle.release()
            except Exception as exc:
                error = DisposeError(slot, str(exc))
                logger.error("%s", error)
                errors.append(error)
            setattr(self._models, slot, None)
        return errors

    def _fail(self, reason: str) -> NoReturn:
        self._state = EngineState.ERROR
        self._last_error = reason
        raise LoadError(reason)

    # -- Properties ---------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        """True when all three models and the tokenizer are loaded."""
        return (
            self._state is EngineState.READY
            and self._models.complete
            and self._tokenizer is not None
        )

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def last_error(self) -> str | None:
        """Reason for the ``ERROR`` state, or ``None``."""
        return self._last_error

    @property
    def backend(self) -> str | None:
        return self._backend

    @property
    def models(self) -> ModelSet:
        return self._models

    @property
    def tokenizer(self) -> PromptTokenizer | None:
        return self._tokenizer
