"""Generation orchestration: prompt in, RGBA pixels out.

:class:`GenerationEngine` drives one request through a linear sequence of
stages against the models held by a
:class:`~genloop.core.model_manager.ModelManager`:

1. **tokenize**: prompt -> 77 token ids
2. **text_encode**: ids -> conditioning embedding (first output)
3. **noise**: seeded ``[1, 4, H/8, W/8]`` latent
4. **conditioning**: fixed timestep and ``timestep_cond`` tensors
5. **denoise**: single fixed-timestep denoiser pass (first output)
6. **rescale**: latent divided by the VAE scale factor
7. **reconcile**: surplus latent channels dropped when the decoder declares
   fewer
8. **decode**: latent -> ``[1, C, H, W]`` image in roughly ``[-1, 1]``
9. **convert**: CHW float -> HWC RGBA bytes

Any failing stage is logged with its name and the request is served by the
procedural fallback image instead, so ``generate`` only reports
``success=False`` for requests that fail validation.  Results carry
``metadata.source`` (``"model"`` or ``"fallback"``) to tell the paths apart.

Concurrency
-----------
The model handles and tokenizer are shared mutable state.  A single lock
serialises :meth:`GenerationEngine.load_models`,
:meth:`GenerationEngine.generate` and :meth:`GenerationEngine.dispose_models`,
so at most one generation is in flight and models are never disposed
underneath it.  There is no cancellation and no timeout.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any, TypeVar

import numpy as np

from genloop.core.buffer_pool import BufferPool
from genloop.core.config import GenloopConfig
from genloop.core.errors import (
    GenloopError,
    InferenceError,
    LoadError,
    ShapeMismatchError,
    ValidationError,
)
from genloop.core.fallback import generate_fallback
from genloop.core.model_handles import ModelHandle
from genloop.core.model_manager import ModelManager, ModelPaths
from genloop.core.models import (
    MAX_DIMENSION,
    GenerationMetadata,
    GenerationRequest,
    GenerationResult,
    OperationResult,
)
from genloop.core.noise import generate_noise

logger = logging.getLogger(__name__)

T = TypeVar("T")

TEXT_INPUT_NAME = "input_ids"
DECODER_INPUT_NAMES = ("sample", "latent_sample")
RGB_CHANNELS = 3


# ---------------------------------------------------------------------------
# Stage helpers.  Pure functions over numpy arrays and handle signatures.
# ---------------------------------------------------------------------------


def build_conditioning(timestep: int, cond_dim: int, cond_value: float) -> dict[str, np.ndarray]:
    """Build the fixed ``timestep`` and ``timestep_cond`` denoiser inputs."""
    return {
        "timestep": np.array([timestep], dtype=np.int64),
        "timestep_cond": np.full((1, cond_dim), cond_value, dtype=np.float32),
    }


def rescale_latent(latent: np.ndarray, scale_factor: float) -> np.ndarray:
    """Undo the encoder-side latent scaling before decoding."""
    return (np.asarray(latent, dtype=np.float32) / np.float32(scale_factor)).astype(np.float32)


def expected_channels(handle: ModelHandle, input_name: str) -> int | None:
    """Channel count the handle declares for *input_name*, if fixed."""
    spec = handle.input_spec(input_name)
    if spec is None or len(spec.shape) < 2:
        return None
    channels = spec.shape[1]
    return channels if isinstance(channels, int) and channels > 0 else None


def reconcile_channels(latent: np.ndarray, channels: int | None) -> np.ndarray:
    """Keep only the first *channels* latent channels.

    A compatibility shim for decoders exported with a 3-channel latent input:
    the surplus channels are discarded (lossy).  Latents that already fit, or
    decoders with an unknown channel count, pass through unchanged.
    """
    if channels is None or latent.ndim != 4 or latent.shape[1] <= channels:
        return latent
    logger.info(
        "Reducing %d-channel latent to %d channels for decoder compatibility.",
        latent.shape[1],
        channels,
    )
    return np.ascontiguousarray(latent[:, :channels])


def decoder_input_name(handle: ModelHandle) -> str:
    """Pick the decoder's latent input: ``sample``, ``latent_sample``, else first."""
    names = handle.input_names
    for candidate in DECODER_INPUT_NAMES:
        if candidate in names:
            return candidate
    return names[0] if names else DECODER_INPUT_NAMES[0]


def text_input_name(handle: ModelHandle) -> str:
    names = handle.input_names
    if TEXT_INPUT_NAME in names or not names:
        return TEXT_INPUT_NAME
    return names[0]


def conform_feeds(feeds: dict[str, np.ndarray], handle: ModelHandle) -> dict[str, np.ndarray]:
    """Adapt feeds to a handle's declared signature.

    Feeds the handle does not declare are dropped and the rest are cast to
    the declared dtype.  A handle that declares no inputs gets the feeds
    unchanged.
    """
    if not handle.inputs:
        return dict(feeds)

    conformed = {}
    for name, value in feeds.items():
        spec = handle.input_spec(name)
        if spec is None:
            logger.debug("%s does not declare input '%s'; skipping it.", handle.name, name)
            continue
        if spec.dtype is not None and value.dtype != np.dtype(spec.dtype):
            value = value.astype(spec.dtype)
        conformed[name] = value
    return conformed


def first_output(outputs: dict[str, Any]) -> np.ndarray:
    """Return the first named output of a model run."""
    if not outputs:
        raise ValueError("model returned no outputs")
    name = next(iter(outputs))
    return np.asarray(outputs[name])


def chw_to_rgba(decoded: np.ndarray, out: np.ndarray | None = None) -> np.ndarray:
    """Convert a decoded ``[1, C, H, W]`` image to HWC RGBA bytes.

    Each RGB value becomes ``clamp(round((v + 1) * 127.5), 0, 255)`` with
    halves rounded up; alpha is always 255.

    Args:
        decoded: Decoder output, ``[1, C, H, W]`` or ``[C, H, W]`` with at
            least three channels.
        out: Optional ``uint8`` buffer of ``H * W * 4`` bytes to write into.

    Returns:
        ``(H, W, 4)`` ``uint8`` array.
    """
    if decoded.ndim == 4:
        decoded = decoded[0]
    if decoded.ndim != 3 or decoded.shape[0] < RGB_CHANNELS:
        raise ValueError(f"Expected a [1, C>=3, H, W] image tensor, got shape {decoded.shape}")

    _, height, width = decoded.shape
    if out is None:
        out = np.empty(height * width * 4, dtype=np.uint8)
    image = out.reshape(height, width, 4)

    rgb = np.nan_to_num(decoded[:RGB_CHANNELS].astype(np.float64), nan=-1.0)
    scaled = np.floor((rgb + 1.0) * 127.5 + 0.5)
    image[..., :3] = np.clip(scaled, 0, 255).astype(np.uint8).transpose(1, 2, 0)
    image[..., 3] = 255
    return image


def _run_stage(stage: str, fn: Callable[[], T]) -> T:
    try:
        return fn()
    except InferenceError:
        raise
    except Exception as exc:
        raise InferenceError(stage, str(exc) or type(exc).__name__) from exc


def validate_request(
    request: GenerationRequest,
    max_width: int = MAX_DIMENSION,
    max_height: int = MAX_DIMENSION,
) -> None:
    """Validate a generation request.

    Raises:
        ValidationError: If validation fails with user-friendly message
    """
    try:
        request.validate(max_width, max_height)
    except ValueError as e:
        raise ValidationError(str(e)) from e


# ---------------------------------------------------------------------------
# Engine.
# ---------------------------------------------------------------------------


class GenerationEngine:
    """Runs generation requests against a :class:`ModelManager`.

    Attributes:
        _manager (ModelManager): Owner of the model handles and tokenizer.
        _config (GenloopConfig): Inference constants and defaults.
        _pool (BufferPool): Pixel storage reused across requests.
        _lock (threading.Lock): Serialises load, generate and dispose.
    """

    def __init__(
        self,
        manager: ModelManager,
        config: GenloopConfig,
        pool: BufferPool | None = None,
    ) -> None:
        self._manager = manager
        self._config = config
        self._pool = pool if pool is not None else BufferPool()
        self._lock = threading.Lock()

    # -- Lifecycle ----------------------------------------------------------

    def load_models(self, backend: str | None = None, paths: ModelPaths | None = None) -> OperationResult:
        """Load all models.

        Args:
            backend: ``"cpu"`` or ``"gpu"``; defaults to ``config.backend``.
            paths: File locations; default to the configured layout.

        Returns:
            ``OperationResult`` with ``success`` and, on failure, ``error``.
        """
        backend = backend or self._config.backend
        paths = paths or ModelPaths.from_config(self._config)

        with self._lock:
            try:
                self._manager.load(backend, paths)
            except LoadError as exc:
                logger.error("Model loading failed: %s", exc)
                return OperationResult(success=False, error=str(exc))

            return OperationResult(
                success=True,
                details={"models": self._manager.describe()["models"]},
            )

    def dispose_models(self) -> OperationResult:
        """Release all models.  Never raises; safe to call repeatedly."""
        with self._lock:
            try:
                errors = self._manager.dispose()
            except Exception as exc:
                logger.exception("Unexpected error while disposing models.")
                return OperationResult(success=False, error=str(exc))

        if errors:
            return OperationResult(success=False, error="; ".join(str(e) for e in errors))
        return OperationResult(success=True)

    def status(self) -> dict[str, Any]:
        status = self._manager.describe()
        status["pooled_buffers"] = len(self._pool)
        return status

    @property
    def is_ready(self) -> bool:
        return self._manager.is_ready

    # -- Generation ---------------------------------------------------------

    def generate(self, request: GenerationRequest) -> GenerationResult:
        """Generate an image for *request*.

        Returns:
            ``success=False`` only when the request is invalid.  Otherwise the
            model output, or the fallback image when the models are not
            loaded or any stage fails.
        """
        try:
            validate_request(request, self._config.max_width, self._config.max_height)
        except ValidationError as exc:
            logger.warning("Rejected generation request: %s", exc)
            return GenerationResult.failure(str(exc))

        with self._lock:
            if not self._manager.is_ready:
                reason = f"models not loaded (state={self._manager.state.value})"
                logger.warning("Models not ready, using placeholder generation: %s", reason)
                return self._fallback(request, reason)

            try:
                return self._generate_with_models(request)
            except GenloopError as exc:
                logger.error("Inference failed, falling back to placeholder: %s", exc)
                return self._fallback(request, str(exc))

    def _generate_with_models(self, request: GenerationRequest) -> GenerationResult:
        models = self._manager.models
        tokenizer = self._manager.tokenizer
        text_encoder, denoiser, decoder = models.text_encoder, models.denoiser, models.decoder
        cfg = self._config

        logger.info(
            "Generating %dx%d image: steps=%d seed=%d guidance=%.1f prompt=%r negative=%r",
            request.width,
            request.height,
            request.steps,
            request.seed,
            request.guidance_scale,
            request.prompt[:60],
            request.negative_prompt[:60],
        )

        input_ids = _run_stage("tokenize", lambda: tokenizer.encode(request.prompt)[np.newaxis, :])

        def _encode_text() -> np.ndarray:
            feeds = conform_feeds({text_input_name(text_encoder): input_ids}, text_encoder)
            return first_output(text_encoder.run(feeds))

        embedding = _run_stage("text_encode", _encode_text)
        logger.debug("Text encoded: %s", embedding.shape)

        noise = _run_stage("noise", lambda: generate_noise(request.seed, request.height, request.width))

        def _denoise() -> np.ndarray:
            feeds = {
                "sample": noise,
                "encoder_hidden_states": embedding,
                **build_conditioning(cfg.timestep, cfg.timestep_cond_dim, cfg.timestep_cond_value),
            }
            return first_output(denoiser.run(conform_feeds(feeds, denoiser)))

        latent = _run_stage("denoise", _denoise)
        logger.debug("Diffusion complete: %s", latent.shape)

        latent_name = decoder_input_name(decoder)

        scaled = _run_stage("rescale", lambda: rescale_latent(latent, cfg.vae_scale_factor))
        decoder_latent = _run_stage(
            "reconcile",
            lambda: reconcile_channels(scaled, expected_channels(decoder, latent_name)),
        )

        decoded = _run_stage(
            "decode",
            lambda: first_output(
                decoder.run(conform_feeds({latent_name: decoder_latent}, decoder))
            ),
        )
        logger.debug("Image decoded: %s", decoded.shape)

        def _convert() -> tuple[bytes, int, int]:
            height, width = decoded.shape[-2], decoded.shape[-1]
            buffer = self._pool.acquire(width * height * 4)
            image = chw_to_rgba(decoded, out=buffer)
            # Copy out of the pool before returning.
            return image.tobytes(), width, height

        pixels, width, height = _run_stage("convert", _convert)

        note = None
        if (width, height) != (request.width, request.height):
            mismatch = ShapeMismatchError((request.width, request.height), (width, height))
            logger.warning("%s; returning decoder resolution.", mismatch)
            note = str(mismatch)

        logger.info("Model image generated: %dx%d.", width, height)
        return GenerationResult(
            success=True,
            pixels=pixels,
            metadata=self._metadata(request, width, height, "model", note),
        )

    def _fallback(self, request: GenerationRequest, reason: str) -> GenerationResult:
        pixels = generate_fallback(
            request.seed, request.prompt, request.width, request.height, pool=self._pool
        )
        return GenerationResult(
            success=True,
            pixels=pixels,
            metadata=self._metadata(
                request, request.width, request.height, "fallback", f"Fallback image: {reason}"
            ),
        )

    def _metadata(
        self,
        request: GenerationRequest,
        width: int,
        height: int,
        source: str,
        note: str | None,
    ) -> GenerationMetadata:
        return GenerationMetadata(
            width=width,
            height=height,
            steps=request.steps,
            seed=request.seed,
            prompt=request.prompt[: self._config.metadata_prompt_chars],
            source=source,
            note=note,
        )
