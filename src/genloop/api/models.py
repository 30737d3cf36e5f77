"""Pydantic request and response models for the genloop API.

FastAPI uses these for request validation, serialisation, and OpenAPI
documentation generation.

Models
------
LoadModelsRequest
    Payload for ``POST /api/models/load``.
GenerateRequest
    Payload for ``POST /api/generate`` and ``POST /api/generate/png``.
GenerateResponse / OperationResponse
    Response bodies.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from genloop.core.config import config
from genloop.core.models import GenerationRequest


class LoadModelsRequest(BaseModel):
    """Request body for ``POST /api/models/load``.

    Every path is optional; omitted paths use the configured layout under
    ``GENLOOP_MODELS_DIR``.

    Attributes:
        backend: ``"cpu"`` or ``"gpu"``.  ``None`` uses ``config.backend``.
        unet: Denoiser (UNet) ONNX file.
        text_encoder: Text encoder ONNX file.
        vae_decoder: VAE decoder ONNX file.
        tokenizer_vocab: CLIP ``vocab.json``.
        tokenizer_merges: CLIP ``merges.txt``.
    """

    backend: Literal["cpu", "gpu"] | None = Field(
        default=None,
        description="Execution backend; defaults to the configured backend.",
    )
    unet: str | None = None
    text_encoder: str | None = None
    vae_decoder: str | None = None
    tokenizer_vocab: str | None = None
    tokenizer_merges: str | None = None

    def path_overrides(self) -> dict[str, str | None]:
        return self.model_dump(exclude={"backend"})


class GenerateRequest(BaseModel):
    """Request body for the generation endpoints.

    Field-level checks are deliberately loose: prompt and dimension
    pre-conditions are enforced by the engine so that both endpoints report
    them the same way.
    """

    prompt: str = Field(..., description="Text prompt describing the image.")
    negative_prompt: str = Field(
        default=config.default_negative_prompt,
        description="Text describing what to avoid.",
    )
    width: int = Field(default=config.default_width, description="Width in pixels (multiple of 8).")
    height: int = Field(
        default=config.default_height, description="Height in pixels (multiple of 8)."
    )
    steps: int = Field(default=config.default_steps, description="Requested inference steps.")
    seed: int = Field(default=config.default_seed, description="Noise seed.")
    guidance_scale: float = Field(
        default=config.default_guidance_scale,
        description="Classifier-free guidance scale.",
    )

    def to_generation_request(self) -> GenerationRequest:
        return GenerationRequest(
            prompt=self.prompt,
            negative_prompt=self.negative_prompt,
            width=self.width,
            height=self.height,
            steps=self.steps,
            seed=self.seed,
            guidance_scale=self.guidance_scale,
        )


class GenerationMetadataModel(BaseModel):
    width: int
    height: int
    steps: int
    seed: int
    prompt: str
    format: str = "rgba"
    source: Literal["model", "fallback"]
    note: str | None = None


class GenerateResponse(BaseModel):
    """Response body for ``POST /api/generate``.

    Attributes:
        success: ``False`` only when the request failed validation.
        pixels: Base64-encoded HWC RGBA bytes (``width * height * 4``).
        metadata: Dimensions, seed and origin of the pixels.
        error: Validation message when ``success`` is ``False``.
    """

    success: bool
    pixels: str | None = None
    metadata: GenerationMetadataModel | None = None
    error: str | None = None


class OperationResponse(BaseModel):
    success: bool
    error: str | None = None
