"""Data models for generation requests and results."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

LATENT_MULTIPLE = 8
MAX_DIMENSION = 4096


@dataclass
class GenerationRequest:
    """Parameters for one image generation.

    ``negative_prompt`` and ``guidance_scale`` are carried for callers and
    logs; the single fixed-timestep pass does not apply guidance.
    """

    prompt: str
    width: int = 512
    height: int = 512
    steps: int = 1
    seed: int = 42
    guidance_scale: float = 7.5
    negative_prompt: str = ""

    def validate(self, max_width: int = MAX_DIMENSION, max_height: int = MAX_DIMENSION) -> None:
        """Check the request pre-conditions.

        Args:
            max_width: Largest accepted width in pixels.
            max_height: Largest accepted height in pixels.

        Raises:
            ValueError: If any parameter is invalid, with descriptive message
        """
        if not self.prompt or not self.prompt.strip():
            raise ValueError("Prompt is required")

        for label, value, limit in (
            ("Width", self.width, max_width),
            ("Height", self.height, max_height),
        ):
            if value <= 0:
                raise ValueError(f"{label} must be positive, got {value}")
            if value > limit:
                raise ValueError(f"{label} must be at most {limit}, got {value}")
            # Latent space is 1/8 of pixel space.
            if value % LATENT_MULTIPLE != 0:
                raise ValueError(f"{label} must be a multiple of {LATENT_MULTIPLE}, got {value}")

        if self.steps < 1:
            raise ValueError(f"Steps must be at least 1, got {self.steps}")

    @property
    def byte_length(self) -> int:
        return self.width * self.height * 4


@dataclass
class GenerationMetadata:
    """Description of a produced image.

    ``width`` and ``height`` are the dimensions of the returned pixels, which
    for model output come from the decoder rather than the request.
    """

    width: int
    height: int
    steps: int
    seed: int
    prompt: str
    source: Literal["model", "fallback"]
    format: str = "rgba"
    note: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if data["note"] is None:
            del data["note"]
        return data


@dataclass
class GenerationResult:
    """Outcome of :meth:`GenerationEngine.generate`.

    ``pixels`` is an HWC RGBA byte string of ``width * height * 4`` bytes,
    owned by the caller.
    """

    success: bool
    pixels: bytes | None = None
    metadata: GenerationMetadata | None = None
    error: str | None = None

    @classmethod
    def failure(cls, error: str) -> GenerationResult:
        return cls(success=False, error=error)

    @property
    def is_fallback(self) -> bool:
        return self.metadata is not None and self.metadata.source == "fallback"


@dataclass
class OperationResult:
    """Outcome of a load or dispose operation."""

    success: bool
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        if self.error is not None:
            data["error"] = self.error
        data.update(self.details)
        return data
