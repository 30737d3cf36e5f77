"""Configuration management for genloop.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the GENLOOP_ prefix,
allowing model locations and inference constants to be changed without code
changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (GENLOOP_* prefix)
2. .env file in the project root
3. Default values defined in GenloopConfig

Example .env file:
    GENLOOP_MODELS_DIR=/opt/genloop/models
    GENLOOP_BACKEND=gpu
    GENLOOP_AUTOLOAD_MODELS=true

Model File Layout
-----------------
The engine expects three ONNX graphs and a CLIP tokenizer inside
``models_dir``::

    models/
        model.onnx            # denoiser (UNet), optional model.onnx_data
        text_encoder.onnx
        vae_decoder.onnx
        tokenizer/
            vocab.json
            merges.txt

The file names can be overridden individually.  Provisioning the files is the
responsibility of the deployment; genloop never downloads weights.

Inference Constants
-------------------
- vae_scale_factor: latents are divided by this before decoding (SDXL 0.13025)
- timestep: fixed denoiser timestep for the single-pass schedule
- timestep_cond_dim / timestep_cond_value: shape and fill of the LCM
  ``timestep_cond`` input

See Also
--------
- GenloopConfig: Full configuration class documentation
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class GenloopConfig(BaseSettings):
    """Main configuration for the genloop engine and API server.

    Attributes
    ----------
    Model Files:
        models_dir : Path
            Directory holding the ONNX graphs and tokenizer files
        unet_filename, text_encoder_filename, vae_decoder_filename : str
            Model file names relative to models_dir
        tokenizer_vocab_filename, tokenizer_merges_filename : str
            Tokenizer file names relative to models_dir
        backend : Literal["cpu", "gpu"]
            Execution backend used when a load request does not name one
        min_model_bytes : int
            Model files smaller than this are rejected as corrupt

    Inference Constants:
        vae_scale_factor : float
        timestep : int
        timestep_cond_dim : int
        timestep_cond_value : float

    Generation Defaults:
        default_width, default_height : int
            Must be multiples of 8 (latent space is 1/8 of pixel space)
        max_width, max_height : int
            Requests larger than this are rejected before any allocation
        default_steps, default_seed : int
        default_guidance_scale : float
        default_negative_prompt : str
        metadata_prompt_chars : int
            Prompt length kept in result metadata

    Server:
        autoload_models : bool
            Load models during API startup
        server_host : str
        server_port : int

    Examples
    --------
        >>> from genloop.core.config import config
        >>> config.backend
        'cpu'

        >>> custom = GenloopConfig(models_dir="/tmp/models", backend="gpu")
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="GENLOOP_",
        case_sensitive=False,
    )

    # Model files
    models_dir: Path = Field(
        default=Path("models"),
        description="Directory holding the ONNX models and tokenizer files",
    )
    unet_filename: str = Field(default="model.onnx", description="Denoiser (UNet) graph")
    text_encoder_filename: str = Field(default="text_encoder.onnx")
    vae_decoder_filename: str = Field(default="vae_decoder.onnx")
    tokenizer_vocab_filename: str = Field(default="tokenizer/vocab.json")
    tokenizer_merges_filename: str = Field(default="tokenizer/merges.txt")

    backend: Literal["cpu", "gpu"] = Field(
        default="cpu",
        description="Execution backend (cpu or gpu)",
    )
    min_model_bytes: int = Field(
        default=512 * 1024,
        description="Model files below this size are treated as corrupt",
        ge=0,
    )

    # Inference constants
    vae_scale_factor: float = Field(
        default=0.13025,
        description="Latent scaling factor undone before decoding",
        gt=0.0,
    )
    timestep: int = Field(default=999, description="Fixed denoiser timestep", ge=0)
    timestep_cond_dim: int = Field(default=256, ge=1)
    timestep_cond_value: float = Field(default=0.1)

    # Generation defaults
    default_width: int = Field(default=512, ge=8, le=4096, multiple_of=8)
    default_height: int = Field(default=512, ge=8, le=4096, multiple_of=8)
    max_width: int = Field(
        default=4096,
        description="Largest accepted request width in pixels",
        ge=8,
        le=16384,
    )
    max_height: int = Field(default=4096, ge=8, le=16384)
    default_steps: int = Field(default=1, ge=1, le=50)
    default_seed: int = Field(default=42)
    default_guidance_scale: float = Field(default=7.5, ge=0.0)
    default_negative_prompt: str = Field(default="blurry, low quality")
    metadata_prompt_chars: int = Field(default=100, ge=1)

    # Server
    autoload_models: bool = Field(
        default=False,
        description="Load models during API startup instead of on request",
    )
    server_host: str = Field(
        default="0.0.0.0",
        description="Server bind address (0.0.0.0 for local network)",
    )
    server_port: int = Field(default=7860, ge=1024, le=65535)

    def __init__(self, **kwargs):
        """Initialize configuration and create the models directory.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        self.models_dir.mkdir(parents=True, exist_ok=True)

    def model_path(self, filename: str) -> Path:
        """Resolve a model file name against ``models_dir``."""
        return self.models_dir / filename


# Global configuration instance, loaded from GENLOOP_* variables and .env.
config = GenloopConfig()
