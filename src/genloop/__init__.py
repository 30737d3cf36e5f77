"""genloop - real-time text-to-image generation engine."""

__version__ = "0.3.0"

from genloop.core.config import GenloopConfig, config
from genloop.core.model_manager import EngineState, ModelManager, ModelPaths
from genloop.core.models import GenerationRequest, GenerationResult, OperationResult
from genloop.core.pipeline import GenerationEngine

__all__ = [
    "EngineState",
    "GenerationEngine",
    "GenerationRequest",
    "GenerationResult",
    "GenloopConfig",
    "ModelManager",
    "ModelPaths",
    "OperationResult",
    "config",
]
