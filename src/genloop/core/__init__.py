"""Core functionality for image generation.

This package contains the generation engine and everything it is built from:

- **GenerationEngine**: drives a request through tokenize, text-encode,
  denoise and decode, falling back to a procedural image on any failure
- **ModelManager**: owns the three model handles and the tokenizer
- **GenloopConfig / config**: Pydantic Settings configuration (GENLOOP_ prefix)

Architecture Overview
---------------------
Leaf-first:

1. **noise.py**: seeded LCG latent noise
2. **tokenizer.py**: vocabulary and hash prompt tokenizers
3. **buffer_pool.py**: reusable pixel buffers keyed by byte length
4. **model_handles.py**: "named tensors in, named tensors out" model
   interface and its onnxruntime implementation
5. **model_manager.py**: load/dispose lifecycle and readiness
6. **fallback.py**: deterministic placeholder image
7. **pipeline.py**: the orchestrating engine

Usage Example
-------------
    from genloop.core import GenerationEngine, ModelManager, config
    from genloop.core.models import GenerationRequest

    engine = GenerationEngine(ModelManager(config), config)
    engine.load_models("cpu")
    result = engine.generate(GenerationRequest(prompt="a red fox", seed=42))
    engine.dispose_models()
"""

from genloop.core.config import GenloopConfig, config
from genloop.core.model_manager import ModelManager
from genloop.core.pipeline import GenerationEngine

__all__ = [
    "GenerationEngine",
    "GenloopConfig",
    "ModelManager",
    "config",
]
