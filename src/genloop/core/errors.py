"""Exception hierarchy for the generation engine.

Propagation rules
-----------------
- ``LoadError`` surfaces to callers of model loading and puts the engine in
  the error state.
- ``TokenizeError`` and ``InferenceError`` raised while generating are caught
  by the engine, which degrades to the fallback image.
- ``ShapeMismatchError`` is never raised out of the engine.  It is built to
  describe a decoder resolution that differs from the request, logged, and
  its message copied into the result metadata.
- ``DisposeError`` is collected and logged during disposal, never raised.
- ``ValidationError`` marks a request that fails its pre-conditions; it is the
  only generation failure reported back as ``success=False``.
"""


class GenloopError(Exception):
    """Base class for all genloop errors."""


class ValidationError(GenloopError):
    """Generation request failed validation.

    The message is intended to be shown directly to the user.
    """


class LoadError(GenloopError):
    """A model or tokenizer could not be loaded."""


class TokenizeError(GenloopError):
    """Prompt could not be tokenized."""


class InferenceError(GenloopError):
    """A pipeline stage failed.

    Attributes:
        stage: Name of the failing stage (``tokenize``, ``denoise``, ...).
        reason: Message of the underlying error.
    """

    def __init__(self, stage: str, reason: str) -> None:
        super().__init__(f"{stage} stage failed: {reason}")
        self.stage = stage
        self.reason = reason


class ShapeMismatchError(GenloopError):
    """Decoder output resolution differs from the requested one."""

    def __init__(self, requested: tuple[int, int], actual: tuple[int, int]) -> None:
        req_w, req_h = requested
        act_w, act_h = actual
        super().__init__(
            f"Decoder output {act_w}x{act_h} differs from requested {req_w}x{req_h}"
        )
        self.requested = requested
        self.actual = actual


class DisposeError(GenloopError):
    """A model handle could not be released."""

    def __init__(self, model: str, reason: str) -> None:
        super().__init__(f"Failed to release {model}: {reason}")
        self.model = model
        self.reason = reason
