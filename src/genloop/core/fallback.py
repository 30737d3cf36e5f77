"""Procedural placeholder image used when the models cannot produce one.

The image is a pure function of ``(seed, prompt, width, height)``:

- a diagonal blend between two hues derived from the seed,
  ``seed * 137.508 mod 360`` and ``seed * 237.508 mod 360``;
- the hue shifted by a hash of the prompt's length and first character;
- a 32px checkerboard that raises chroma on alternate cells;
- an 8px white border;
- 16px pure red squares in each corner.

The fixed border and corners double as a self-test pattern: tests can assert
exact pixel values without any model installed.
"""

from __future__ import annotations

import logging

import numpy as np

from genloop.core.buffer_pool import BufferPool

logger = logging.getLogger(__name__)

BORDER_SIZE = 8
CORNER_SIZE = BORDER_SIZE * 2
CHECKER_SIZE = 32

BORDER_COLOR = (255, 255, 255, 255)
CORNER_COLOR = (255, 0, 0, 255)

_BASE_CHROMA = 0.8
_CHECKER_BOOST = 0.3
_LIGHTNESS = 0.2


def seed_hues(seed: int) -> tuple[float, float]:
    """Return the two gradient hues (degrees) for a seed.

    Python modulo keeps both hues in [0, 360) for negative seeds too.
    """
    return (seed * 137.508) % 360.0, (seed * 237.508) % 360.0


def prompt_hash(prompt: str) -> int:
    """Cheap hue offset derived from the prompt's length and first character."""
    if not prompt:
        return 0
    return len(prompt) * 17 + ord(prompt[0]) * 23


def _hue_to_rgb(hue: np.ndarray, chroma: np.ndarray) -> np.ndarray:
    """Convert hue (degrees) and chroma planes to an ``(H, W, 3)`` float image."""
    h_norm = hue / 60.0
    second = chroma * (1.0 - np.abs(np.mod(h_norm, 2.0) - 1.0))
    zero = np.zeros_like(chroma)
    sector = np.clip(np.floor(h_norm), 0, 5).astype(np.int8)

    # (r, g, b) for each 60 degree sector.
    table = [
        (chroma, second, zero),
        (second, chroma, zero),
        (zero, chroma, second),
        (zero, second, chroma),
        (second, zero, chroma),
        (chroma, zero, second),
    ]
    conditions = [sector == index for index in range(6)]
    channels = [np.select(conditions, [row[c] for row in table]) for c in range(3)]
    return np.stack(channels, axis=-1)


def render_fallback(
    seed: int,
    prompt: str,
    width: int,
    height: int,
    out: np.ndarray | None = None,
) -> np.ndarray:
    """Draw the placeholder image.

    Args:
        seed: Generation seed.
        prompt: Prompt text (only its length and first character are used).
        width: Image width in pixels.
        height: Image height in pixels.
        out: Optional ``uint8`` buffer of ``width * height * 4`` bytes to draw
            into.

    Returns:
        ``(height, width, 4)`` ``uint8`` RGBA array (a view of *out* when
        given).
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid fallback size {width}x{height}")

    if out is None:
        out = np.empty(width * height * 4, dtype=np.uint8)
    image = out.reshape(height, width, 4)

    y, x = np.mgrid[0:height, 0:width]

    hue1, hue2 = seed_hues(seed)
    gradient = (x + y) / float(width + height)
    hue = np.mod(hue1 + (hue2 - hue1) * gradient + prompt_hash(prompt), 360.0)

    checker = np.mod(x // CHECKER_SIZE + y // CHECKER_SIZE, 2) * _CHECKER_BOOST
    chroma = _BASE_CHROMA + checker

    rgb = _hue_to_rgb(hue, chroma)
    image[..., :3] = np.clip(np.floor((rgb + _LIGHTNESS) * 255.0), 0, 255).astype(np.uint8)
    image[..., 3] = 255

    image[:BORDER_SIZE, :] = BORDER_COLOR
    image[height - BORDER_SIZE :, :] = BORDER_COLOR
    image[:, :BORDER_SIZE] = BORDER_COLOR
    image[:, width - BORDER_SIZE :] = BORDER_COLOR

    image[:CORNER_SIZE, :CORNER_SIZE] = CORNER_COLOR
    image[:CORNER_SIZE, width - CORNER_SIZE :] = CORNER_COLOR
    image[height - CORNER_SIZE :, :CORNER_SIZE] = CORNER_COLOR
    image[height - CORNER_SIZE :, width - CORNER_SIZE :] = CORNER_COLOR

    return image


def generate_fallback(
    seed: int,
    prompt: str,
    width: int,
    height: int,
    pool: BufferPool | None = None,
) -> bytes:
    """Render the placeholder and return a caller-owned copy of its bytes.

    When *pool* is given the image is drawn into pooled storage, which is
    copied before returning so the next request of the same size cannot
    overwrite the caller's pixels.
    """
    byte_length = width * height * 4
    buffer = pool.acquire(byte_length) if pool is not None else None
    image = render_fallback(seed, prompt, width, height, out=buffer)

    logger.info("Generated %d byte fallback image (%dx%d RGBA).", byte_length, width, height)
    return image.tobytes()
