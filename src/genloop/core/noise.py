"""Seeded latent noise for the denoiser.

The seed is a user-facing artistic parameter, so the noise must be exactly
reproducible across runs and platforms.  A linear congruential generator with
fixed constants is used instead of numpy's generators, whose streams are free
to change between releases.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator

import numpy as np

logger = logging.getLogger(__name__)

LATENT_CHANNELS = 4
LATENT_DOWNSCALE = 8

_LCG_MULTIPLIER = 1664525
_LCG_INCREMENT = 1013904223
_LCG_MODULUS = 2**32


def lcg_stream(seed: int) -> Iterator[float]:
    """Yield an endless stream of floats in ``[0, 1)`` derived from *seed*."""
    state = seed
    while True:
        state = (state * _LCG_MULTIPLIER + _LCG_INCREMENT) % _LCG_MODULUS
        yield state / _LCG_MODULUS


def latent_shape(height: int, width: int) -> tuple[int, int, int, int]:
    """Return the ``[1, 4, H/8, W/8]`` latent shape for a pixel resolution."""
    return (1, LATENT_CHANNELS, height // LATENT_DOWNSCALE, width // LATENT_DOWNSCALE)


def generate_noise(seed: int, height: int, width: int) -> np.ndarray:
    """Produce the initial latent tensor for a generation.

    Args:
        seed: Generation seed.  Identical seeds give byte-identical tensors.
        height: Image height in pixels.
        width: Image width in pixels.

    Returns:
        float32 array of shape ``[1, 4, height // 8, width // 8]`` with values
        in ``[-1, 1)``.
    """
    shape = latent_shape(height, width)
    count = int(np.prod(shape))

    stream = lcg_stream(seed)
    values = np.fromiter((next(stream) for _ in range(count)), dtype=np.float64, count=count)
    noise = (values * 2.0 - 1.0).astype(np.float32).reshape(shape)

    logger.debug("Noise latent created: shape=%s seed=%d", shape, seed)
    return noise
