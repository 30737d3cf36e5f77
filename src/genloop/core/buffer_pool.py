"""Reusable pixel storage keyed by byte length.

A generation loop at a fixed resolution asks for the same buffer size every
frame.  :class:`BufferPool` keeps one buffer per size so those frames do not
allocate.

The pool owns its buffers between calls: the next :meth:`BufferPool.acquire`
of the same length hands out the same storage again.  Anything that must
outlive that call has to be copied out first (the engine returns ``bytes``
copies for this reason).
"""

from __future__ import annotations

import logging

import numpy as np

logger = logging.getLogger(__name__)


class BufferPool:
    """One lazily created ``uint8`` buffer per requested byte length."""

    def __init__(self) -> None:
        self._buffers: dict[int, np.ndarray] = {}

    def acquire(self, byte_length: int) -> np.ndarray:
        """Return the pooled buffer of exactly *byte_length* bytes.

        Args:
            byte_length: Required size in bytes.

        Returns:
            Writable 1-D ``uint8`` array.  Its previous contents are not
            cleared.

        Raises:
            ValueError: If *byte_length* is not positive.
        """
        if byte_length <= 0:
            raise ValueError(f"Buffer length must be positive, got {byte_length}")

        buffer = self._buffers.get(byte_length)
        if buffer is None:
            buffer = np.zeros(byte_length, dtype=np.uint8)
            self._buffers[byte_length] = buffer
            logger.info("Created buffer pool entry for size: %d", byte_length)
        return buffer

    def clear(self) -> None:
        """Drop every pooled buffer."""
        self._buffers.clear()

    @property
    def total_bytes(self) -> int:
        return sum(buffer.nbytes for buffer in self._buffers.values())

    def __len__(self) -> int:
        return len(self._buffers)

    def __contains__(self, byte_length: object) -> bool:
        return byte_length in self._buffers
