"""Prompt tokenization for the CLIP text encoder.

Two tokenizers produce the fixed 77-id sequence the text encoder consumes:

- :class:`VocabTokenizer` looks words up in a CLIP ``vocab.json``.  It is a
  word-level approximation of CLIP's byte-pair encoder: whole words are tried
  first (bare and with the ``</w>`` end-of-word marker) and unknown words are
  spelled out character by character.
- :class:`HashTokenizer` is the degraded variant used when the vocabulary
  files are missing.  Ids are stable but carry no meaning, so output quality
  is poor; it exists so the pipeline still runs end to end.

Use :func:`load_tokenizer` to get the best tokenizer the model directory
supports.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path

import numpy as np

from genloop.core.errors import TokenizeError

logger = logging.getLogger(__name__)

MAX_LENGTH = 77
START_ID = 49406
END_ID = 49407

START_TOKEN = "<|startoftext|>"
END_TOKEN = "<|endoftext|>"
UNK_TOKEN = "<unk>"
WORD_SUFFIX = "</w>"

_PUNCTUATION = re.compile(r"([.,!?;:])")
_NON_WORD = re.compile(r"[^\w\s]")

# Hash tokenizer ids live just above the end-of-text id.
_HASH_RANGE = 93


class PromptTokenizer(ABC):
    """Maps text to exactly :data:`MAX_LENGTH` integer ids."""

    name: str = "base"
    dtype: type = np.int32

    def encode(self, text: str) -> np.ndarray:
        """Tokenize *text*.

        Args:
            text: Prompt text.  Must contain at least one non-blank character.

        Returns:
            1-D array of length 77 with dtype :attr:`dtype`.

        Raises:
            TokenizeError: If *text* is empty or blank.
        """
        if not text or not text.strip():
            raise TokenizeError("Cannot tokenize an empty prompt")

        ids = self._encode(text)
        logger.debug("Tokenized %r with %s tokenizer", text[:40], self.name)
        return np.asarray(ids, dtype=self.dtype)

    @abstractmethod
    def _encode(self, text: str) -> list[int]:
        """Return the 77 ids for non-empty *text*."""


class VocabTokenizer(PromptTokenizer):
    """Vocabulary-backed tokenizer.

    Args:
        vocab: Mapping of token string to id, as found in ``vocab.json``.
        merges: BPE merge rules from ``merges.txt``.  Only kept so callers can
            report what was loaded; lookups are word and character level.
    """

    name = "vocab"
    dtype = np.int32

    def __init__(self, vocab: dict[str, int], merges: list[str] | None = None) -> None:
        self._vocab = dict(vocab)
        self._merges = tuple(merges or ())
        # Id 0 counts as missing in every lookup.
        self.start_id = self._vocab.get(START_TOKEN) or START_ID
        self.end_id = self._vocab.get(END_TOKEN) or END_ID
        self.pad_id = self.end_id

    @property
    def vocab_size(self) -> int:
        return len(self._vocab)

    @property
    def merge_count(self) -> int:
        return len(self._merges)

    def _char_id(self, char: str) -> int:
        return self._vocab.get(char) or self._vocab.get(UNK_TOKEN) or 0

    def _encode(self, text: str) -> list[int]:
        words = _PUNCTUATION.sub(r" \1 ", text.lower()).split()

        # Word ids occupy positions 1..74 so the end id always fits.
        budget = MAX_LENGTH - 2
        ids = [self.start_id]
        for word in words:
            if len(ids) >= budget:
                break
            token_id = self._vocab.get(word) or self._vocab.get(word + WORD_SUFFIX)
            if token_id:
                ids.append(token_id)
                continue
            for char in word:
                if len(ids) >= budget:
                    break
                ids.append(self._char_id(char))

        ids.append(self.end_id)
        ids.extend([self.pad_id] * (MAX_LENGTH - len(ids)))
        return ids


class HashTokenizer(PromptTokenizer):
    """Degraded tokenizer deriving ids from character-code sums."""

    name = "hash"
    dtype = np.int64

    start_id = START_ID
    end_id = END_ID
    pad_id = 0

    @staticmethod
    def word_id(word: str) -> int:
        return END_ID + sum(ord(char) for char in word) % _HASH_RANGE

    def _encode(self, text: str) -> list[int]:
        words = _NON_WORD.sub("", text.lower()).split()

        budget = MAX_LENGTH - 1
        ids = [self.start_id]
        for word in words:
            if len(ids) >= budget:
                break
            ids.append(self.word_id(word))

        ids.append(self.end_id)
        ids.extend([self.pad_id] * (MAX_LENGTH - len(ids)))
        return ids


def _read_merges(path: Path) -> list[str]:
    # Drop the "#version" header and the trailing empty line.
    return path.read_text(encoding="utf-8").split("\n")[1:-1]


def load_tokenizer(vocab_path: Path | None, merges_path: Path | None) -> PromptTokenizer:
    """Build the best tokenizer the available files allow.

    Args:
        vocab_path: Path to ``vocab.json``.
        merges_path: Path to ``merges.txt``.

    Returns:
        A :class:`VocabTokenizer` when both files can be read, otherwise a
        :class:`HashTokenizer`.
    """
    try:
        if vocab_path is None or merges_path is None:
            raise FileNotFoundError("Tokenizer paths not configured")
        vocab = json.loads(Path(vocab_path).read_text(encoding="utf-8"))
        if not isinstance(vocab, dict):
            raise ValueError(f"{vocab_path} does not contain a token mapping")
        merges = _read_merges(Path(merges_path))
    except (OSError, ValueError) as exc:
        logger.warning("Could not load tokenizer files (%s); using hash tokenizer.", exc)
        return HashTokenizer()

    tokenizer = VocabTokenizer(vocab, merges)
    logger.info(
        "Loaded vocabulary tokenizer: %d tokens, %d merges.",
        tokenizer.vocab_size,
        tokenizer.merge_count,
    )
    return tokenizer
