"""
CTC greedy decoding of per-timestep probability matrices.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Sequence

import numpy as np

logger = logging.getLogger(__name__)

# Tolerance for probability rows summing to 1
ROW_SUM_TOLERANCE = 1e-3


class Alphabet:
    """
    Ordered, immutable set of recognizable characters.

    Column i of a probability matrix is characters[i]; the extra last column
    (index len(alphabet)) is the CTC blank.
    """

    def __init__(self, characters: Sequence[str]):
        chars = tuple(characters)
        if not chars:
            raise ValueError("Alphabet must not be empty")
        if len(set(chars)) != len(chars):
            raise ValueError("Alphabet characters must be unique")
        self._chars = chars

    @property
    def characters(self) -> tuple:
        return self._chars

    @property
    def blank_index(self) -> int:
        return len(self._chars)

    @property
    def num_classes(self) -> int:
        """Alphabet size plus blank."""
        return len(self._chars) + 1

    def __len__(self) -> int:
        return len(self._chars)

    def __getitem__(self, index: int) -> str:
        return self._chars[index]

    def __repr__(self) -> str:
        return f"Alphabet({len(self._chars)} chars)"

    def encode(self, text: str) -> List[int]:
        """Class indices for text (used to build test matrices)."""
        index = {c: i for i, c in enumerate(self._chars)}
        try:
            return [index[c] for c in text]
        except KeyError as e:
            raise ValueError(f"Character {e.args[0]!r} is not in the alphabet") from None


# Printable ASCII, space through tilde
DEFAULT_ALPHABET = Alphabet([chr(c) for c in range(32, 127)])


@dataclass
class DecodedLine:
    """Text decoded from one line's probability matrix."""
    text: str
    confidence: float
    words: List[str] = field(default_factory=list)


def validate_matrix(matrix: np.ndarray, num_classes: int, tolerance: float = ROW_SUM_TOLERANCE):
    """Raise ValueError unless matrix is (T, num_classes) with rows summing to ~1."""
    if matrix.ndim != 2:
        raise ValueError(f"Probability matrix must be 2-D, got shape {matrix.shape}")
    if matrix.shape[1] != num_classes:
        raise ValueError(
            f"Probability matrix has {matrix.shape[1]} classes, expected {num_classes}"
        )
    if matrix.shape[0] and not np.allclose(matrix.sum(axis=1), 1.0, atol=tolerance):
        raise ValueError("Probability matrix rows must sum to 1")


class CTCDecoder:
    """Greedy (best path) CTC decoder."""

    def __init__(self, alphabet: Alphabet = DEFAULT_ALPHABET, validate: bool = True):
        self.alphabet = alphabet
        self.validate = validate

    def decode(self, matrix: np.ndarray) -> DecodedLine:
        """
        Decode a (timesteps, len(alphabet) + 1) probability matrix.

        A class is emitted when it is not blank and differs from the previous
        timestep's class, so repeats collapse unless separated by a blank or
        another symbol. Confidence is the mean max-probability of the emitted
        symbols (0 when nothing is emitted). Words are the whitespace-split
        text; they share the line confidence.
        """
        matrix = np.asarray(matrix, dtype=np.float32)
        if self.validate:
            validate_matrix(matrix, self.alphabet.num_classes)

        if matrix.shape[0] == 0:
            return DecodedLine(text="", confidence=0.0)

        blank = self.alphabet.blank_index
        best_path = np.argmax(matrix, axis=1)
        best_probs = matrix[np.arange(len(matrix)), best_path]

        chars = []
        probs = []
        prev = -1
        for i, idx in enumerate(best_path):
            if idx != blank and idx != prev:
                chars.append(self.alphabet[idx])
                probs.append(best_probs[i])
            prev = idx

        text = "".join(chars)
        confidence = float(np.clip(np.mean(probs), 0.0, 1.0)) if probs else 0.0

        return DecodedLine(text=text, confidence=confidence, words=text.split())


def encode_text_matrix(
    text: str,
    alphabet: Alphabet = DEFAULT_ALPHABET,
    probability: float = 0.9,
    frames_per_char: int = 2,
    timesteps: int = 0
) -> np.ndarray:
    """
    Build a probability matrix whose greedy decode is text.

    Each character occupies frames_per_char frames followed by one blank
    frame; the remainder up to timesteps is blank. The winning class of each
    frame gets probability, the rest is spread evenly.
    """
    if not 0.0 < probability <= 1.0:
        raise ValueError("probability must be in (0, 1]")

    path = []
    for idx in alphabet.encode(text):
        path.extend([idx] * frames_per_char)
        path.append(alphabet.blank_index)
    path.extend([alphabet.blank_index] * max(0, timesteps - len(path)))

    num_classes = alphabet.num_classes
    rest = (1.0 - probability) / (num_classes - 1)
    matrix = np.full((len(path), num_classes), rest, dtype=np.float32)
    matrix[np.arange(len(path)), path] = probability
    return matrix
