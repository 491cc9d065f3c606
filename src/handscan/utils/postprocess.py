"""
Dictionary correction of recognized text.

Alphabetic tokens missing from the dictionary are replaced by the closest
dictionary word within a small edit distance. Every token gets a confidence:
1.0 for known or non-alphabetic tokens, 0.8 for corrected words and 0.5 for
unknown words without a suggestion. Tokens below UNCERTAIN_THRESHOLD are
reported as uncertain.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Union

from rapidfuzz.distance import Levenshtein

from .ocr_text import OCRResult

logger = logging.getLogger(__name__)

UNCERTAIN_THRESHOLD = 0.7
MAX_EDIT_DISTANCE = 2

COMMON_WORDS = (
    "the", "be", "to", "of", "and", "a", "in", "that", "have", "i",
    "it", "for", "not", "on", "with", "he", "as", "you", "do", "at",
    "this", "but", "his", "by", "from", "they", "we", "say", "her", "she",
    "or", "an", "will", "my", "one", "all", "would", "there", "their", "what",
    "so", "up", "out", "if", "about", "who", "get", "which", "go", "me",
    "when", "make", "can", "like", "time", "no", "just", "him", "know", "take",
    "people", "into", "year", "your", "good", "some", "could", "them", "see", "other",
    "than", "then", "now", "look", "only", "come", "its", "over", "think", "also",
    "back", "after", "use", "two", "how", "our", "work", "first", "well", "way",
    "even", "new", "want", "because", "any", "these", "give", "day", "most", "us",
    "hello", "world", "note", "page", "name", "date", "today", "tomorrow",
    "patient", "doctor", "medicine", "health", "hospital", "treatment", "diagnosis",
    "symptoms", "prescription", "medication", "dose", "daily", "twice", "morning",
    "evening", "before", "meals", "water", "tablets", "capsules", "mg", "ml",
)

_TOKEN_RE = re.compile(r"\b\w+\b")
_ALPHA_RE = re.compile(r"[A-Za-z]+")


@dataclass
class ProcessedWord:
    """One token before and after correction."""
    original: str
    corrected: str
    confidence: float
    was_corrected: bool = False


@dataclass
class PostProcessingResult:
    """Corrected text with per-token details."""
    text: str
    words: List[ProcessedWord] = field(default_factory=list)
    corrections: int = 0
    uncertain_words: List[str] = field(default_factory=list)


def load_dictionary(path: Union[str, Path]) -> List[str]:
    """Read one word per line; blank lines and '#' comments are skipped."""
    words = []
    for line in Path(path).read_text(encoding="utf-8").splitlines():
        word = line.strip()
        if word and not word.startswith("#"):
            words.append(word.lower())
    logger.info(f"Loaded {len(words)} dictionary words from {path}")
    return words


def _match_case(word: str, template: str) -> str:
    if template.isupper() and len(template) > 1:
        return word.upper()
    if template[:1].isupper():
        return word.capitalize()
    return word


class SpellChecker:
    """Case-insensitive dictionary lookup with edit-distance suggestions."""

    def __init__(self, words: Optional[Iterable[str]] = None):
        # Ordered so equally distant suggestions come back in dictionary order
        self._words = list(dict.fromkeys(w.lower() for w in (COMMON_WORDS if words is None else words)))
        self._known = set(self._words)

    def __len__(self) -> int:
        return len(self._words)

    def add_word(self, word: str):
        word = word.lower()
        if word not in self._known:
            self._known.add(word)
            self._words.append(word)

    def is_correct(self, word: str) -> bool:
        normalized = re.sub(r"[^a-z]", "", word.lower())
        if not normalized:
            return True
        return normalized in self._known

    def suggestions(self, word: str, max_suggestions: int = 5) -> List[str]:
        """Dictionary words within MAX_EDIT_DISTANCE, closest first."""
        normalized = word.lower()
        scored = []
        for candidate in self._words:
            distance = Levenshtein.distance(normalized, candidate, score_cutoff=MAX_EDIT_DISTANCE)
            if distance <= MAX_EDIT_DISTANCE:
                scored.append((distance, candidate))
        scored.sort(key=lambda item: item[0])
        return [candidate for _, candidate in scored[:max_suggestions]]


class PostProcessor:
    """Tokenizes text and corrects misspelled words."""

    def __init__(self, spell_checker: Optional[SpellChecker] = None, auto_correct: bool = True):
        self.spell_checker = spell_checker or SpellChecker()
        self.auto_correct = auto_correct

    @classmethod
    def from_dictionary(cls, path: Optional[Union[str, Path]] = None, **kwargs) -> "PostProcessor":
        """Built-in words, extended by the words in path when given."""
        checker = SpellChecker()
        if path:
            for word in load_dictionary(path):
                checker.add_word(word)
        return cls(checker, **kwargs)

    def process_word(self, word: str) -> ProcessedWord:
        if not _ALPHA_RE.fullmatch(word) or self.spell_checker.is_correct(word):
            return ProcessedWord(original=word, corrected=word, confidence=1.0)

        suggestions = self.spell_checker.suggestions(word)
        if suggestions and self.auto_correct:
            return ProcessedWord(
                original=word,
                corrected=_match_case(suggestions[0], word),
                confidence=0.8,
                was_corrected=True
            )
        return ProcessedWord(original=word, corrected=word, confidence=0.5)

    def process(self, text: str) -> PostProcessingResult:
        """
        Correct every token of text.

        Whitespace, punctuation and line breaks are kept exactly; only the
        corrected tokens change.
        """
        words = [self.process_word(match.group()) for match in _TOKEN_RE.finditer(text)]
        replacements = iter(words)
        corrected_text = _TOKEN_RE.sub(lambda match: next(replacements).corrected, text)

        return PostProcessingResult(
            text=corrected_text,
            words=words,
            corrections=sum(1 for w in words if w.was_corrected),
            uncertain_words=[w.original for w in words if w.confidence < UNCERTAIN_THRESHOLD]
        )


def apply_postprocessing(result: OCRResult, processor: PostProcessor) -> OCRResult:
    """Correct a page result in place, keeping lines and words in step with the text."""
    page = processor.process(result.text)
    result.text = page.text
    result.corrections = page.corrections
    result.uncertain_words = page.uncertain_words

    for line in result.lines:
        line.text = processor.process(line.text).text
        for word in line.words:
            word.text = processor.process(word.text).text

    if page.corrections:
        logger.info(f"Corrected {page.corrections} words ({len(page.uncertain_words)} uncertain)")
    return result
