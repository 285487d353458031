"""Multi-script tokenizer.

* **jieba**: HMM-assisted word segmentation for CJK text (lazy-loaded)
* Regex fallback: CJK ideographs (per character), alphabetic words, numbers
* Stopword filtering (CJK function words + common English words)
* Custom dictionary with caller-defined token types
* TF-IDF helper used by the search layer

Offsets are half-open code-point indices: ``text[t.start:t.end] == t.text``.
"""

from __future__ import annotations

import logging
import math
import re
from collections import Counter
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .models import Token

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Character classes
# ---------------------------------------------------------------------------

CJK_CHARS = "\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufaff"

_CJK_RE = re.compile(f"[{CJK_CHARS}]")
# Letters of any script except CJK ideographs; accents stay inside the word.
_ALPHA_RE = re.compile(f"[^\\W\\d_{CJK_CHARS}]+")
_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")

_NUMBER_FULL_RE = re.compile(r"^\d+(?:\.\d+)?$")
_ALPHA_FULL_RE = re.compile(f"^[^\\W\\d_{CJK_CHARS}]+$")
_CJK_FULL_RE = re.compile(f"^[{CJK_CHARS}]+$")
_PUNCT_FULL_RE = re.compile(r"^[^\w\s]+$")

# ---------------------------------------------------------------------------
# Stopwords
# ---------------------------------------------------------------------------

DEFAULT_STOPWORDS: frozenset[str] = frozenset({
    "的", "了", "和", "是", "在", "我", "有", "个", "这", "那", "而", "与",
    "或", "但", "就", "都", "要", "也", "很", "更", "不", "吧", "啊", "呢",
    "the", "a", "an", "is", "are", "was", "were", "be", "been", "of",
    "to", "in", "for", "on", "with", "at", "by", "from", "and", "or",
    "it", "this", "that",
})

# ---------------------------------------------------------------------------
# Lazy-loaded segmenter
# ---------------------------------------------------------------------------

_jieba_module = None


def _get_jieba():
    """Lazy-load the jieba module."""
    global _jieba_module
    if _jieba_module is None:
        try:
            import jieba
            jieba.setLogLevel(logging.WARNING)
            _jieba_module = jieba
            logger.info("jieba segmenter available")
        except ImportError:
            logger.warning("jieba not installed, CJK text uses the fallback tokenizer")
    return _jieba_module


def contains_cjk(text: str) -> bool:
    return bool(_CJK_RE.search(text))


def _normalize(text: str) -> str:
    return text.strip().lower()


CustomDict = Union[Mapping[str, str], Iterable[Tuple[str, str]]]


class Tokenizer:
    """Split text into position-tagged tokens.

    Stopwords and the custom dictionary are instance state; changes apply to
    subsequent ``tokenize`` calls only.
    """

    def __init__(
        self,
        stopwords: Optional[Iterable[str]] = None,
        custom_dict: Optional[CustomDict] = None,
        use_segmenter: bool = True,
    ) -> None:
        self.stopwords: set[str] = {
            _normalize(w) for w in (DEFAULT_STOPWORDS if stopwords is None else stopwords)
        }
        self.custom_dict: Dict[str, str] = {}
        self.use_segmenter = use_segmenter
        self._engine = None
        self._engine_failed = False
        if custom_dict:
            self.add_custom_dict(custom_dict)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def add_custom_dict(self, words: CustomDict) -> None:
        """Register ``word -> type`` entries (mapping or iterable of pairs)."""
        entries = dict(words.items() if isinstance(words, Mapping) else words)
        self.custom_dict.update(entries)
        if self._engine is not None:
            for word in entries:
                self._engine.add_word(word)

    def add_stopwords(self, words: Iterable[str]) -> None:
        self.stopwords.update(_normalize(w) for w in words)

    def remove_stopwords(self, words: Iterable[str]) -> None:
        self.stopwords.difference_update(_normalize(w) for w in words)

    def is_stopword(self, text: str) -> bool:
        return _normalize(text) in self.stopwords

    # ------------------------------------------------------------------
    # Segmentation engine
    # ------------------------------------------------------------------

    def _get_engine(self):
        """Return a private jieba tokenizer, or None when unavailable."""
        if not self.use_segmenter or self._engine_failed:
            return None
        if self._engine is None:
            jieba = _get_jieba()
            if jieba is None:
                self._engine_failed = True
                return None
            engine = jieba.Tokenizer()
            for word in self.custom_dict:
                engine.add_word(word)
            self._engine = engine
        return self._engine

    # ------------------------------------------------------------------
    # Tokenization
    # ------------------------------------------------------------------

    def tokenize(self, text: str) -> List[Token]:
        """Tokenize *text*. Empty or non-string input yields ``[]``."""
        if not isinstance(text, str) or not text:
            return []

        if contains_cjk(text):
            engine = self._get_engine()
            if engine is not None:
                try:
                    return self._segment(engine, text)
                except Exception as exc:
                    logger.warning("Segmenter failed (%s), using fallback tokenizer", exc)

        return self._fallback(text)

    def _segment(self, engine, text: str) -> List[Token]:
        tokens: List[Token] = []
        cursor = 0
        for word in engine.cut(text, HMM=True):
            if not word.strip():
                continue
            start = text.find(word, cursor)
            if start == -1:
                continue
            end = start + len(word)
            cursor = end
            if self.is_stopword(word):
                continue
            tokens.append(Token(word, start, end, self.custom_dict.get(word, "unknown")))
        return tokens

    def _fallback(self, text: str) -> List[Token]:
        tokens: List[Token] = []
        for pattern in (_CJK_RE, _ALPHA_RE, _NUMBER_RE):
            for match in pattern.finditer(text):
                word = match.group()
                if self.is_stopword(word):
                    continue
                tokens.append(
                    Token(word, match.start(), match.end(), self.classify(word))
                )
        tokens.sort(key=lambda t: t.start)
        return tokens

    def classify(self, word: str) -> str:
        """Token type: custom dictionary first, then script heuristics."""
        if word in self.custom_dict:
            return self.custom_dict[word]
        if _NUMBER_FULL_RE.match(word):
            return "number"
        if _ALPHA_FULL_RE.match(word):
            return "english"
        if _CJK_FULL_RE.match(word):
            return "chinese"
        if _PUNCT_FULL_RE.match(word):
            return "punctuation"
        return "mixed"

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    @staticmethod
    def get_word_frequency(tokens: Sequence[Token]) -> Dict[str, int]:
        """Count occurrences by exact token text."""
        return dict(Counter(t.text for t in tokens))

    @staticmethod
    def calculate_tfidf(token: Token, doc_frequency: int, total_docs: int) -> float:
        """``weight * (ln(total_docs / (doc_frequency + 1)) + 1)``."""
        if not token.text or total_docs <= 0:
            return 0.0
        weight = token.weight if token.weight is not None else 1.0
        return weight * (math.log(total_docs / (doc_frequency + 1)) + 1)
