"""Entity extraction.

Layered strategy (no heavy ML):
* Optional remote LLM first; any failure falls back to local extraction
* Dictionary terms (caller-supplied ``term -> type``), ``source="dict"``
* Regex rules per entity type, ``source="rule"``; first rule to claim a
  span wins
* Context words around each span (feeds fusion's context similarity)
* Span dedup keeping the highest-confidence entity

Custom entity types are passed to the constructor and merged over the
built-in rules; a custom type reusing a built-in name replaces its patterns.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, List, Mapping, Optional, Pattern, Sequence, Set, Tuple, Union

from .config import Config
from .llm import ChatCompletionClient, LLMOutcome
from .models import Entity
from .tokenizer import CJK_CHARS, DEFAULT_STOPWORDS

logger = logging.getLogger(__name__)

PatternLike = Union[str, Pattern[str]]

# ---------------------------------------------------------------------------
# Built-in rules
# ---------------------------------------------------------------------------

_HAN = "\u4e00-\u9fa5"

DEFAULT_ENTITY_RULES: Dict[str, List[str]] = {
    # Bare 2-4 character CJK runs: a crude person-name heuristic.
    "person": [rf"[{_HAN}]{{2,4}}"],
    "location": [rf"[{_HAN}]+[省市县区乡镇村]"],
    "organization": [rf"[{_HAN}]+(?:公司|企业|集团|大学|学院|医院)"],
    "number": [r"\d+(?:\.\d+)?"],
    "time": [
        r"\d{4}[-/年]\d{1,2}[-/月]\d{1,2}[日号]?",
        r"\d{1,2}:\d{2}(?::\d{2})?",
    ],
}

_SYSTEM_PROMPT = "你是一个实体抽取助手，只返回JSON格式的实体列表。"

_DEFAULT_PROMPT = (
    "请从下面的文本中抽取命名实体。\n"
    "返回一个JSON数组，每个元素包含字段：name（实体文本）、"
    "type（person、location、organization、number、time 或其他合适的类型）、"
    "start、end（实体在文本中的字符偏移，end 不包含）。\n"
    "只返回JSON，不要任何解释。\n\n"
    "文本：\n{text}"
)

_CONTEXT_WORD_RE = re.compile(f"[{CJK_CHARS}]|[^\\W\\d_{CJK_CHARS}]+")


def _compile(patterns: Sequence[PatternLike]) -> List[Pattern[str]]:
    return [p if isinstance(p, re.Pattern) else re.compile(p) for p in patterns]


def merge_entities(entities: Sequence[Entity]) -> List[Entity]:
    """Collapse entities sharing ``(doc_id, start, end, name)``; highest confidence wins."""
    best: Dict[tuple, Entity] = {}
    for ent in entities:
        current = best.get(ent.span_key)
        if current is None or ent.confidence > current.confidence:
            best[ent.span_key] = ent
    return list(best.values())


class EntityExtractor:
    """Identify typed spans in document text."""

    def __init__(
        self,
        llm: Optional[ChatCompletionClient] = None,
        custom_types: Optional[Mapping[str, Sequence[PatternLike]]] = None,
        dictionary: Optional[Mapping[str, str]] = None,
        rule_confidence: float = 0.7,
        dict_confidence: float = 0.8,
        llm_confidence: float = 0.9,
        context_window: int = 0,
        prompt_template: Optional[str] = None,
    ) -> None:
        self.llm = llm
        # ``{text}`` is substituted; other braces are left alone.
        self.prompt_template = prompt_template or _DEFAULT_PROMPT
        self.dictionary: Dict[str, str] = dict(dictionary or {})
        self.rule_confidence = rule_confidence
        self.dict_confidence = dict_confidence
        self.llm_confidence = llm_confidence
        self.context_window = context_window

        rules: Dict[str, List[PatternLike]] = {k: list(v) for k, v in DEFAULT_ENTITY_RULES.items()}
        for entity_type, patterns in (custom_types or {}).items():
            rules[entity_type] = list(patterns)
        self._rules: Dict[str, List[Pattern[str]]] = {
            entity_type: _compile(patterns) for entity_type, patterns in rules.items()
        }

    @classmethod
    def from_config(
        cls, cfg: Config, llm: Optional[ChatCompletionClient] = None, **kwargs
    ) -> "EntityExtractor":
        kwargs.setdefault("rule_confidence", cfg.rule_entity_confidence)
        kwargs.setdefault("dict_confidence", cfg.dict_entity_confidence)
        kwargs.setdefault("llm_confidence", cfg.llm_entity_confidence)
        kwargs.setdefault("context_window", cfg.context_window)
        return cls(llm=llm, **kwargs)

    @property
    def rules(self) -> Dict[str, List[Pattern[str]]]:
        return {k: list(v) for k, v in self._rules.items()}

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def extract(self, text: str, doc_id: str) -> List[Entity]:
        """Extract entities from *text*. Never raises for LLM trouble."""
        if not text:
            return []

        if self.llm is not None:
            outcome = await self._extract_by_llm(text, doc_id)
            if outcome.ok:
                return merge_entities(outcome.items)
            logger.warning("LLM entity extraction failed (%s), using rules", outcome.error)

        return merge_entities(self.extract_local(text, doc_id))

    # ------------------------------------------------------------------
    # Local strategies
    # ------------------------------------------------------------------

    def extract_local(self, text: str, doc_id: str) -> List[Entity]:
        """Dictionary pass then regex rules, sharing one claimed-span set."""
        claimed: Set[Tuple[int, int]] = set()
        entities = self._extract_by_dictionary(text, doc_id, claimed)
        entities.extend(self._extract_by_rules(text, doc_id, claimed))
        return entities

    def _extract_by_dictionary(
        self, text: str, doc_id: str, claimed: Set[Tuple[int, int]]
    ) -> List[Entity]:
        entities: List[Entity] = []
        # Longest terms first so "北京大学" beats "北京" on the same start.
        for term in sorted(self.dictionary, key=len, reverse=True):
            if not term:
                continue
            start = text.find(term)
            while start != -1:
                end = start + len(term)
                if (start, end) not in claimed:
                    claimed.add((start, end))
                    entities.append(
                        self._make(term, self.dictionary[term], doc_id, start, end,
                                   "dict", self.dict_confidence, text)
                    )
                start = text.find(term, start + 1)
        return entities

    def _extract_by_rules(
        self, text: str, doc_id: str, claimed: Set[Tuple[int, int]]
    ) -> List[Entity]:
        entities: List[Entity] = []
        for entity_type, patterns in self._rules.items():
            for pattern in patterns:
                for match in pattern.finditer(text):
                    start, end = match.span()
                    if start == end or (start, end) in claimed:
                        continue
                    claimed.add((start, end))
                    entities.append(
                        self._make(match.group(), entity_type, doc_id, start, end,
                                   "rule", self.rule_confidence, text)
                    )
        return entities

    # ------------------------------------------------------------------
    # LLM strategy
    # ------------------------------------------------------------------

    async def _extract_by_llm(self, text: str, doc_id: str) -> LLMOutcome:
        prompt = self.prompt_template.replace("{text}", text)
        outcome = await self.llm.complete_json_array(_SYSTEM_PROMPT, prompt)
        if not outcome.ok:
            return outcome

        entities = self._llm_items_to_entities(outcome.items, text, doc_id)
        if outcome.items and not entities:
            return LLMOutcome.failure("LLM returned no usable entities")
        return LLMOutcome.success(entities)

    def _llm_items_to_entities(
        self, items: Sequence[object], text: str, doc_id: str
    ) -> List[Entity]:
        entities: List[Entity] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            name = item.get("name")
            if not isinstance(name, str) or not name.strip():
                continue
            span = self._locate(name, item.get("start"), item.get("end"), text)
            if span is None:
                logger.debug("LLM entity %r not found in text, skipped", name)
                continue
            entity_type = item.get("type") or "unknown"
            entities.append(
                self._make(name, str(entity_type), doc_id, span[0], span[1],
                           "llm", self.llm_confidence, text)
            )
        return entities

    @staticmethod
    def _locate(name: str, start: object, end: object, text: str) -> Optional[Tuple[int, int]]:
        """Trust the model's offsets only when they point at *name*."""
        if isinstance(start, int) and isinstance(end, int) and 0 <= start < end \
                and text[start:end] == name:
            return start, end
        found = text.find(name)
        if found == -1:
            return None
        return found, found + len(name)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _make(
        self,
        name: str,
        entity_type: str,
        doc_id: str,
        start: int,
        end: int,
        source: str,
        confidence: float,
        text: str,
    ) -> Entity:
        return Entity(
            name=name,
            type=entity_type,
            doc_id=doc_id,
            start_pos=start,
            end_pos=end,
            source=source,
            confidence=confidence,
            context_words=self._context_words(text, start, end),
        )

    def _context_words(self, text: str, start: int, end: int) -> List[str]:
        if self.context_window <= 0:
            return []
        window = (
            text[max(0, start - self.context_window):start]
            + " "
            + text[end:end + self.context_window]
        )
        words: List[str] = []
        for match in _CONTEXT_WORD_RE.finditer(window):
            word = match.group().lower()
            if word not in DEFAULT_STOPWORDS and word not in words:
                words.append(word)
        return words
