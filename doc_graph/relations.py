"""Relationship extraction between already-persisted entities.

Three independent passes, concatenated then merged:

1. Pattern rules: regex templates whose two capture groups name the source
   and target surface text (``source="rule"``)
2. Sentence co-occurrence: every pair of entities named in the same
   sentence (``type="cooccur"``)
3. Optional remote LLM, fail-silent (``source="llm"``)

Only entities carrying a storage id take part; the merge keeps the highest
confidence per ``(source, target, type)``.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from typing import Dict, List, Mapping, Optional, Pattern, Sequence, Union

from .config import Config
from .llm import ChatCompletionClient, LLMOutcome
from .models import Entity, Relationship

logger = logging.getLogger(__name__)

PatternLike = Union[str, Pattern[str]]

# ---------------------------------------------------------------------------
# Built-in patterns
# ---------------------------------------------------------------------------

_NAME = r"([^，。；\s]+)"

DEFAULT_RELATION_PATTERNS: Dict[str, List[str]] = {
    "associate": [rf"{_NAME}与{_NAME}相关", rf"{_NAME}和{_NAME}有关"],
    "belong_to": [rf"{_NAME}属于{_NAME}", rf"{_NAME}是{_NAME}的一部分"],
    "contain": [rf"{_NAME}包含{_NAME}", rf"{_NAME}包括{_NAME}"],
    "describe": [rf"{_NAME}是{_NAME}", rf"{_NAME}被描述为{_NAME}"],
    "reference": [rf"{_NAME}引用了{_NAME}", rf"{_NAME}参考了{_NAME}"],
}

_SENTENCE_SPLIT_RE = re.compile(r"[。；！？!?;\n]+|\.(?=\s|$)")

_SYSTEM_PROMPT = "你是一个关系抽取助手，只返回JSON格式的关系列表。"

_DEFAULT_PROMPT = (
    "请根据下面的文本和实体列表，抽取实体之间的关系。\n"
    "实体列表（名称(ID)）：{entities}\n\n"
    "返回一个JSON数组，每个元素包含字段：sourceEntityId、targetEntityId、"
    "type（关系类型）、evidenceText（支持该关系的原文）。\n"
    "只返回JSON，不要任何解释。\n\n"
    "文本：\n{text}"
)


def merge_relationships(relationships: Sequence[Relationship]) -> List[Relationship]:
    """Keep one relationship per ``(source, target, type)``, highest confidence first-seen."""
    best: Dict[tuple, Relationship] = {}
    for rel in relationships:
        current = best.get(rel.key)
        if current is None or rel.confidence > current.confidence:
            best[rel.key] = rel
    return list(best.values())


def split_sentences(text: str) -> List[str]:
    return [s.strip() for s in _SENTENCE_SPLIT_RE.split(text) if s and s.strip()]


class RelationExtractor:
    """Derive typed links between entities of one document."""

    def __init__(
        self,
        llm: Optional[ChatCompletionClient] = None,
        custom_patterns: Optional[Mapping[str, Sequence[PatternLike]]] = None,
        rule_confidence: float = 0.8,
        cooccur_confidence: float = 0.5,
        llm_confidence: float = 0.9,
        prompt_template: Optional[str] = None,
    ) -> None:
        self.llm = llm
        # ``{entities}`` and ``{text}`` are substituted.
        self.prompt_template = prompt_template or _DEFAULT_PROMPT
        self.rule_confidence = rule_confidence
        self.cooccur_confidence = cooccur_confidence
        self.llm_confidence = llm_confidence

        merged: Dict[str, List[PatternLike]] = {
            k: list(v) for k, v in DEFAULT_RELATION_PATTERNS.items()
        }
        for rel_type, patterns in (custom_patterns or {}).items():
            merged[rel_type] = list(patterns)

        self._patterns: Dict[str, List[Pattern[str]]] = {}
        for rel_type, patterns in merged.items():
            compiled = [p if isinstance(p, re.Pattern) else re.compile(p) for p in patterns]
            for pattern in compiled:
                if pattern.groups != 2:
                    raise ValueError(
                        f"relation pattern for {rel_type!r} needs exactly 2 groups: {pattern.pattern}"
                    )
            self._patterns[rel_type] = compiled

    @classmethod
    def from_config(
        cls, cfg: Config, llm: Optional[ChatCompletionClient] = None, **kwargs
    ) -> "RelationExtractor":
        kwargs.setdefault("rule_confidence", cfg.rule_relation_confidence)
        kwargs.setdefault("cooccur_confidence", cfg.cooccur_confidence)
        kwargs.setdefault("llm_confidence", cfg.llm_relation_confidence)
        return cls(llm=llm, **kwargs)

    @property
    def patterns(self) -> Dict[str, List[Pattern[str]]]:
        return {k: list(v) for k, v in self._patterns.items()}

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def extract(
        self, entities: Sequence[Entity], text: str, doc_id: str
    ) -> List[Relationship]:
        known = [e for e in entities if e.id is not None]
        if len(known) < 2 or not text:
            return []

        relationships = self.extract_by_rules(known, text, doc_id)
        relationships.extend(self.extract_cooccurrence(known, text, doc_id))

        if self.llm is not None:
            outcome = await self._extract_by_llm(known, text, doc_id)
            if outcome.ok:
                relationships.extend(outcome.items)
            else:
                logger.warning("LLM relation extraction failed: %s", outcome.error)

        return merge_relationships(relationships)

    # ------------------------------------------------------------------
    # Pattern rules
    # ------------------------------------------------------------------

    def extract_by_rules(
        self, entities: Sequence[Entity], text: str, doc_id: str
    ) -> List[Relationship]:
        by_name: Dict[str, List[Entity]] = defaultdict(list)
        for ent in entities:
            if ent.id is not None and ent.doc_id == doc_id:
                by_name[ent.name].append(ent)

        relationships: List[Relationship] = []
        for rel_type, patterns in self._patterns.items():
            for pattern in patterns:
                for match in pattern.finditer(text):
                    sources = by_name.get(match.group(1).strip(), [])
                    targets = by_name.get(match.group(2).strip(), [])
                    for src in sources:
                        for tgt in targets:
                            relationships.append(
                                Relationship(
                                    source_entity_id=src.id,
                                    target_entity_id=tgt.id,
                                    type=rel_type,
                                    doc_id=doc_id,
                                    confidence=self.rule_confidence,
                                    source="rule",
                                    evidence_text=match.group(0),
                                )
                            )
        return relationships

    # ------------------------------------------------------------------
    # Co-occurrence
    # ------------------------------------------------------------------

    def extract_cooccurrence(
        self, entities: Sequence[Entity], text: str, doc_id: str
    ) -> List[Relationship]:
        candidates = [e for e in entities if e.id is not None and e.doc_id == doc_id]
        relationships: List[Relationship] = []
        for sentence in split_sentences(text):
            present = [e for e in candidates if e.name and e.name in sentence]
            for i in range(len(present)):
                for j in range(i + 1, len(present)):
                    if present[i].id == present[j].id:
                        continue
                    relationships.append(
                        Relationship(
                            source_entity_id=present[i].id,
                            target_entity_id=present[j].id,
                            type="cooccur",
                            doc_id=doc_id,
                            confidence=self.cooccur_confidence,
                            source="cooccur",
                            evidence_text=sentence,
                        )
                    )
        return relationships

    # ------------------------------------------------------------------
    # LLM
    # ------------------------------------------------------------------

    async def _extract_by_llm(
        self, entities: Sequence[Entity], text: str, doc_id: str
    ) -> LLMOutcome:
        listing = ", ".join(f"{e.name}({e.id})" for e in entities)
        prompt = self.prompt_template.replace("{entities}", listing).replace("{text}", text)
        outcome = await self.llm.complete_json_array(_SYSTEM_PROMPT, prompt)
        if not outcome.ok:
            return outcome

        valid_ids = {e.id for e in entities}
        relationships: List[Relationship] = []
        for item in outcome.items:
            if not isinstance(item, dict):
                continue
            try:
                source_id = int(item["sourceEntityId"])
                target_id = int(item["targetEntityId"])
            except (KeyError, TypeError, ValueError):
                continue
            if source_id not in valid_ids or target_id not in valid_ids:
                logger.debug("LLM relation references unknown ids %s -> %s", source_id, target_id)
                continue
            relationships.append(
                Relationship(
                    source_entity_id=source_id,
                    target_entity_id=target_id,
                    type=str(item.get("type") or "related"),
                    doc_id=doc_id,
                    confidence=self.llm_confidence,
                    source="llm",
                    evidence_text=str(item.get("evidenceText") or ""),
                )
            )
        return LLMOutcome.success(relationships)
