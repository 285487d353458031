"""Tests for relationship extraction."""

import re

import pytest

from conftest import FakeLLM, make_entity
from doc_graph.models import Relationship
from doc_graph.relations import RelationExtractor, merge_relationships, split_sentences

SCENARIO_TEXT = "北京是中国的首都，上海是中国的经济中心。"


def _with_ids(*names_and_starts, doc_id="d1", entity_type="location"):
    ents = []
    for i, (name, start) in enumerate(names_and_starts, start=1):
        ent = make_entity(name, doc_id=doc_id, start=start, entity_type=entity_type)
        ent.id = i
        ents.append(ent)
    return ents


class TestCooccurrence:
    def test_scenario_pairs(self, relation_extractor):
        ents = _with_ids(("北京", 0), ("中国", 3), ("上海", 9), ("中国", 12))
        rels = relation_extractor.extract_cooccurrence(ents, SCENARIO_TEXT, "d1")
        pairs = {(r.source_entity_id, r.target_entity_id) for r in rels}
        # the whole text is one clause, so every distinct pair co-occurs
        assert pairs == {(1, 2), (1, 3), (1, 4), (2, 3), (2, 4), (3, 4)}
        assert all(r.type == "cooccur" and r.confidence == 0.5 for r in rels)

    def test_sentence_boundary(self, relation_extractor):
        text = "Alice met Bob. Carol stayed home."
        ents = _with_ids(("Alice", 0), ("Bob", 10), ("Carol", 15), entity_type="person")
        rels = relation_extractor.extract_cooccurrence(ents, text, "d1")
        assert [(r.source_entity_id, r.target_entity_id) for r in rels] == [(1, 2)]
        assert rels[0].evidence_text == "Alice met Bob"

    def test_entities_without_ids_ignored(self, relation_extractor):
        ents = _with_ids(("北京", 0), ("中国", 3))
        ents[1].id = None
        assert relation_extractor.extract_cooccurrence(ents, SCENARIO_TEXT, "d1") == []

    def test_split_sentences(self):
        assert split_sentences("一。二；three! four? v1.2 ok") == ["一", "二", "three", "four", "v1.2 ok"]


class TestRules:
    def test_belong_to(self, relation_extractor):
        text = "海淀区属于北京"
        ents = _with_ids(("海淀区", 0), ("北京", 5))
        rels = relation_extractor.extract_by_rules(ents, text, "d1")
        belong = [r for r in rels if r.type == "belong_to"]
        assert [(r.source_entity_id, r.target_entity_id) for r in belong] == [(1, 2)]
        assert belong[0].source == "rule"
        assert belong[0].confidence == 0.8
        assert belong[0].evidence_text == "海淀区属于北京"

    def test_unknown_surface_text_ignored(self, relation_extractor):
        ents = _with_ids(("北京", 0))
        assert relation_extractor.extract_by_rules(ents, "上海属于中国", "d1") == []

    def test_custom_pattern(self):
        extractor = RelationExtractor(custom_patterns={"founded": [r"(\w+) founded (\w+)"]})
        ents = _with_ids(("Jobs", 0), ("Apple", 12), entity_type="x")
        rels = extractor.extract_by_rules(ents, "Jobs founded Apple", "d1")
        assert [(r.type, r.source_entity_id, r.target_entity_id) for r in rels] == [
            ("founded", 1, 2)]

    def test_pattern_needs_two_groups(self):
        with pytest.raises(ValueError):
            RelationExtractor(custom_patterns={"bad": [re.compile(r"(\w+)")]})


class TestExtract:
    async def test_fewer_than_two_entities(self, relation_extractor):
        assert await relation_extractor.extract(_with_ids(("北京", 0)), SCENARIO_TEXT, "d1") == []

    async def test_merge_keeps_highest(self, relation_extractor):
        text = "北京属于中国"
        ents = _with_ids(("北京", 0), ("中国", 4))
        rels = await relation_extractor.extract(ents, text, "d1")
        types = sorted(r.type for r in rels)
        assert types == ["belong_to", "cooccur"]

    async def test_llm_relations_added(self):
        llm = FakeLLM([
            {"sourceEntityId": 1, "targetEntityId": 3, "type": "capital_of", "evidenceText": "首都"},
            {"sourceEntityId": "2", "targetEntityId": 99, "type": "ghost"},
            {"sourceEntityId": 2},
        ])
        extractor = RelationExtractor(llm=llm)
        ents = _with_ids(("北京", 0), ("上海", 9), ("中国", 3))
        rels = await extractor.extract(ents, SCENARIO_TEXT, "d1")
        llm_rels = [r for r in rels if r.source == "llm"]
        assert [(r.source_entity_id, r.target_entity_id, r.type) for r in llm_rels] == [
            (1, 3, "capital_of")]
        assert llm_rels[0].confidence == 0.9
        assert "北京(1)" in llm.calls[0][1]

    async def test_llm_failure_keeps_local(self, caplog):
        extractor = RelationExtractor(llm=FakeLLM("timeout"))
        ents = _with_ids(("北京", 0), ("中国", 3))
        rels = await extractor.extract(ents, SCENARIO_TEXT, "d1")
        assert rels and all(r.source != "llm" for r in rels)
        assert "LLM relation extraction failed" in caplog.text


class TestMergeRelationships:
    def test_dedup_by_key(self):
        a = Relationship(1, 2, "x", "d1", 0.5, "cooccur")
        b = Relationship(1, 2, "x", "d1", 0.9, "llm")
        c = Relationship(2, 1, "x", "d1", 0.5, "cooccur")
        merged = merge_relationships([a, b, c])
        assert merged == [b, c]
