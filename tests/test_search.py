"""Tests for the query layer: TF-IDF, entities, graph traversal, filters."""

import math

import pytest

from conftest import FakeEmbedder, make_entity, seed_graph
from doc_graph.graph import GraphService
from doc_graph.models import AdvancedQuery, Document, SearchOptions, SearchResult
from doc_graph.search import SearchAPI, sort_and_paginate
from doc_graph.vectors import VectorSearchUnavailable


@pytest.fixture
def search(storage, tokenizer):
    return SearchAPI(storage, tokenizer=tokenizer)


def _index(storage, tokenizer, doc_id, content, **fields):
    storage.save_document(Document(title=fields.pop("title", doc_id), content=content,
                                   doc_id=doc_id, **fields))
    storage.build_inverted_index(doc_id, tokenizer.tokenize(content))


class FakeVectorIndex:
    def __init__(self, hits):
        self.hits = hits

    def search(self, vector, limit=10):
        return self.hits[:limit]


# ---------------------------------------------------------------------------
# Document search
# ---------------------------------------------------------------------------

class TestDocumentSearch:
    def test_tfidf_ranking(self, storage, tokenizer, search):
        _index(storage, tokenizer, "d1", "apple banana apple")
        _index(storage, tokenizer, "d2", "apple cherry")
        _index(storage, tokenizer, "d3", "cherry date")

        results = search.search_documents("apple")
        assert [r.item.doc_id for r in results] == ["d1", "d2"]
        assert results[0].score == pytest.approx(2 / 3 * math.log(3 / 2))
        assert results[1].score == pytest.approx(1 / 2 * math.log(3 / 2))
        assert results[0].highlights == ["apple"]
        assert results[0].match_positions == [0, 13]

    def test_scores_sum_over_terms(self, storage, tokenizer, search):
        _index(storage, tokenizer, "d1", "apple banana")
        _index(storage, tokenizer, "d2", "cherry date")
        results = search.search_documents("Apple BANANA apple")
        assert len(results) == 1
        assert results[0].score == pytest.approx(2 * (1 / 2) * math.log(2))
        assert results[0].highlights == ["apple", "banana"]

    def test_no_match(self, storage, tokenizer, search):
        _index(storage, tokenizer, "d1", "apple")
        assert search.search_documents("zebra") == []
        assert search.search_documents("") == []

    def test_fuzzy_terms(self, storage, tokenizer, search):
        _index(storage, tokenizer, "d1", "pineapple juice")
        _index(storage, tokenizer, "d2", "water")
        assert search.search_documents("apple") == []
        results = search.search_documents("apple", SearchOptions(fuzzy=True))
        assert [r.item.doc_id for r in results] == ["d1"]
        assert results[0].highlights == ["pineapple"]

    def test_pagination(self, storage, tokenizer, search):
        for i, content in enumerate(["kiwi kiwi kiwi", "kiwi kiwi x", "kiwi x y", "other"]):
            _index(storage, tokenizer, f"d{i}", content)
        page = search.search_documents("kiwi", SearchOptions(limit=1, offset=1))
        assert [r.item.doc_id for r in page] == ["d1"]

    def test_sort_by_title(self, storage, tokenizer, search):
        _index(storage, tokenizer, "d1", "kiwi kiwi", title="beta")
        _index(storage, tokenizer, "d2", "kiwi x", title="Alpha")
        _index(storage, tokenizer, "d3", "other", title="gamma")
        results = search.search_documents("kiwi", SearchOptions(sort_by="title"))
        assert [r.item.title for r in results] == ["Alpha", "beta"]

    def test_unknown_sort_key(self, search):
        with pytest.raises(ValueError):
            search.search_documents("kiwi", SearchOptions(sort_by="popularity"))


class TestSortAndPaginate:
    def _results(self):
        return [
            SearchResult(item=Document("b", "", doc_id="1", created_at=10.0, updated_at=50.0), score=0.2),
            SearchResult(item=Document("a", "", doc_id="2", created_at=30.0, updated_at=40.0), score=0.9),
            SearchResult(item=Document("c", "", doc_id="3", created_at=20.0, updated_at=60.0), score=0.5),
        ]

    @pytest.mark.parametrize("sort_by,expected", [
        ("relevance", ["2", "3", "1"]),
        ("score", ["2", "3", "1"]),
        ("createdAt", ["2", "3", "1"]),
        ("updated_at", ["3", "1", "2"]),
        ("title", ["2", "1", "3"]),
    ])
    def test_orders(self, sort_by, expected):
        ordered = sort_and_paginate(self._results(), SearchOptions(sort_by=sort_by))
        assert [r.item.doc_id for r in ordered] == expected

    def test_offset_past_end(self):
        assert sort_and_paginate(self._results(), SearchOptions(offset=5)) == []


# ---------------------------------------------------------------------------
# Entity & relationship search
# ---------------------------------------------------------------------------

class TestEntitySearch:
    @pytest.fixture
    def seeded(self, storage):
        storage.save_document(Document("cities", "...", doc_id="c1"))
        storage.save_entities([
            make_entity("Beijing", doc_id="c1", entity_type="location"),
            make_entity("Beijing University", doc_id="c1", start=20, entity_type="organization"),
            make_entity("Shanghai", doc_id="c1", start=50, entity_type="location"),
        ])
        return {e.name: e for e in storage.get_entities()}

    def test_scores(self, search, seeded):
        results = search.search_entities("beijing")
        assert [r.item.name for r in results] == ["Beijing", "Beijing University"]
        assert results[0].score == 1.0
        assert results[1].score == pytest.approx(7 / 18)
        assert results[1].highlights == ["Beijing University"]
        assert results[1].match_positions == [20]

    def test_type_filter(self, search, seeded):
        results = search.search_entities("beijing", SearchOptions(entity_types=["organization"]))
        assert [r.item.name for r in results] == ["Beijing University"]

    def test_alias_match(self, storage, search, seeded):
        storage.add_entity_alias(seeded["Beijing"].id, "Peking")
        results = search.search_entities("peking")
        assert [r.item.name for r in results] == ["Beijing"]
        assert results[0].score == 1.0

    def test_blank_query(self, search, seeded):
        assert search.search_entities("   ") == []

    def test_relationship_filters(self, storage, search):
        ids = seed_graph(storage, [("A", "B", "knows"), ("A", "C", "likes"), ("B", "C", "knows")])
        assert len(search.search_relationships(source_id=ids["A"])) == 2
        knows = search.search_relationships(relation_type="knows")
        assert [(r.source_entity_id, r.target_entity_id) for r in knows] == [
            (ids["A"], ids["B"]), (ids["B"], ids["C"])]
        assert len(search.search_relationships(limit=1, offset=2)) == 1


# ---------------------------------------------------------------------------
# Graph traversal
# ---------------------------------------------------------------------------

class TestEntityGraph:
    def test_depth_zero_is_root_only(self, storage, search):
        ids = seed_graph(storage, [("A", "B", "knows"), ("B", "C", "knows")])
        graph = search.get_entity_graph(ids["A"], depth=0)
        assert [n.id for n in graph.nodes] == [ids["A"]]
        assert graph.edges == []

    def test_depth_bounds_nodes(self, storage, search):
        ids = seed_graph(storage, [("A", "B", "knows"), ("B", "C", "knows"), ("C", "D", "knows")])
        graph = search.get_entity_graph(ids["A"], depth=2)
        assert {n.name for n in graph.nodes} == {"A", "B", "C"}
        assert len(graph.edges) == 2

    def test_cycle_terminates(self, storage, search):
        ids = seed_graph(storage, [("A", "B", "x"), ("B", "C", "x"), ("C", "A", "x")])
        graph = search.get_entity_graph(ids["A"], depth=10)
        assert {n.name for n in graph.nodes} == {"A", "B", "C"}
        assert len(graph.edges) == 3

    def test_reverse_edges_optional(self, storage, search):
        ids = seed_graph(storage, [("A", "B", "knows"), ("C", "A", "likes")])
        both = search.get_entity_graph(ids["A"], depth=1)
        assert {n.name for n in both.nodes} == {"A", "B", "C"}
        forward = search.get_entity_graph(ids["A"], depth=1, include_reverse=False)
        assert {n.name for n in forward.nodes} == {"A", "B"}
        assert [e.type for e in forward.edges] == ["knows"]

    def test_missing_root(self, search):
        graph = search.get_entity_graph(424242)
        assert graph.nodes == [] and graph.edges == []


class TestEntityPath:
    def test_shortest_path(self, storage, search):
        ids = seed_graph(storage, [("A", "B", "x"), ("B", "C", "x"), ("A", "C", "direct")])
        path = search.find_entity_path(ids["A"], ids["C"])
        assert [r.type for r in path] == ["direct"]

    def test_reverse_hop_type(self, storage, search):
        ids = seed_graph(storage, [("A", "B", "knows"), ("C", "B", "likes")])
        path = search.find_entity_path(ids["A"], ids["C"])
        assert [r.type for r in path] == ["knows", "likes_reverse"]
        assert (path[1].source_entity_id, path[1].target_entity_id) == (ids["C"], ids["B"])
        # the stored relationship keeps its type
        assert storage.get_relationships(source_entity_id=ids["C"])[0].type == "likes"

    def test_max_depth(self, storage, search):
        ids = seed_graph(storage, [("A", "B", "x"), ("B", "C", "x"), ("C", "D", "x")])
        assert len(search.find_entity_path(ids["A"], ids["D"], max_depth=3)) == 3
        assert search.find_entity_path(ids["A"], ids["D"], max_depth=2) == []

    def test_same_or_disconnected(self, storage, search):
        ids = seed_graph(storage, [("A", "B", "x"), ("C", "D", "x")])
        assert search.find_entity_path(ids["A"], ids["A"]) == []
        assert search.find_entity_path(ids["A"], ids["D"]) == []


# ---------------------------------------------------------------------------
# Advanced search
# ---------------------------------------------------------------------------

class TestAdvancedSearch:
    @pytest.fixture
    def docs(self, storage, tokenizer):
        _index(storage, tokenizer, "d1", "river report", created_at=100.0, tags=["news"])
        _index(storage, tokenizer, "d2", "river essay", created_at=200.0, tags=["blog"])
        _index(storage, tokenizer, "d3", "mountain report", created_at=300.0,
               tags=["news", "travel"])
        storage.save_entities([make_entity("Yangtze", doc_id="d2", entity_type="location")])

    def test_date_range_inclusive(self, search, docs):
        results = search.advanced_search(AdvancedQuery(date_from=200.0, date_to=300.0))
        assert sorted(r.item.doc_id for r in results) == ["d2", "d3"]

    def test_tags_any(self, search, docs):
        results = search.advanced_search(AdvancedQuery(tags=["travel", "blog"]))
        assert sorted(r.item.doc_id for r in results) == ["d2", "d3"]

    def test_text_and_tags(self, search, docs):
        results = search.advanced_search(AdvancedQuery(text="report", tags=["news"],
                                                       date_from=150.0))
        assert [r.item.doc_id for r in results] == ["d3"]

    def test_entity_types(self, search, docs):
        results = search.advanced_search(AdvancedQuery(text="river", entity_types=["location"]))
        assert [r.item.doc_id for r in results] == ["d2"]

    def test_entity_types_from_options(self, search, docs):
        results = search.advanced_search(AdvancedQuery(), SearchOptions(entity_types=["location"]))
        assert [r.item.doc_id for r in results] == ["d2"]


# ---------------------------------------------------------------------------
# Vector similarity
# ---------------------------------------------------------------------------

class TestSimilarEntities:
    async def test_unavailable(self, search):
        assert not search.vector_search_available
        with pytest.raises(VectorSearchUnavailable):
            await search.search_similar_entities("Beijing")

    async def test_skips_merged_and_missing(self, storage, tokenizer):
        ids = seed_graph(storage, [("A", "B", "x")])
        merged = storage.get_entity(ids["B"])
        merged.merged_into = ids["A"]
        storage.update_entity(merged)

        index = FakeVectorIndex([(ids["A"], 0.9), (ids["B"], 0.8), (999, 0.7)])
        search = SearchAPI(storage, tokenizer, vector_index=index, embedder=FakeEmbedder())
        results = await search.search_similar_entities("A", limit=5)
        assert [(r.item.name, r.score) for r in results] == [("A", 0.9)]


# ---------------------------------------------------------------------------
# Graph views
# ---------------------------------------------------------------------------

class TestGraphService:
    def test_graph_from_search(self, storage, search):
        seed_graph(storage, [("Alice", "Bob", "knows"), ("Bob", "Carol", "knows")])
        graph = GraphService(storage, search).graph_from_search("alice", depth=1)
        assert {n.name for n in graph.nodes} == {"Alice", "Bob"}

    def test_graph_from_search_no_hit(self, storage, search):
        seed_graph(storage, [("Alice", "Bob", "knows")])
        graph = GraphService(storage, search).graph_from_search("nobody")
        assert graph.nodes == []

    def test_full_graph_excludes_merged(self, storage, search):
        ids = seed_graph(storage, [("A", "B", "x"), ("B", "C", "y")])
        b = storage.get_entity(ids["B"])
        b.merged_into = ids["A"]
        storage.update_entity(b)
        graph = GraphService(storage, search).full_graph()
        assert {n.name for n in graph.nodes} == {"A", "C"}
        assert len(graph.edges) == 2
