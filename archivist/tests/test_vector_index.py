"""Tests for the in-memory vector index and the per-session router."""

import pytest

from archivist.common.filters import parse_filters
from archivist.common.vector_index import DimensionMismatch, InMemoryVectorIndex, SessionIndexRouter


class TestInMemoryVectorIndex:
    def test_upsert_and_search(self):
        index = InMemoryVectorIndex("s1")
        index.upsert("a", [1.0, 0.0, 0.0], {"track": "treasury"})
        index.upsert("b", [0.0, 1.0, 0.0], {"track": "voting"})
        index.upsert("c", [0.7, 0.7, 0.0], {"track": "treasury"})

        matches = index.search([1.0, 0.0, 0.0], topk=2)

        assert [m.chunk_id for m in matches] == ["a", "c"]
        assert matches[0].score == pytest.approx(1.0)
        assert all(0.0 <= m.score <= 1.0 for m in matches)
        assert matches[0].session_id == "s1"

    def test_upsert_replaces_existing_id(self):
        index = InMemoryVectorIndex()
        index.upsert("a", [1.0, 0.0], {"v": 1})
        index.upsert("a", [0.0, 1.0], {"v": 2})
        assert len(index) == 1
        assert index.get("a").metadata == {"v": 2}

    def test_dimension_mismatch_leaves_index_untouched(self):
        index = InMemoryVectorIndex()
        index.upsert("a", [1.0, 0.0])
        with pytest.raises(DimensionMismatch):
            index.upsert_many([("b", [1.0, 0.0], {}), ("c", [1.0, 0.0, 0.0], {})])
        assert index.ids() == ["a"]

    def test_delete(self):
        index = InMemoryVectorIndex()
        index.upsert_many([("a", [1.0, 0.0], {}), ("b", [0.0, 1.0], {})])
        assert index.delete("a") is True
        assert index.delete("a") is False
        assert "a" not in index
        assert [m.chunk_id for m in index.search([1.0, 0.0], topk=5)] == ["b"]

    def test_filters_applied_before_ranking(self):
        index = InMemoryVectorIndex()
        index.upsert("a", [1.0, 0.0], {"track": "voting"})
        index.upsert("b", [0.5, 0.5], {"track": "treasury"})
        matches = index.search([1.0, 0.0], topk=5, filters=parse_filters({"track": "treasury"}))
        assert [m.chunk_id for m in matches] == ["b"]

    def test_negative_similarity_clipped(self):
        index = InMemoryVectorIndex()
        index.upsert("a", [-1.0, 0.0])
        assert index.search([1.0, 0.0], topk=1)[0].score == 0.0

    def test_euclidean_metric(self):
        index = InMemoryVectorIndex(metric="euclidean")
        index.upsert("near", [1.0, 0.0])
        index.upsert("far", [5.0, 0.0])
        matches = index.search([1.0, 0.0], topk=2)
        assert matches[0].chunk_id == "near"
        assert matches[0].score == pytest.approx(1.0)
        assert matches[1].score == pytest.approx(0.2)

    def test_empty_index_search(self):
        assert InMemoryVectorIndex().search([1.0], topk=3) == []


class TestSessionIndexRouter:
    def test_indexes_created_lazily_per_session(self):
        router = SessionIndexRouter()
        assert router.sessions() == []
        router.upsert_many("s2", [("x", [1.0, 0.0], {})])
        router.upsert_many("s1", [("y", [0.0, 1.0], {})])
        assert router.sessions() == ["s1", "s2"]
        assert router.size() == 2
        assert router.get("s1", "x") is None
        assert router.get("s2", "x") is not None

    def test_cross_session_search_merges_by_score(self):
        router = SessionIndexRouter()
        router.upsert_many("s1", [("a", [1.0, 0.0], {}), ("b", [0.0, 1.0], {})])
        router.upsert_many("s2", [("c", [0.9, 0.1], {})])

        matches = router.search([1.0, 0.0], topk=2)

        assert [(m.chunk_id, m.session_id) for m in matches] == [("a", "s1"), ("c", "s2")]

    def test_search_limited_to_sessions(self):
        router = SessionIndexRouter()
        router.upsert_many("s1", [("a", [1.0, 0.0], {})])
        router.upsert_many("s2", [("c", [1.0, 0.0], {})])
        matches = router.search([1.0, 0.0], topk=5, session_ids=["s2", "unknown"])
        assert [m.chunk_id for m in matches] == ["c"]

    def test_delete_in_unknown_session(self):
        assert SessionIndexRouter().delete_many("nope", ["a"]) == 0
