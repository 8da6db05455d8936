import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from qdrant_client.http.exceptions import UnexpectedResponse

from pipeline.errors import NotFound, SearchFailed
from pipeline.indexer import SimilarityIndex
from pipeline.types import StoredFace, make_pagination

from conftest import make_point

"""
Similarity Index Tests

Bounded-fetch pagination, stored-id search and failure mapping against a
mocked AsyncQdrantClient.
"""


def make_index(points=None, records=None, max_fetch=500):
    client = MagicMock()
    client.query_points = AsyncMock(return_value=SimpleNamespace(points=points or []))
    client.retrieve = AsyncMock(return_value=records or [])
    client.upsert = AsyncMock()
    client.collection_exists = AsyncMock(return_value=True)
    client.create_collection = AsyncMock()
    return SimilarityIndex(client, "faces", max_fetch=max_fetch)


def ranked_points(n, top=0.99, step=0.005, prefix="p"):
    return [make_point(f"{prefix}{i}", round(top - i * step, 4)) for i in range(n)]


class TestPagination:

    def test_make_pagination(self):
        p = make_pagination(40, 25, 25)

        assert (p.total, p.page, p.page_size, p.total_pages) == (40, 2, 25, 2)

    def test_empty(self):
        p = make_pagination(0, 25, 0)

        assert (p.total, p.page, p.total_pages) == (0, 1, 0)


class TestSearchByVector:
    """Tests for SimilarityIndex.search_by_vector()."""

    def test_second_page_of_forty(self):
        index = make_index(points=ranked_points(40))

        result = asyncio.run(index.search_by_vector([0.1] * 4, limit=25, threshold=0.6, offset=25))

        p = result.pagination
        assert (p.total, p.page, p.page_size, p.total_pages) == (40, 2, 25, 2)
        assert len(result.results) == 15
        assert result.results[0].id == "p25"

    def test_query_is_bounded_fetch(self):
        index = make_index(points=ranked_points(3), max_fetch=500)

        asyncio.run(index.search_by_vector([0.5, 0.5], limit=10, threshold=0.7))

        kwargs = index.client.query_points.await_args.kwargs
        assert kwargs["collection_name"] == "faces"
        assert kwargs["limit"] == 500
        assert kwargs["score_threshold"] == 0.7
        assert kwargs["query"] == [0.5, 0.5]

    def test_total_capped_at_max_fetch(self):
        index = make_index(points=ranked_points(20, step=0.001), max_fetch=10)

        result = asyncio.run(index.search_by_vector([0.1], limit=4, threshold=0.0))

        assert result.pagination.total == 10
        assert result.pagination.total_pages == 3

    def test_results_sorted_and_thresholded(self):
        points = [
            make_point("a", 0.7),
            make_point("b", 0.95),
            make_point("c", 0.5),
            make_point("d", 0.8),
        ]
        index = make_index(points=points)

        result = asyncio.run(index.search_by_vector([0.1], limit=10, threshold=0.6))

        assert [r.id for r in result.results] == ["b", "d", "a"]
        scores = [r.score for r in result.results]
        assert scores == sorted(scores, reverse=True)
        assert all(s >= 0.6 for s in scores)

    def test_page_past_end_is_empty(self):
        index = make_index(points=ranked_points(5))

        result = asyncio.run(index.search_by_vector([0.1], limit=25, threshold=0.6, offset=50))

        assert result.results == []
        assert result.pagination.total == 5
        assert result.pagination.page == 3

    def test_payload_normalized(self):
        index = make_index(points=[make_point("a", 0.9, {"imageUrl": "u", "site": "s"})])

        result = asyncio.run(index.search_by_vector([0.1], limit=5, threshold=0.5))

        assert result.results[0].payload.face_image_url == "u"
        assert result.results[0].payload.metadata == {"site": "s"}

    def test_invalid_paging_arguments(self):
        index = make_index(points=ranked_points(5))

        with pytest.raises(ValueError):
            asyncio.run(index.search_by_vector([0.1], limit=0, threshold=0.6))
        with pytest.raises(ValueError):
            asyncio.run(index.search_by_vector([0.1], limit=5, threshold=0.6, offset=-1))

    def test_query_failure_is_search_failed(self):
        index = make_index()
        index.client.query_points.side_effect = ConnectionError("qdrant down")

        with pytest.raises(SearchFailed) as info:
            asyncio.run(index.search_by_vector([0.1], limit=5, threshold=0.6))
        assert info.value.message == "Search failed. Please try again."


class TestStoredFaces:
    """Tests for get_face() and search_by_stored_id()."""

    def _record(self, face_id, vector=(0.1, 0.2), payload=None):
        return SimpleNamespace(id=face_id, vector=list(vector), payload=payload or {"name": "x"})

    def test_stored_face_excluded_from_results(self):
        points = [make_point("self", 1.0)] + ranked_points(5)
        index = make_index(points=points, records=[self._record("self")])

        result = asyncio.run(index.search_by_stored_id("self", limit=10, threshold=0.6))

        ids = [r.id for r in result.results]
        assert "self" not in ids
        assert len(ids) == 5
        assert result.pagination.total == 5
        assert index.client.query_points.await_args.kwargs["query"] == [0.1, 0.2]

    def test_integer_id_excluded(self):
        points = [make_point(7, 1.0), make_point(8, 0.9)]
        index = make_index(points=points, records=[self._record(7)])

        result = asyncio.run(index.search_by_stored_id(7, limit=10, threshold=0.6))

        assert [r.id for r in result.results] == [8]

    def test_stored_id_search_retrieves_once(self):
        index = make_index(points=ranked_points(3), records=[self._record("self")])

        asyncio.run(index.search_by_stored_id("self", limit=10, threshold=0.6))

        assert index.client.retrieve.await_count == 1

    def test_search_by_resolved_face_skips_retrieve(self):
        points = [make_point("self", 1.0)] + ranked_points(2)
        index = make_index(points=points)
        face = StoredFace(id="self", vector=[0.3, 0.4], payload={})

        result = asyncio.run(index.search_by_stored_face(face, limit=10, threshold=0.6))

        index.client.retrieve.assert_not_awaited()
        assert [r.id for r in result.results] == ["p0", "p1"]
        assert index.client.query_points.await_args.kwargs["query"] == [0.3, 0.4]

    def test_missing_face_not_found(self):
        index = make_index(records=[])

        with pytest.raises(NotFound) as info:
            asyncio.run(index.search_by_stored_id("missing", limit=10, threshold=0.6))
        assert info.value.message == "Face not found"
        index.client.query_points.assert_not_awaited()

    def test_named_vector_unwrapped(self):
        record = SimpleNamespace(id="a", vector={"face": [1, 2, 3]}, payload=None)
        index = make_index(records=[record])

        face = asyncio.run(index.get_face("a"))

        assert face.vector == [1.0, 2.0, 3.0]
        assert face.payload == {}

    def test_malformed_id_is_missing(self):
        index = make_index()
        index.client.retrieve.side_effect = UnexpectedResponse(
            status_code=400, reason_phrase="Bad Request", content=b"bad id", headers={},
        )

        assert asyncio.run(index.get_face("not-a-uuid")) is None

    def test_retrieve_failure_is_search_failed(self):
        index = make_index()
        index.client.retrieve.side_effect = UnexpectedResponse(
            status_code=500, reason_phrase="Internal Server Error", content=b"", headers={},
        )

        with pytest.raises(SearchFailed):
            asyncio.run(index.get_face("a"))


class TestIndexMaintenance:

    def test_upsert_generates_id(self):
        index = make_index()

        point_id = asyncio.run(index.upsert_face([0.1, 0.2], {"name": "n"}))

        assert isinstance(point_id, str) and len(point_id) == 36
        point = index.client.upsert.await_args.kwargs["points"][0]
        assert point.id == point_id
        assert point.payload == {"name": "n"}

    def test_ensure_collection_creates_when_missing(self):
        index = make_index()
        index.client.collection_exists.return_value = False

        asyncio.run(index.ensure_collection())

        kwargs = index.client.create_collection.await_args.kwargs
        assert kwargs["collection_name"] == "faces"
        assert kwargs["vectors_config"].size == 512

    def test_ensure_collection_noop_when_present(self):
        index = make_index()

        asyncio.run(index.ensure_collection())

        index.client.create_collection.assert_not_awaited()
