"""
API-level tests for /api/search.

The search service is replaced by a mock so no embedding service or Qdrant
is needed; these tests cover request validation, status codes and the
response shape.
"""

import base64
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from main import create_app
from pipeline.errors import EmbeddingTimeout, NoFaceDetected, NotFound, SearchFailed
from pipeline.normalize import normalize_search_payload
from pipeline.types import PagedResult, SearchResult, StoredFace, make_pagination
from services.face_search import ImageSearchOutcome

CROP_B64 = base64.b64encode(b"\xff\xd8\xff\xe0" + b"\x01" * 120).decode("ascii")


def fake_page(total=40, limit=25, offset=0):
    return PagedResult(
        results=[
            SearchResult(id="a", score=0.93, payload=normalize_search_payload({"imageUrl": "https://x/a.jpg", "site": "x"})),
            SearchResult(id=2, score=0.71, payload=None),
        ],
        pagination=make_pagination(total, limit, offset),
    )


@pytest.fixture
def service():
    svc = MagicMock()
    svc.search_image = AsyncMock(return_value=ImageSearchOutcome(
        embedding=[0.1] * 4,
        page=fake_page(),
        thumbnail_url="data:image/jpeg;base64," + CROP_B64,
    ))
    svc.search_stored = AsyncMock(return_value=(
        StoredFace(id="abc", vector=[0.1] * 4, payload={"name": "Alice"}),
        fake_page(),
    ))
    return svc


@pytest.fixture
def client(settings, service):
    return TestClient(create_app(settings=settings, search_service=service))


class TestSearchEndpoint:
    """Tests for POST /api/search."""

    def test_happy_path(self, client, service):
        response = client.post("/api/search", json={"croppedImageData": CROP_B64, "limit": 25, "page": 1})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["pagination"] == {"total": 40, "page": 1, "pageSize": 25, "totalPages": 2}
        assert data["results"][0]["payload"]["faceImageUrl"] == "https://x/a.jpg"
        assert data["results"][0]["payload"]["metadata"] == {"site": "x"}
        assert data["results"][1]["id"] == 2
        assert data["results"][1]["payload"] is None
        assert data["query"]["thumbnailUrl"].startswith("data:image/jpeg;base64,")

        kwargs = service.search_image.await_args.kwargs
        assert kwargs == {"limit": 25, "threshold": 0.6, "page": 1}

    def test_invalid_limit_rejected_before_search(self, client, service):
        response = client.post("/api/search", json={"croppedImageData": CROP_B64, "limit": 500})

        assert response.status_code == 400
        assert response.json() == {
            "success": False,
            "error": "limit must be between 1 and 50",
            "code": "VALIDATION_ERROR",
        }
        service.search_image.assert_not_awaited()

    def test_missing_image(self, client, service):
        response = client.post("/api/search", json={})

        assert response.status_code == 400
        assert response.json()["error"] == "croppedImageData must be a base64 string"

    def test_oversized_image(self, settings, service):
        small = settings.model_copy(update={"MAX_IMAGE_BYTES": 16})
        client = TestClient(create_app(settings=small, search_service=service))

        response = client.post("/api/search", json={"croppedImageData": CROP_B64})

        assert response.status_code == 413
        service.search_image.assert_not_awaited()

    def test_invalid_json(self, client):
        response = client.post("/api/search", content=b"{not json", headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid JSON body"

    @pytest.mark.parametrize("error, status_code, code", [
        (NoFaceDetected(), 400, "NO_FACE_DETECTED"),
        (EmbeddingTimeout("Embedding request timed out after 10000ms"), 400, "TIMEOUT"),
        (SearchFailed(), 500, "SEARCH_FAILED"),
    ])
    def test_search_errors(self, client, service, error, status_code, code):
        service.search_image.side_effect = error

        response = client.post("/api/search", json={"croppedImageData": CROP_B64})

        assert response.status_code == status_code
        assert response.json()["code"] == code
        assert response.json()["error"] == error.message

    def test_unexpected_error_is_generic_500(self, client, service):
        service.search_image.side_effect = RuntimeError("socket closed")

        response = client.post("/api/search", json={"croppedImageData": CROP_B64})

        assert response.status_code == 500
        assert response.json()["error"] == "Search failed. Please try again."


class TestStoredFaceEndpoint:
    """Tests for GET /api/search/{face_id}."""

    def test_search_by_id(self, client, service):
        response = client.get("/api/search/abc", params={"limit": 10, "page": 2})

        assert response.status_code == 200
        data = response.json()
        assert data["face"] == {"id": "abc", "payload": {"name": "Alice"}}
        args, kwargs = service.search_stored.await_args
        assert args == ("abc",)
        assert kwargs == {"limit": 10, "threshold": 0.6, "page": 2}

    def test_numeric_id(self, client, service):
        client.get("/api/search/42")

        assert service.search_stored.await_args.args == (42,)

    def test_non_ascii_digit_id_stays_string(self, client, service):
        service.search_stored.side_effect = NotFound(details={"id": "²"})

        response = client.get("/api/search/²")

        assert response.status_code == 404
        assert service.search_stored.await_args.args == ("²",)

    def test_not_found(self, client, service):
        service.search_stored.side_effect = NotFound(details={"id": "missing"})

        response = client.get("/api/search/missing")

        assert response.status_code == 404
        assert response.json() == {"success": False, "error": "Face not found", "code": "NOT_FOUND"}

    def test_bad_threshold(self, client, service):
        response = client.get("/api/search/abc", params={"threshold": "high"})

        assert response.status_code == 400
        service.search_stored.assert_not_awaited()

    def test_unexpected_error(self, client, service):
        service.search_stored.side_effect = RuntimeError("boom")

        response = client.get("/api/search/abc")

        assert response.status_code == 500
        assert response.json()["error"] == "Failed to fetch search results"


class TestHealth:

    def test_health(self, client):
        assert client.get("/api/health").json()["status"] == "healthy"
        assert client.get("/healthz").status_code == 200
