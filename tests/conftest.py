"""
Pytest Configuration and Fixtures
"""

import base64
from io import BytesIO
from typing import Dict, Optional

import pytest
from PIL import Image
from qdrant_client.http.models import ScoredPoint

from config.settings import Settings
from pipeline.types import BoundingBox, DetectedFace


def make_point(point_id, score: float, payload: Optional[Dict] = None) -> ScoredPoint:
    """Create a fake ScoredPoint as returned by query_points."""
    return ScoredPoint(id=point_id, version=0, score=score, payload=payload or {})


def make_face(index: int, crop: str = "data:image/jpeg;base64,AAAA") -> DetectedFace:
    return DetectedFace(
        id=f"face-{index}",
        bbox=BoundingBox(x=10.0 * index, y=10.0, width=50.0, height=60.0),
        confidence=0.9,
        crop_image=crop,
    )


@pytest.fixture
def settings():
    """Settings with the stock limits, independent of the environment."""
    return Settings(
        EMBEDDING_API_URL="http://embedder.test",
        EMBEDDING_TIMEOUT_MS=10000,
        EMBEDDING_CONCURRENCY=4,
        SEARCH_MAX_FETCH=500,
        SEARCH_DEFAULT_LIMIT=25,
        SEARCH_DEFAULT_THRESHOLD=0.6,
        ARCHIVE_QUERY_IMAGES=False,
    )


@pytest.fixture
def sample_image_bytes():
    """A small JPEG, enough for the upload decoder."""
    buf = BytesIO()
    Image.new("RGB", (64, 48), color=(200, 150, 120)).save(buf, format="JPEG")
    return buf.getvalue()


@pytest.fixture
def sample_crop_b64():
    buf = BytesIO()
    Image.new("RGB", (32, 32), color="white").save(buf, format="JPEG")
    return "data:image/jpeg;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


@pytest.fixture
def sample_embedding():
    return [0.01 * i for i in range(512)]
