from __future__ import annotations
from typing import List, Dict, Any, Optional, Sequence
import logging
import time
import uuid

from qdrant_client import AsyncQdrantClient
from qdrant_client.http.exceptions import UnexpectedResponse
from qdrant_client.http.models import Distance, VectorParams, PointStruct, ScoredPoint

from config.settings import Settings
from logging_utils import log_event
from pipeline.errors import NotFound, SearchFailed
from pipeline.normalize import normalize_search_payload
from pipeline.types import FaceId, PagedResult, SearchResult, StoredFace, make_pagination

logger = logging.getLogger(__name__)


def make_client(settings: Settings) -> AsyncQdrantClient:
    return AsyncQdrantClient(
        url=settings.QDRANT_URL,
        api_key=settings.QDRANT_API_KEY,
        timeout=30,
    )


def scoredpoint_to_result(sp: ScoredPoint) -> SearchResult:
    return SearchResult(
        id=sp.id,
        score=float(sp.score or 0.0),
        payload=normalize_search_payload(sp.payload),
    )


def _plain_vector(vector: Any) -> Optional[List[float]]:
    # Unnamed collections return a list; named ones a {name: list} mapping
    if isinstance(vector, dict):
        vector = next(iter(vector.values()), None)
    if vector is None:
        return None
    return [float(v) for v in vector]


class SimilarityIndex:
    """
    Nearest-neighbour search over the faces collection.

    Every query is a single bounded fetch of ``max_fetch`` points above the
    threshold; pages are slices of that ranked list, so ``total`` counts the
    eligible points within the fetch ceiling, never more than ``max_fetch``.
    """

    def __init__(self, client: AsyncQdrantClient, collection: str, *, max_fetch: int = 500,
                 vector_dim: int = 512):
        self.client = client
        self.collection = collection
        self.max_fetch = max_fetch
        self.vector_dim = vector_dim

    @classmethod
    def from_settings(cls, settings: Settings) -> "SimilarityIndex":
        return cls(
            make_client(settings),
            settings.QDRANT_COLLECTION,
            max_fetch=settings.SEARCH_MAX_FETCH,
            vector_dim=settings.VECTOR_DIM,
        )

    async def aclose(self) -> None:
        await self.client.close()

    async def ensure_collection(self) -> None:
        if await self.client.collection_exists(self.collection):
            return
        await self.client.create_collection(
            collection_name=self.collection,
            vectors_config=VectorParams(size=self.vector_dim, distance=Distance.COSINE),
        )
        logger.info(f"Created collection {self.collection} (dim={self.vector_dim})")

    async def _query(self, vector: Sequence[float], threshold: float) -> List[ScoredPoint]:
        started = time.perf_counter()
        try:
            response = await self.client.query_points(
                collection_name=self.collection,
                query=list(vector),
                limit=self.max_fetch,
                score_threshold=threshold,
                with_payload=True,
                with_vectors=False,
            )
        except Exception as e:
            logger.error(f"Vector query failed on {self.collection}: {e}")
            raise SearchFailed(details={"reason": str(e)}) from e

        eligible = [p for p in response.points if float(p.score or 0.0) >= threshold]
        # Stable: equal scores keep the index's own order
        eligible.sort(key=lambda p: -float(p.score or 0.0))
        log_event(
            "vector_query",
            collection=self.collection,
            fetched=len(response.points),
            eligible=len(eligible),
            threshold=threshold,
            latency_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        return eligible[: self.max_fetch]

    @staticmethod
    def _page(points: List[ScoredPoint], limit: int, offset: int) -> PagedResult:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if offset < 0:
            raise ValueError("offset must be >= 0")
        return PagedResult(
            results=[scoredpoint_to_result(p) for p in points[offset: offset + limit]],
            pagination=make_pagination(len(points), limit, offset),
        )

    async def search_by_vector(self, vector: Sequence[float], limit: int, threshold: float,
                               offset: int = 0) -> PagedResult:
        points = await self._query(vector, threshold)
        return self._page(points, limit, offset)

    async def search_by_stored_id(self, face_id: FaceId, limit: int, threshold: float,
                                  offset: int = 0) -> PagedResult:
        """Search with the stored vector of ``face_id``; the face itself is never a result."""
        face = await self.get_face(face_id)
        if face is None:
            raise NotFound(details={"id": str(face_id)})
        return await self.search_by_stored_face(face, limit, threshold, offset, requested_id=face_id)

    async def search_by_stored_face(self, face: StoredFace, limit: int, threshold: float,
                                    offset: int = 0, requested_id: FaceId | None = None) -> PagedResult:
        """Like search_by_stored_id, for a face already retrieved with get_face()."""
        if face.vector is None:
            raise NotFound(details={"id": str(face.id)})
        excluded = {str(face.id)}
        if requested_id is not None:
            excluded.add(str(requested_id))
        points = [p for p in await self._query(face.vector, threshold) if str(p.id) not in excluded]
        return self._page(points, limit, offset)

    async def get_face(self, face_id: FaceId) -> Optional[StoredFace]:
        try:
            records = await self.client.retrieve(
                collection_name=self.collection,
                ids=[face_id],
                with_payload=True,
                with_vectors=True,
            )
        except UnexpectedResponse as e:
            # Malformed ids are rejected by Qdrant with a 4xx; they cannot exist
            if e.status_code in (400, 404):
                return None
            raise SearchFailed(details={"reason": str(e)}) from e
        except Exception as e:
            logger.error(f"Retrieve failed for {face_id}: {e}")
            raise SearchFailed(details={"reason": str(e)}) from e

        if not records:
            return None
        record = records[0]
        return StoredFace(id=record.id, vector=_plain_vector(record.vector), payload=record.payload or {})

    async def upsert_face(self, vector: Sequence[float], payload: Dict[str, Any],
                          face_id: FaceId | None = None) -> FaceId:
        point_id = face_id if face_id is not None else str(uuid.uuid4())
        try:
            await self.client.upsert(
                collection_name=self.collection,
                points=[PointStruct(id=point_id, vector=list(vector), payload=dict(payload))],
                wait=True,
            )
        except Exception as e:
            logger.error(f"Upsert failed for {point_id}: {e}")
            raise SearchFailed("Failed to index face", details={"reason": str(e)}) from e
        return point_id
