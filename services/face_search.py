"""
Face search orchestration shared by the HTTP API and the session workflow.

``search_image`` embeds a cropped face through the EmbeddingGate and queries
the SimilarityIndex; ``search_vector`` re-queries with a known embedding
(page changes); ``search_stored`` searches with a face already in the index.
"""

from __future__ import annotations
import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from config.settings import Settings
from logging_utils import log_event
from pipeline.embedder import EmbeddingGate
from pipeline.errors import NotFound
from pipeline.indexer import SimilarityIndex
from pipeline.storage import QueryImageArchive
from pipeline.types import FaceId, PagedResult, StoredFace, page_offset

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageSearchOutcome:
    embedding: List[float]
    page: PagedResult
    thumbnail_url: str
    cropped_image_url: Optional[str] = None
    full_image_url: Optional[str] = None


class FaceSearchService:
    def __init__(self, gate: EmbeddingGate, index: SimilarityIndex,
                 archive: QueryImageArchive | None = None):
        self.gate = gate
        self.index = index
        self.archive = archive

    @classmethod
    def from_settings(cls, settings: Settings) -> "FaceSearchService":
        archive = QueryImageArchive(settings) if settings.ARCHIVE_QUERY_IMAGES else None
        return cls(EmbeddingGate(settings), SimilarityIndex.from_settings(settings), archive)

    async def aclose(self) -> None:
        await self.gate.aclose()
        await self.index.aclose()

    async def _archive_query(self, cropped_image: str,
                             full_image: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
        if self.archive is None:
            return None, None
        upload_id = uuid.uuid4()
        timestamp = int(time.time() * 1000)
        cropped_url, full_url = await asyncio.gather(
            self.archive.archive(cropped_image, f"{upload_id}-cropped-{timestamp}.jpg"),
            self.archive.archive(full_image, f"{upload_id}-full-{timestamp}.jpg"),
        )
        return cropped_url, full_url

    async def search_image(self, cropped_image: str, full_image: Optional[str] = None, *,
                           limit: int, threshold: float, page: int = 1) -> ImageSearchOutcome:
        """
        Embed ``cropped_image`` and return the requested page of similar faces.

        Raises the FaceSearchError matching the embedding failure kind, or
        SearchFailed when the index query fails. Archiving the query images
        is best effort and runs alongside the embedding call.
        """
        started = time.perf_counter()
        (cropped_url, full_url), embedded = await asyncio.gather(
            self._archive_query(cropped_image, full_image),
            self.gate.embed(cropped_image),
        )
        embedding = embedded.raise_for_error()

        result = await self.index.search_by_vector(
            embedding, limit=limit, threshold=threshold, offset=page_offset(page, limit),
        )
        log_event(
            "image_search",
            total=result.pagination.total,
            page=result.pagination.page,
            returned=len(result.results),
            latency_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        return ImageSearchOutcome(
            embedding=embedding,
            page=result,
            thumbnail_url=cropped_url or cropped_image,
            cropped_image_url=cropped_url,
            full_image_url=full_url,
        )

    async def search_vector(self, embedding: Sequence[float], *, limit: int, threshold: float,
                            page: int = 1) -> PagedResult:
        return await self.index.search_by_vector(
            embedding, limit=limit, threshold=threshold, offset=page_offset(page, limit),
        )

    async def search_stored(self, face_id: FaceId, *, limit: int, threshold: float,
                            page: int = 1) -> Tuple[StoredFace, PagedResult]:
        """Raises NotFound when ``face_id`` is not indexed."""
        face = await self.index.get_face(face_id)
        if face is None:
            raise NotFound(details={"id": str(face_id)})
        result = await self.index.search_by_stored_face(
            face, limit=limit, threshold=threshold, offset=page_offset(page, limit), requested_id=face_id,
        )
        return face, result
