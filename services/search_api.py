import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Path, Request, status
from pydantic import Field

from config.settings import Settings
from pipeline.errors import FaceSearchError, SearchFailed, ValidationError
from pipeline.types import FaceId, Pagination, SearchResult, CamelModel
from services.face_search import FaceSearchService
from services.validation import parse_search_body, parse_search_query

"""
Search API Service

Face similarity search endpoints:
- POST /api/search: search with a cropped face image
- GET /api/search/{id}: search with a face already stored in the index

Request parameters are validated before any embedding or index call.
"""

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["search"])


# ============================================================================
# Response Models
# ============================================================================

class QueryImages(CamelModel):
    thumbnail_url: Optional[str] = Field(
        None,
        description="Image to show for the query: archived crop URL, else the crop data URL"
    )
    cropped_image_url: Optional[str] = None
    full_image_url: Optional[str] = None


class SearchResponse(CamelModel):
    success: bool = True
    query: QueryImages
    results: List[SearchResult] = Field(default_factory=list)
    pagination: Pagination


class StoredFaceInfo(CamelModel):
    id: FaceId
    payload: Dict[str, Any] = Field(default_factory=dict)


class StoredFaceSearchResponse(CamelModel):
    success: bool = True
    face: StoredFaceInfo
    results: List[SearchResult] = Field(default_factory=list)
    pagination: Pagination


def get_search_service(request: Request) -> FaceSearchService:
    return request.app.state.search_service


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


# ============================================================================
# API Endpoints
# ============================================================================

@router.post(
    "/search",
    response_model=SearchResponse,
    response_model_by_alias=True,
    status_code=status.HTTP_200_OK,
)
async def search_faces(
    request: Request,
    service: FaceSearchService = Depends(get_search_service),
    settings: Settings = Depends(get_settings),
) -> SearchResponse:
    """
    Search for faces similar to the uploaded crop.

    Body: ``croppedImageData`` (required), ``fullImageData``, ``limit``,
    ``threshold``, ``page``. Embedding failures come back as 400 with the
    failure message; index failures as 500.
    """
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationError("Invalid JSON body")
    params = parse_search_body(body, settings)

    logger.info(
        f"Search request: limit={params.limit}, threshold={params.threshold}, "
        f"page={params.page}, has_full_image={params.full_image_data is not None}"
    )

    try:
        outcome = await service.search_image(
            params.cropped_image_data,
            params.full_image_data,
            limit=params.limit,
            threshold=params.threshold,
            page=params.page,
        )
    except FaceSearchError:
        raise
    except Exception as e:
        logger.error(f"Error in search: {e}")
        raise SearchFailed(details={"reason": str(e)}) from e

    return SearchResponse(
        query=QueryImages(
            thumbnail_url=outcome.thumbnail_url,
            cropped_image_url=outcome.cropped_image_url,
            full_image_url=outcome.full_image_url,
        ),
        results=outcome.page.results,
        pagination=outcome.page.pagination,
    )


@router.get(
    "/search/{face_id}",
    response_model=StoredFaceSearchResponse,
    response_model_by_alias=True,
    status_code=status.HTTP_200_OK,
)
async def search_by_face_id(
    request: Request,
    face_id: str = Path(..., description="Stored face identifier (Qdrant point ID)"),
    service: FaceSearchService = Depends(get_search_service),
    settings: Settings = Depends(get_settings),
) -> StoredFaceSearchResponse:
    """Search with the stored vector of ``face_id``; the face itself is excluded from results."""
    params = parse_search_query(request.query_params, settings)
    lookup_id: FaceId = int(face_id) if face_id.isascii() and face_id.isdigit() else face_id

    try:
        face, result = await service.search_stored(
            lookup_id, limit=params.limit, threshold=params.threshold, page=params.page,
        )
    except FaceSearchError:
        raise
    except Exception as e:
        logger.error(f"Error searching by face {face_id}: {e}")
        raise SearchFailed("Failed to fetch search results", details={"reason": str(e)}) from e

    return StoredFaceSearchResponse(
        face=StoredFaceInfo(id=face.id, payload=face.payload),
        results=result.results,
        pagination=result.pagination,
    )


@router.get("/health", status_code=status.HTTP_200_OK)
async def api_health() -> Dict[str, str]:
    """API health check endpoint. Does not check dependencies."""
    return {"status": "healthy", "service": "face-search-api"}
