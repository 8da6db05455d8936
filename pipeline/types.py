"""Shared face search types."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

FaceId = Union[str, int]


@dataclass(frozen=True)
class BoundingBox:
    x: float
    y: float
    width: float
    height: float

    @property
    def center(self) -> tuple[float, float]:
        return self.x + self.width / 2, self.y + self.height / 2


@dataclass(frozen=True)
class DetectedFace:
    """A face found by the detector, with its square crop as a JPEG data URL."""
    id: str
    bbox: BoundingBox
    confidence: float
    crop_image: str


@dataclass(frozen=True)
class StoredFace:
    id: FaceId
    vector: List[float]
    payload: Dict[str, Any]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SearchResultPayload(CamelModel):
    face_image_url: Optional[str] = None
    original_url: Optional[str] = None
    name: Optional[str] = None
    cropped_image_url: Optional[str] = None
    full_image_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SearchResult(CamelModel):
    id: FaceId
    score: float
    payload: Optional[SearchResultPayload] = None


class Pagination(CamelModel):
    total: int = Field(ge=0)
    page: int = Field(ge=1)
    page_size: int = Field(ge=1)
    total_pages: int = Field(ge=0)


class PagedResult(CamelModel):
    results: List[SearchResult] = Field(default_factory=list)
    pagination: Pagination


def make_pagination(total: int, limit: int, offset: int) -> Pagination:
    """Pagination for a plain [offset, offset + limit) slice over ``total`` items."""
    return Pagination(
        total=total,
        page=offset // limit + 1,
        page_size=limit,
        total_pages=math.ceil(total / limit),
    )


def clamp_page(page: int, total_pages: int) -> int:
    return max(1, min(page, max(total_pages, 1)))


def page_offset(page: int, limit: int) -> int:
    return (page - 1) * limit
