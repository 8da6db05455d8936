"""
Boundary validation for the search API.

Every check here runs before any embedding or index call is made.
"""

from __future__ import annotations
import base64
import binascii
import math
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from fastapi import status

from config.settings import Settings
from pipeline.errors import ValidationError

MIN_THRESHOLD = 0.0
MAX_THRESHOLD = 1.0

_DATA_URL_PREFIX = re.compile(r"^data:image/\w+;base64,")


@dataclass(frozen=True)
class SearchBodyParams:
    cropped_image_data: str
    full_image_data: Optional[str]
    limit: int
    threshold: float
    page: int


@dataclass(frozen=True)
class SearchQueryParams:
    limit: int
    threshold: float
    page: int


def base64_byte_size(data: str) -> int:
    content = _DATA_URL_PREFIX.sub("", data, count=1)
    padding = 2 if content.endswith("==") else 1 if content.endswith("=") else 0
    size = (len(content) * 3) // 4 - padding
    return size if size > 0 else 0


def parse_number(value: Any, fallback: float) -> float:
    """Missing values take ``fallback``; anything non-numeric becomes NaN."""
    if value is None or value == "":
        return fallback
    if isinstance(value, bool):
        return math.nan
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return math.nan
    return parsed if math.isfinite(parsed) else math.nan


def _is_int(value: float) -> bool:
    return not math.isnan(value) and float(value).is_integer()


def validate_image(value: Any, field_name: str, max_bytes: int) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} must be a base64 string")

    byte_size = base64_byte_size(value)
    if not byte_size:
        raise ValidationError(f"{field_name} is not valid base64 data")
    if byte_size > max_bytes:
        raise ValidationError(f"{field_name} exceeds {max_bytes} bytes",
                              http_status=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE)

    try:
        base64.b64decode(_DATA_URL_PREFIX.sub("", value.strip(), count=1), validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError(f"{field_name} is not valid base64 data")
    return value


def validate_pagination(limit: float, threshold: float, page: float, settings: Settings) -> None:
    if not _is_int(limit) or limit < 1 or limit > settings.SEARCH_MAX_LIMIT:
        raise ValidationError(f"limit must be between 1 and {settings.SEARCH_MAX_LIMIT}")
    if math.isnan(threshold) or threshold < MIN_THRESHOLD or threshold > MAX_THRESHOLD:
        raise ValidationError(f"threshold must be between {MIN_THRESHOLD:g} and {MAX_THRESHOLD:g}")
    if not _is_int(page) or page < 1 or page > settings.SEARCH_MAX_PAGE:
        raise ValidationError(f"page must be between 1 and {settings.SEARCH_MAX_PAGE}")


def parse_search_body(body: Any, settings: Settings) -> SearchBodyParams:
    if not isinstance(body, Mapping):
        raise ValidationError("Invalid JSON body")

    limit = parse_number(body.get("limit"), settings.SEARCH_DEFAULT_LIMIT)
    threshold = parse_number(body.get("threshold"), settings.SEARCH_DEFAULT_THRESHOLD)
    page = parse_number(body.get("page"), 1)
    validate_pagination(limit, threshold, page, settings)

    cropped = validate_image(body.get("croppedImageData"), "croppedImageData", settings.MAX_IMAGE_BYTES)
    full = body.get("fullImageData")
    if full is not None:
        full = validate_image(full, "fullImageData", settings.MAX_IMAGE_BYTES)

    return SearchBodyParams(
        cropped_image_data=cropped,
        full_image_data=full,
        limit=int(limit),
        threshold=threshold,
        page=int(page),
    )


def parse_search_query(params: Mapping[str, Any], settings: Settings) -> SearchQueryParams:
    limit = parse_number(params.get("limit"), settings.SEARCH_DEFAULT_LIMIT)
    threshold = parse_number(params.get("threshold"), settings.SEARCH_DEFAULT_THRESHOLD)
    page = parse_number(params.get("page"), 1)
    validate_pagination(limit, threshold, page, settings)
    return SearchQueryParams(limit=int(limit), threshold=threshold, page=int(page))
