"""
Payload normalization for indexed faces.

Faces indexed over time carry different spellings for the same concept.
Each canonical field lists its accepted source keys in priority order; the
first key holding a non-empty value wins. Keys that are not listed anywhere
are kept untouched under ``metadata``.
"""

from typing import Any, Dict, Mapping, Optional, Tuple

from pipeline.types import SearchResultPayload

PAYLOAD_SYNONYMS: Dict[str, Tuple[str, ...]] = {
    "face_image_url": ("imageUrl", "croppedImageUrl", "image_url"),
    "original_url": ("originalUrl", "source_url", "fullImageUrl"),
    "name": ("name", "label", "display_name"),
    "cropped_image_url": ("croppedImageUrl",),
    "full_image_url": ("fullImageUrl",),
}

KNOWN_KEYS = frozenset(key for keys in PAYLOAD_SYNONYMS.values() for key in keys)


def _first_present(payload: Mapping[str, Any], keys: Tuple[str, ...]) -> Optional[str]:
    for key in keys:
        value = payload.get(key)
        if value is None or value == "":
            continue
        return str(value)
    return None


def normalize_search_payload(payload: Optional[Mapping[str, Any]]) -> Optional[SearchResultPayload]:
    if payload is None:
        return None
    fields = {canonical: _first_present(payload, keys) for canonical, keys in PAYLOAD_SYNONYMS.items()}
    metadata = {k: v for k, v in payload.items() if k not in KNOWN_KEYS}
    return SearchResultPayload(**fields, metadata=metadata)
