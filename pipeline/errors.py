from typing import Dict, Any, Optional

from fastapi import status


class FaceSearchError(Exception):
    """Base exception class for face search errors."""

    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, error_code: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class NoFaceDetected(FaceSearchError):
    """Raised when no face could be found in the query image."""

    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = "No face detected in image", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NO_FACE_DETECTED", details)


class ModelNotReady(FaceSearchError):
    """Raised when the face detector is used before its models are loaded."""

    http_status = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, message: str = "Face detection models not loaded", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "MODEL_NOT_READY", details)


class EmbeddingTimeout(FaceSearchError):
    """Raised when the embedding service does not answer in time."""

    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "TIMEOUT", details)


class UpstreamError(FaceSearchError):
    """Raised when the embedding service answers with a non-2xx status."""

    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "UPSTREAM_ERROR", details)


class TransportError(FaceSearchError):
    """Raised on network-level failures talking to the embedding service."""

    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "TRANSPORT_ERROR", details)


class NotFound(FaceSearchError):
    """Raised when a stored face id does not exist in the index."""

    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, message: str = "Face not found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NOT_FOUND", details)


class ValidationError(FaceSearchError):
    """Raised when request input validation fails."""

    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, http_status: int = status.HTTP_400_BAD_REQUEST,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_ERROR", details)
        self.http_status = http_status


class SearchFailed(FaceSearchError):
    """Raised when the vector index query fails."""

    def __init__(self, message: str = "Search failed. Please try again.", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "SEARCH_FAILED", details)


def error_response(error: FaceSearchError) -> Dict[str, Any]:
    """Body returned to API callers for a face search error."""
    return {"success": False, "error": error.message, "code": error.error_code}
