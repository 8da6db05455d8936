"""
Embedding Gate

Async client for the remote face embedding service (DeepFace ``/represent``).
Bounds the number of in-flight calls with a FIFO admission gate, bounds each
call with a wall-clock timeout, and classifies failures instead of raising.
"""

from __future__ import annotations
import asyncio
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from numbers import Real
from typing import Any, Deque, Dict, List, Optional

import httpx

from config.settings import Settings
from logging_utils import log_event
from pipeline.errors import (
    EmbeddingTimeout, FaceSearchError, NoFaceDetected, TransportError, UpstreamError,
)

logger = logging.getLogger(__name__)

NO_FACE_MARKERS = ("could not be detected", "no face", "no faces")
NO_FACE_MESSAGE = "No face detected in image"
MAX_ERROR_BODY_CHARS = 200


class AdmissionGate:
    """
    Counting gate with FIFO admission.

    At most ``limit`` holders at a time; callers beyond that suspend on a
    future queued in arrival order. Releasing hands the slot straight to the
    oldest live waiter, so the active count never overshoots and a newcomer
    can never slip in ahead of a queued caller. ``limit <= 0`` admits everyone.
    """

    def __init__(self, limit: int):
        self.limit = limit
        self._active = 0
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def active(self) -> int:
        return self._active

    @property
    def queued(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def acquire(self) -> None:
        if self.limit <= 0:
            self._active += 1
            return
        if self._active < self.limit and not self._waiters:
            self._active += 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over before the cancellation landed
                self.release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        if self.limit > 0:
            while self._waiters:
                waiter = self._waiters.popleft()
                if not waiter.done():
                    waiter.set_result(None)
                    return
        self._active -= 1

    @asynccontextmanager
    async def slot(self):
        await self.acquire()
        try:
            yield
        finally:
            self.release()


class ErrorKind(str, Enum):
    NO_FACE_DETECTED = "no_face_detected"
    UPSTREAM_ERROR = "upstream_error"
    TIMEOUT = "timeout"
    TRANSPORT_ERROR = "transport_error"


@dataclass(frozen=True)
class FaceRegion:
    x: float
    y: float
    w: float
    h: float


@dataclass(frozen=True)
class EmbeddedFace:
    embedding: List[float]
    region: Optional[FaceRegion] = None
    confidence: Optional[float] = None


@dataclass(frozen=True)
class EmbeddingResult:
    """Either ``embedding`` is set, or ``error`` and ``error_kind`` are."""
    embedding: Optional[List[float]] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    status_code: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.embedding is not None

    def raise_for_error(self) -> List[float]:
        """Return the embedding or raise the matching FaceSearchError."""
        if self.embedding is not None:
            return self.embedding
        details = {"status_code": self.status_code} if self.status_code is not None else None
        if self.error_kind is ErrorKind.NO_FACE_DETECTED:
            raise NoFaceDetected(self.error or NO_FACE_MESSAGE)
        if self.error_kind is ErrorKind.TIMEOUT:
            raise EmbeddingTimeout(self.error or "Embedding request timed out")
        if self.error_kind is ErrorKind.UPSTREAM_ERROR:
            raise UpstreamError(self.error or "Embedding service error", details)
        if self.error_kind is ErrorKind.TRANSPORT_ERROR:
            raise TransportError(self.error or "Embedding request failed")
        raise FaceSearchError(self.error or "Embedding failed", "EMBEDDING_FAILED", details)


def _is_numeric_vector(value: Any) -> bool:
    return (
        isinstance(value, list)
        and len(value) > 0
        and all(isinstance(v, Real) and not isinstance(v, bool) for v in value)
    )


def _parse_region(raw: Any) -> Optional[FaceRegion]:
    if not isinstance(raw, dict):
        return None
    try:
        return FaceRegion(x=float(raw["x"]), y=float(raw["y"]), w=float(raw["w"]), h=float(raw["h"]))
    except (KeyError, TypeError, ValueError):
        return None


def parse_faces(data: Any) -> List[EmbeddedFace]:
    """
    Extract faces from a ``/represent`` response.

    Accepts ``{"results": [...]}`` or a bare list. Entries without a numeric
    ``embedding`` are dropped; region comes from ``facial_area`` or ``region``,
    confidence from ``face_confidence`` or ``confidence``.
    """
    if isinstance(data, dict) and isinstance(data.get("results"), list):
        raw_faces = data["results"]
    elif isinstance(data, list):
        raw_faces = data
    else:
        raw_faces = []

    faces: List[EmbeddedFace] = []
    for face in raw_faces:
        if not isinstance(face, dict) or not _is_numeric_vector(face.get("embedding")):
            continue
        confidence = face.get("face_confidence") or face.get("confidence")
        faces.append(EmbeddedFace(
            embedding=[float(v) for v in face["embedding"]],
            region=_parse_region(face.get("facial_area") or face.get("region")),
            confidence=float(confidence) if isinstance(confidence, Real) else None,
        ))
    return faces


def to_data_url(image_data: str) -> str:
    if image_data.startswith("data:"):
        return image_data
    return f"data:image/jpeg;base64,{image_data}"


def make_http_client(settings: Settings,
                     transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    """HTTP client for the embedding service; every phase is bounded by EMBEDDING_TIMEOUT_MS."""
    timeout = httpx.Timeout(settings.EMBEDDING_TIMEOUT_MS / 1000)
    return httpx.AsyncClient(
        base_url=settings.EMBEDDING_API_URL,
        timeout=timeout,
        transport=transport,
        headers={"User-Agent": "FaceSearch-Embedding-Client/1.0"},
    )


class EmbeddingGate:
    """
    Process-wide gateway to the embedding service.

    Construct one per process (see the API lifespan) and share it across
    sessions; ``aclose()`` releases the HTTP connection pool.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self.settings = settings
        self.timeout_ms = settings.EMBEDDING_TIMEOUT_MS
        self.admission = AdmissionGate(settings.EMBEDDING_CONCURRENCY)
        self._client = client or make_http_client(settings)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def embed(self, image_data: str) -> EmbeddingResult:
        """
        Embed the single face in ``image_data`` (data URL or raw base64).

        Never raises for remote failures: the outcome is an EmbeddingResult
        carrying either the vector or a classified error. Not retried.
        """
        async with self.admission.slot():
            started = time.perf_counter()
            result = await self._embed_with_timeout(image_data)
            log_event(
                "embedding_completed",
                ok=result.ok,
                error_kind=result.error_kind.value if result.error_kind else None,
                status_code=result.status_code,
                latency_ms=round((time.perf_counter() - started) * 1000, 1),
                active=self.admission.active,
                queued=self.admission.queued,
            )
            return result

    async def _embed_with_timeout(self, image_data: str) -> EmbeddingResult:
        try:
            return await asyncio.wait_for(self._represent(image_data), timeout=self.timeout_ms / 1000)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return EmbeddingResult(
                error=f"Embedding request timed out after {self.timeout_ms}ms",
                error_kind=ErrorKind.TIMEOUT,
            )
        except httpx.HTTPError as e:
            logger.warning(f"Embedding transport failure: {type(e).__name__}: {e}")
            return EmbeddingResult(
                error=f"Embedding request failed: {e or type(e).__name__}",
                error_kind=ErrorKind.TRANSPORT_ERROR,
            )
        except ValueError as e:
            # Undecodable JSON body on a 2xx response
            return EmbeddingResult(
                error=f"Embedding request failed: {e}",
                error_kind=ErrorKind.TRANSPORT_ERROR,
            )

    def _request_body(self, image_data: str) -> Dict[str, Any]:
        return {
            "img": to_data_url(image_data),
            "model_name": self.settings.EMBEDDING_MODEL,
            "detector_backend": self.settings.EMBEDDING_DETECTOR_BACKEND,
            "enforce_detection": self.settings.EMBEDDING_ENFORCE_DETECTION,
        }

    async def _represent(self, image_data: str) -> EmbeddingResult:
        response = await self._client.post("/represent", json=self._request_body(image_data))

        if not response.is_success:
            text = response.text or ""
            normalized = text.lower()
            if any(marker in normalized for marker in NO_FACE_MARKERS):
                return EmbeddingResult(error=NO_FACE_MESSAGE, error_kind=ErrorKind.NO_FACE_DETECTED,
                                       status_code=response.status_code)
            return EmbeddingResult(
                error=f"Embedding API error {response.status_code}: {text[:MAX_ERROR_BODY_CHARS]}",
                error_kind=ErrorKind.UPSTREAM_ERROR,
                status_code=response.status_code,
            )

        faces = parse_faces(response.json())
        if not faces:
            return EmbeddingResult(error=NO_FACE_MESSAGE, error_kind=ErrorKind.NO_FACE_DETECTED,
                                   status_code=response.status_code)
        if len(faces) > 1:
            logger.debug(f"Embedding service returned {len(faces)} faces for one crop; using the first")
        return EmbeddingResult(embedding=faces[0].embedding, status_code=response.status_code)
