"""
Search Workflow

Per-session state machine for upload -> detect -> select -> search -> results.

All transition logic lives in ``reduce(state, event)``, a pure function over
immutable ``WorkflowState`` values. ``SearchWorkflow`` performs the I/O
(detection, embedding, vector queries) and feeds the outcomes back as events.
"""

from __future__ import annotations
import asyncio
import base64
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from io import BytesIO
from typing import List, Optional, Tuple, Union

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from logging_utils import log_event
from pipeline.errors import FaceSearchError
from pipeline.types import DetectedFace, Pagination, SearchResult, clamp_page

logger = logging.getLogger(__name__)

NO_FACES_MESSAGE = "No faces detected in the image. Please try another photo."
SEARCH_FAILED_MESSAGE = "Search failed"


class Step(str, Enum):
    UPLOAD = "upload"
    DETECTING = "detecting"
    SELECT = "select"
    SEARCHING = "searching"
    RESULTS = "results"


@dataclass(frozen=True)
class WorkflowState:
    step: Step = Step.UPLOAD
    image: Optional[bytes] = None
    image_mime: Optional[str] = None
    faces: Tuple[DetectedFace, ...] = ()
    selected_face: Optional[DetectedFace] = None
    embedding: Optional[Tuple[float, ...]] = None
    error: Optional[str] = None
    results: Tuple[SearchResult, ...] = ()
    pagination: Optional[Pagination] = None
    query_image_url: Optional[str] = None
    page_loading: bool = False
    search_duration_ms: Optional[float] = None


INITIAL_STATE = WorkflowState()


# ----- Events -----

@dataclass(frozen=True)
class Reset:
    pass


@dataclass(frozen=True)
class UploadStarted:
    image: bytes


@dataclass(frozen=True)
class DetectionSucceeded:
    faces: Tuple[DetectedFace, ...]
    image_mime: str = "image/jpeg"


@dataclass(frozen=True)
class DetectionFailed:
    error: str


@dataclass(frozen=True)
class FaceSelected:
    face: DetectedFace


@dataclass(frozen=True)
class SearchSucceeded:
    results: Tuple[SearchResult, ...]
    pagination: Pagination
    query_image_url: Optional[str]
    embedding: Tuple[float, ...]
    duration_ms: float


@dataclass(frozen=True)
class SearchFailed:
    error: str


@dataclass(frozen=True)
class PageChangeStarted:
    page: int


@dataclass(frozen=True)
class PageChangeSucceeded:
    results: Tuple[SearchResult, ...]
    pagination: Pagination
    duration_ms: float


@dataclass(frozen=True)
class PageChangeFailed:
    error: str


Event = Union[
    Reset, UploadStarted, DetectionSucceeded, DetectionFailed, FaceSelected,
    SearchSucceeded, SearchFailed, PageChangeStarted, PageChangeSucceeded, PageChangeFailed,
]


def reduce(state: WorkflowState, event: Event) -> WorkflowState:
    """Next state for ``event``; events that make no sense in the current step are ignored."""
    if isinstance(event, Reset):
        return INITIAL_STATE

    if isinstance(event, UploadStarted):
        # A new upload discards everything from the previous session
        return replace(INITIAL_STATE, step=Step.DETECTING, image=event.image)

    step = state.step

    if step is Step.DETECTING:
        if isinstance(event, DetectionSucceeded):
            faces = tuple(event.faces)
            state = replace(state, image_mime=event.image_mime)
            if not faces:
                return replace(state, step=Step.UPLOAD, faces=(), error=NO_FACES_MESSAGE)
            if len(faces) == 1:
                return replace(state, step=Step.SEARCHING, faces=faces, selected_face=faces[0],
                               error=None, search_duration_ms=None)
            return replace(state, step=Step.SELECT, faces=faces, error=None)
        if isinstance(event, DetectionFailed):
            return replace(state, step=Step.UPLOAD, error=event.error)
        return state

    if step is Step.SELECT:
        if isinstance(event, FaceSelected) and event.face in state.faces:
            return replace(state, step=Step.SEARCHING, selected_face=event.face,
                           error=None, search_duration_ms=None)
        return state

    if step is Step.SEARCHING:
        if isinstance(event, SearchSucceeded):
            return replace(
                state,
                step=Step.RESULTS,
                error=None,
                results=tuple(event.results),
                pagination=event.pagination,
                query_image_url=event.query_image_url,
                embedding=tuple(event.embedding),
                page_loading=False,
                search_duration_ms=event.duration_ms,
            )
        if isinstance(event, SearchFailed):
            # Faces are kept so the user can pick again
            return replace(state, step=Step.SELECT, error=event.error, page_loading=False)
        return state

    if step is Step.RESULTS:
        if isinstance(event, PageChangeStarted):
            return replace(state, error=None, page_loading=True)
        if isinstance(event, PageChangeSucceeded):
            return replace(
                state,
                error=None,
                results=tuple(event.results),
                pagination=event.pagination,
                page_loading=False,
                search_duration_ms=event.duration_ms,
            )
        if isinstance(event, PageChangeFailed):
            return replace(state, error=event.error, page_loading=False)
        return state

    return state


def to_data_url(data: bytes, mime: str = "image/jpeg") -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def decode_upload(data: bytes) -> Tuple[np.ndarray, str]:
    """
    Decode uploaded bytes into an upright BGR array and the image's MIME type.

    The PIL handle is closed on every path.
    """
    try:
        with Image.open(BytesIO(data)) as im:
            mime = Image.MIME.get(im.format, "image/jpeg")
            upright = ImageOps.exif_transpose(im)
            rgb = np.array(upright.convert("RGB"))
    except (UnidentifiedImageError, OSError) as e:
        raise ValueError("Failed to load image") from e
    return cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR), mime


class SearchWorkflow:
    """
    Drives one user session through the search flow.

    ``detector`` needs ``detect(img_bgr) -> list[DetectedFace]``; ``search``
    is a FaceSearchService (``search_image`` / ``search_vector``). Operations
    of one session run one at a time, except page changes, where a newer
    request cancels the one still in flight.
    """

    def __init__(self, detector, search, *, limit: int = 25, threshold: float = 0.6):
        self.detector = detector
        self.search = search
        self.limit = limit
        self.threshold = threshold
        self._state = INITIAL_STATE
        self._generation = 0
        self._page_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> WorkflowState:
        return self._state

    def _dispatch(self, event: Event, generation: int) -> bool:
        if generation != self._generation:
            # Outcome of work abandoned by a reset or a newer upload
            logger.debug(f"Dropping stale {type(event).__name__}")
            return False
        previous = self._state.step
        self._state = reduce(self._state, event)
        if self._state.step is not previous:
            log_event("workflow_transition", event=type(event).__name__,
                      from_step=previous.value, to_step=self._state.step.value)
        return True

    def new_search(self) -> WorkflowState:
        self._generation += 1
        self._dispatch(Reset(), self._generation)
        return self._state

    async def upload(self, image: bytes) -> WorkflowState:
        self._generation += 1
        generation = self._generation
        self._dispatch(UploadStarted(image), generation)

        try:
            faces, mime = await self._detect(image)
        except FaceSearchError as e:
            self._dispatch(DetectionFailed(e.message), generation)
            return self._state
        except Exception as e:
            logger.warning(f"Face detection failed: {e}")
            self._dispatch(DetectionFailed(str(e) or "Failed to process image"), generation)
            return self._state

        log_event("faces_detected", count=len(faces))
        if self._dispatch(DetectionSucceeded(tuple(faces), mime), generation) and self._state.step is Step.SEARCHING:
            await self._search_selected(generation)
        return self._state

    async def _detect(self, image: bytes) -> Tuple[List[DetectedFace], str]:
        img_bgr, mime = await asyncio.to_thread(decode_upload, image)
        faces = await asyncio.to_thread(self.detector.detect, img_bgr)
        return faces, mime

    async def select_face(self, face_id: str) -> WorkflowState:
        if self._state.step is not Step.SELECT:
            return self._state
        face = next((f for f in self._state.faces if f.id == face_id), None)
        if face is None:
            return self._state
        generation = self._generation
        self._dispatch(FaceSelected(face), generation)
        await self._search_selected(generation)
        return self._state

    async def _search_selected(self, generation: int) -> None:
        state = self._state
        face = state.selected_face
        full_image = to_data_url(state.image, state.image_mime or "image/jpeg") if state.image else None
        started = time.perf_counter()
        try:
            outcome = await self.search.search_image(
                face.crop_image, full_image, limit=self.limit, threshold=self.threshold, page=1,
            )
        except FaceSearchError as e:
            self._dispatch(SearchFailed(e.message), generation)
            return
        except Exception as e:
            logger.error(f"Search failed: {e}")
            self._dispatch(SearchFailed(SEARCH_FAILED_MESSAGE), generation)
            return
        duration_ms = round((time.perf_counter() - started) * 1000, 1)
        self._dispatch(SearchSucceeded(
            results=tuple(outcome.page.results),
            pagination=outcome.page.pagination,
            query_image_url=outcome.thumbnail_url,
            embedding=tuple(outcome.embedding),
            duration_ms=duration_ms,
        ), generation)

    async def change_page(self, page: int) -> WorkflowState:
        """
        Load another page of the current results without re-embedding.

        A newer call cancels an older one still in flight; the superseded
        caller gets the state as it stands.
        """
        state = self._state
        if state.step is not Step.RESULTS or state.embedding is None or state.pagination is None:
            return state
        page = clamp_page(page, state.pagination.total_pages)

        previous = self._page_task
        if previous is not None and not previous.done():
            previous.cancel()
        task = asyncio.create_task(self._load_page(page, self._generation))
        self._page_task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        if not task.cancelled():
            task.result()
        return self._state

    async def _load_page(self, page: int, generation: int) -> None:
        embedding = self._state.embedding
        self._dispatch(PageChangeStarted(page), generation)
        started = time.perf_counter()
        try:
            result = await self.search.search_vector(
                embedding, limit=self.limit, threshold=self.threshold, page=page,
            )
        except FaceSearchError as e:
            self._dispatch(PageChangeFailed(e.message), generation)
            return
        except Exception as e:
            logger.error(f"Page change failed: {e}")
            self._dispatch(PageChangeFailed(SEARCH_FAILED_MESSAGE), generation)
            return
        duration_ms = round((time.perf_counter() - started) * 1000, 1)
        self._dispatch(PageChangeSucceeded(
            results=tuple(result.results),
            pagination=result.pagination,
            duration_ms=duration_ms,
        ), generation)
