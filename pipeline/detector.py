from __future__ import annotations
import base64
import logging
import threading
from typing import List, Tuple

import numpy as np
import cv2

from config.settings import Settings, settings as default_settings
from pipeline.errors import ModelNotReady
from pipeline.types import BoundingBox, DetectedFace

logger = logging.getLogger(__name__)


def compute_square_crop(
    bbox: BoundingBox,
    image_width: float,
    image_height: float,
    padding: float = 0.4,
) -> Tuple[float, float, float]:
    """
    Square crop centered on the face box, padded on every side by ``padding``
    times the longer box edge and shrunk so it never leaves the image.

    Returns (x, y, size) of the crop in image pixels.
    """
    cx, cy = bbox.center
    size = max(bbox.width, bbox.height) * (1 + padding * 2)
    max_size = min(
        cx * 2,
        (image_width - cx) * 2,
        cy * 2,
        (image_height - cy) * 2,
        image_width,
        image_height,
    )
    size = max(min(size, max_size), 0.0)
    return cx - size / 2, cy - size / 2, size


def crop_square(img_bgr: np.ndarray, x: float, y: float, size: float, out_size: int) -> np.ndarray:
    """Resample the (possibly sub-pixel) square [x, x+size) x [y, y+size) to out_size x out_size."""
    if size <= 0:
        raise ValueError("Crop size must be positive")
    scale = out_size / size
    m = np.array([[scale, 0.0, -x * scale], [0.0, scale, -y * scale]], dtype=np.float32)
    return cv2.warpAffine(img_bgr, m, (out_size, out_size), flags=cv2.INTER_LINEAR,
                          borderMode=cv2.BORDER_REPLICATE)


def encode_jpeg_data_url(img_bgr: np.ndarray, quality: int = 90) -> str:
    ok, enc = cv2.imencode(".jpg", img_bgr, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not ok:
        raise ValueError("Failed to encode face crop")
    return "data:image/jpeg;base64," + base64.b64encode(enc.tobytes()).decode("ascii")


class FaceDetector:
    """
    InsightFace-backed face detector producing padded square crops.

    ``load()`` must complete before ``detect()``; the model pack is loaded once
    per instance and guarded by a lock so concurrent loaders share it.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or default_settings
        self._app = None
        self._lock = threading.Lock()

    @property
    def is_ready(self) -> bool:
        return self._app is not None

    def load(self) -> None:
        if self._app is not None:
            return
        with self._lock:
            if self._app is not None:
                return
            from insightface.app import FaceAnalysis

            providers = self.settings.onnx_providers
            app = FaceAnalysis(name=self.settings.INSIGHTFACE_PACK, providers=providers,
                               allowed_modules=["detection"])
            ctx_id = 0 if "CUDAExecutionProvider" in providers else -1
            app.prepare(ctx_id=ctx_id, det_size=self.settings.det_size)
            self._app = app
            logger.info(f"Face detector ready: pack={self.settings.INSIGHTFACE_PACK}, providers={providers}")

    def detect_boxes(self, img_bgr: np.ndarray) -> List[Tuple[BoundingBox, float]]:
        """Run the detector -> [(bbox, confidence)] above the configured confidence."""
        if self._app is None:
            raise ModelNotReady()
        out: List[Tuple[BoundingBox, float]] = []
        for f in self._app.get(img_bgr):
            score = float(getattr(f, "det_score", 1.0))
            if score < self.settings.DETECT_MIN_CONFIDENCE:
                continue
            x1, y1, x2, y2 = [float(v) for v in f.bbox.tolist()]
            out.append((BoundingBox(x=x1, y=y1, width=x2 - x1, height=y2 - y1), score))
        return out

    def detect(self, img_bgr: np.ndarray) -> List[DetectedFace]:
        """
        Detect faces in a BGR image.

        Returns one DetectedFace per region, ids ``face-<index>`` in detector
        order. An image without faces yields an empty list.
        """
        if img_bgr is None or img_bgr.ndim != 3:
            raise ValueError("Expected a decoded BGR image")
        height, width = img_bgr.shape[:2]
        faces: List[DetectedFace] = []
        for index, (bbox, score) in enumerate(self.detect_boxes(img_bgr)):
            x, y, size = compute_square_crop(bbox, width, height, self.settings.CROP_PADDING)
            if size <= 0:
                logger.debug(f"Skipping face-{index}: box center outside image")
                continue
            crop = crop_square(img_bgr, x, y, size, self.settings.CROP_SIZE)
            faces.append(DetectedFace(
                id=f"face-{index}",
                bbox=bbox,
                confidence=min(max(score, 0.0), 1.0),
                crop_image=encode_jpeg_data_url(crop, self.settings.CROP_JPEG_QUALITY),
            ))
        return faces
