import logging
import json
import os
from pythonjsonlogger import jsonlogger

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Never written to logs verbatim
_REDACTED_KEYS = (
    "image",
    "image_b64",
    "image_bytes",
    "image_data",
    "cropped_image_data",
    "full_image_data",
    "crop_image",
    "embedding",
    "embeddings",
    "vector",
)


def setup_logging():
    """
    Configure root logger to output structured JSON logs.
    Safe for both dev and production.
    """
    logger = logging.getLogger()
    logger.setLevel(LOG_LEVEL)

    # Remove duplicated handlers if reload happens (e.g. uvicorn reload)
    if logger.handlers:
        return

    handler = logging.StreamHandler()

    formatter = jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s"
    )

    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_event(event: str, level: int = logging.INFO, **fields):
    """
    Central safe logging function for structured logs.
    Does NOT log raw images, crops, or embeddings.
    """
    safe_fields = {}

    for key, value in fields.items():
        if key in _REDACTED_KEYS:
            safe_fields[key] = "[REDACTED]"
        else:
            # Convert un-serializable types to str if needed
            try:
                json.dumps(value)
                safe_fields[key] = value
            except (TypeError, ValueError):
                safe_fields[key] = str(value)

    logging.getLogger("facesearch").log(level, {"event": event, **safe_fields})
