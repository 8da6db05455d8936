from pydantic import BaseModel, ConfigDict, field_validator
import os


"""
Face Search Configuration Settings

Loads configuration from environment variables using simple BaseModel approach.
"""

class Settings(BaseModel):
    model_config = ConfigDict(validate_default=True)

    # ----- Embedding service -----
    EMBEDDING_API_URL: str = os.getenv("EMBEDDING_API_URL", "http://localhost:5005")
    EMBEDDING_MODEL: str = os.getenv("EMBEDDING_MODEL", "Facenet512")
    EMBEDDING_DETECTOR_BACKEND: str = os.getenv("EMBEDDING_DETECTOR_BACKEND", "retinaface")
    EMBEDDING_ENFORCE_DETECTION: bool = os.getenv("EMBEDDING_ENFORCE_DETECTION", "false").lower() == "true"
    EMBEDDING_TIMEOUT_MS: int = int(os.getenv("EMBEDDING_TIMEOUT_MS", "10000"))
    # <= 0 disables the concurrency ceiling
    EMBEDDING_CONCURRENCY: int = int(os.getenv("EMBEDDING_CONCURRENCY", "4"))

    # ----- Qdrant -----
    QDRANT_URL: str = os.getenv("QDRANT_URL", "http://localhost:6333")
    QDRANT_API_KEY: str | None = os.getenv("QDRANT_API_KEY") or None
    QDRANT_COLLECTION: str = os.getenv("QDRANT_COLLECTION", "faces")
    VECTOR_DIM: int = int(os.getenv("VECTOR_DIM", "512"))

    # ----- Search -----
    SEARCH_MAX_FETCH: int = int(os.getenv("SEARCH_MAX_FETCH", "500"))
    SEARCH_DEFAULT_LIMIT: int = int(os.getenv("SEARCH_DEFAULT_LIMIT", "25"))
    SEARCH_DEFAULT_THRESHOLD: float = float(os.getenv("SEARCH_DEFAULT_THRESHOLD", "0.6"))
    SEARCH_MAX_LIMIT: int = int(os.getenv("SEARCH_MAX_LIMIT", "50"))
    SEARCH_MAX_PAGE: int = int(os.getenv("SEARCH_MAX_PAGE", "1000"))
    MAX_IMAGE_BYTES: int = int(os.getenv("MAX_IMAGE_BYTES", str(5 * 1024 * 1024)))

    # ----- Face Detection -----
    INSIGHTFACE_PACK: str = os.getenv("INSIGHTFACE_PACK", "buffalo_l")
    DET_SIZE: str = os.getenv("DET_SIZE", "640,640")
    DETECT_MIN_CONFIDENCE: float = float(os.getenv("DETECT_MIN_CONFIDENCE", "0.5"))
    ONNX_PROVIDERS_CSV: str = os.getenv("ONNX_PROVIDERS_CSV", "CPUExecutionProvider")
    CROP_SIZE: int = int(os.getenv("CROP_SIZE", "256"))
    CROP_PADDING: float = float(os.getenv("CROP_PADDING", "0.4"))
    CROP_JPEG_QUALITY: int = int(os.getenv("CROP_JPEG_QUALITY", "90"))

    # ----- Query image archive (MinIO) -----
    ARCHIVE_QUERY_IMAGES: bool = os.getenv("ARCHIVE_QUERY_IMAGES", "false").lower() == "true"
    minio_endpoint: str = os.getenv("MINIO_ENDPOINT", "localhost:9000")
    MINIO_EXTERNAL_ENDPOINT: str = os.getenv("MINIO_EXTERNAL_ENDPOINT", "")  # External URL for browser access
    MINIO_ACCESS_KEY: str = os.getenv("MINIO_ACCESS_KEY", "minioadmin")
    MINIO_SECRET_KEY: str = os.getenv("MINIO_SECRET_KEY", "minioadmin")
    MINIO_SECURE: bool = os.getenv("MINIO_SECURE", "false").lower() == "true"
    MINIO_BUCKET_QUERIES: str = os.getenv("MINIO_BUCKET_QUERIES", "search-queries")
    PRESIGN_TTL_SEC: int = int(os.getenv("PRESIGN_TTL_SEC", "600"))

    # ----- Logging -----
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # ----- CORS -----
    cors_origins: str = os.getenv("CORS_ORIGINS", "*")

    # ----- API Configuration -----
    api_host: str = os.getenv("API_HOST", "0.0.0.0")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_reload: bool = os.getenv("API_RELOAD", "false").lower() == "true"

    @field_validator("EMBEDDING_TIMEOUT_MS", "SEARCH_MAX_FETCH", "SEARCH_MAX_LIMIT",
                     "SEARCH_MAX_PAGE", "MAX_IMAGE_BYTES", "CROP_SIZE", "VECTOR_DIM")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("SEARCH_DEFAULT_THRESHOLD", "DETECT_MIN_CONFIDENCE")
    @classmethod
    def _unit_interval(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("must be within [0, 1]")
        return v

    @property
    def det_size(self) -> tuple[int, int]:
        try:
            w, h = self.DET_SIZE.split(",")
            return int(w), int(h)
        except ValueError:
            return 640, 640

    @property
    def onnx_providers(self) -> list[str]:
        return [p.strip() for p in self.ONNX_PROVIDERS_CSV.split(",") if p.strip()]


# Global settings instance
settings = Settings()
