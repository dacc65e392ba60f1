import os
from typing import List
from dataclasses import dataclass, field


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in {"1", "true", "yes"}


@dataclass
class APIConfig:
    """Configuration class for the Wardrobe Media API."""

    # API Settings
    title: str = "Wardrobe Media API"
    description: str = "Garment photo derivation and outfit snapshot rendering API"
    version: str = "1.0.0"

    # Server Settings
    host: str = "0.0.0.0"
    port: int = 7860
    workers: int = 1
    reload: bool = False

    # File Upload Settings
    max_upload_mb: int = 10
    max_upload_bytes: int = field(init=False)
    allowed_content_types: set = field(default_factory=lambda: {"image/jpeg", "image/png", "image/webp"})

    # Derivation Settings
    num_workers: int = 2
    cpu_threads: int = 4
    step_timeout_seconds: float = 30.0
    max_retries: int = 3
    optimized_max_edge: int = 1600
    thumbnail_max_edge: int = 300
    optimized_format: str = "PNG"
    thumbnail_format: str = "WEBP"
    thumbnail_quality: int = 80
    palette_size: int = 5
    fallback_color: str = "#cccccc"

    # Background Removal Settings
    background_remover: str = "rembg"
    rembg_model: str = "u2net"
    segformer_model: str = "mattmdjaga/segformer_b2_clothes"
    model_warmup_on_startup: bool = True

    # Blob Store Settings
    blob_backend: str = "local"
    blob_local_dir: str = "uploads"
    blob_public_url: str = "/uploads"
    s3_bucket: str = ""
    s3_endpoint_url: str = ""
    s3_region: str = "us-east-1"

    # Snapshot Settings
    canvas_width: int = 1000
    canvas_height: int = 1000
    max_layers: int = 30
    max_layer_scale: float = 4.0
    snapshot_format: str = "PNG"

    # CORS Settings
    allowed_origins: List[str] = field(default_factory=lambda: ["*"])

    # Logging Settings
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    def __post_init__(self):
        """Post-initialization to set computed fields and load from environment."""
        self.host = os.getenv("HOST", self.host)
        self.port = int(os.getenv("PORT", str(self.port)))
        self.workers = int(os.getenv("WORKERS", str(self.workers)))
        self.reload = _env_bool("RELOAD", self.reload)

        self.max_upload_mb = int(os.getenv("MAX_UPLOAD_MB", str(self.max_upload_mb)))
        self.max_upload_bytes = self.max_upload_mb * 1024 * 1024

        content_types_env = os.getenv("ALLOWED_CONTENT_TYPES")
        if content_types_env:
            self.allowed_content_types = {c.strip() for c in content_types_env.split(",") if c.strip()}

        self.num_workers = int(os.getenv("NUM_WORKERS", str(self.num_workers)))
        self.cpu_threads = int(os.getenv("CPU_THREADS", str(self.cpu_threads)))
        self.step_timeout_seconds = float(os.getenv("STEP_TIMEOUT_SECONDS", str(self.step_timeout_seconds)))
        self.max_retries = int(os.getenv("MAX_RETRIES", str(self.max_retries)))
        self.optimized_max_edge = int(os.getenv("OPTIMIZED_MAX_EDGE", str(self.optimized_max_edge)))
        self.thumbnail_max_edge = int(os.getenv("THUMBNAIL_MAX_EDGE", str(self.thumbnail_max_edge)))
        self.optimized_format = os.getenv("OPTIMIZED_FORMAT", self.optimized_format).upper()
        self.thumbnail_format = os.getenv("THUMBNAIL_FORMAT", self.thumbnail_format).upper()
        self.thumbnail_quality = int(os.getenv("THUMBNAIL_QUALITY", str(self.thumbnail_quality)))
        self.palette_size = int(os.getenv("PALETTE_SIZE", str(self.palette_size)))
        self.fallback_color = os.getenv("FALLBACK_COLOR", self.fallback_color)

        self.background_remover = os.getenv("BACKGROUND_REMOVER", self.background_remover).lower()
        self.rembg_model = os.getenv("REMBG_MODEL", self.rembg_model)
        self.segformer_model = os.getenv("SEGFORMER_MODEL", self.segformer_model)
        self.model_warmup_on_startup = _env_bool("MODEL_WARMUP_ON_STARTUP", self.model_warmup_on_startup)

        self.blob_backend = os.getenv("BLOB_BACKEND", self.blob_backend).lower()
        self.blob_local_dir = os.getenv("BLOB_LOCAL_DIR", self.blob_local_dir)
        self.blob_public_url = os.getenv("BLOB_PUBLIC_URL", self.blob_public_url)
        self.s3_bucket = os.getenv("S3_BUCKET", self.s3_bucket)
        self.s3_endpoint_url = os.getenv("S3_ENDPOINT_URL", self.s3_endpoint_url)
        self.s3_region = os.getenv("S3_REGION", self.s3_region)

        self.canvas_width = int(os.getenv("CANVAS_WIDTH", str(self.canvas_width)))
        self.canvas_height = int(os.getenv("CANVAS_HEIGHT", str(self.canvas_height)))
        self.max_layers = int(os.getenv("MAX_LAYERS", str(self.max_layers)))
        self.max_layer_scale = float(os.getenv("MAX_LAYER_SCALE", str(self.max_layer_scale)))
        self.snapshot_format = os.getenv("SNAPSHOT_FORMAT", self.snapshot_format).upper()

        origins_env = os.getenv("ALLOWED_ORIGINS")
        if origins_env and origins_env != "*":
            self.allowed_origins = [o.strip() for o in origins_env.split(",") if o.strip()]

        self.log_level = os.getenv("LOG_LEVEL", self.log_level)
        self.log_format = os.getenv("LOG_FORMAT", self.log_format)

    def validate(self) -> List[str]:
        """Validate configuration and return list of warnings/errors."""
        warnings = []

        if self.max_upload_mb < 1:
            warnings.append("MAX_UPLOAD_MB should be at least 1")

        if self.workers < 1:
            warnings.append("WORKERS should be at least 1")

        if self.num_workers < 1:
            warnings.append("NUM_WORKERS should be at least 1")

        if self.thumbnail_max_edge > self.optimized_max_edge:
            warnings.append("THUMBNAIL_MAX_EDGE is larger than OPTIMIZED_MAX_EDGE")

        if not 1 <= self.palette_size <= 5:
            warnings.append("PALETTE_SIZE should be between 1 and 5")

        if self.background_remover not in {"rembg", "segformer", "border"}:
            warnings.append(f"Unknown BACKGROUND_REMOVER '{self.background_remover}'")

        if self.blob_backend not in {"memory", "local", "s3"}:
            warnings.append(f"Unknown BLOB_BACKEND '{self.blob_backend}'")

        if self.blob_backend == "s3" and not self.s3_bucket:
            warnings.append("S3_BUCKET is required when BLOB_BACKEND=s3")

        if self.workers > 1 and self.blob_backend == "memory":
            warnings.append("In-memory blob store is not shared between server workers")

        return warnings


# Global configuration instance
config = APIConfig()

if __name__ == "__main__":
    warnings = config.validate()
    if warnings:
        print("Configuration warnings:")
        for warning in warnings:
            print(f"  - {warning}")
    else:
        print("Configuration is valid!")

    print(f"\nCurrent configuration:")
    print(f"  - File size limit: {config.max_upload_mb}MB")
    print(f"  - Background remover: {config.background_remover}")
    print(f"  - Blob backend: {config.blob_backend}")
    print(f"  - Derivation workers: {config.num_workers}")
