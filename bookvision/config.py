import os
import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


def _env(name: str, default: str) -> str:
    return os.getenv(name, default)


@dataclass
class Settings:
    data_dir: str = field(default_factory=lambda: os.path.abspath(_env("DATA_DIR", "./data")))
    fal_key: str = field(default_factory=lambda: os.getenv("FAL_KEY") or os.getenv("FAL_API_KEY", ""))

    queue_url: str = field(default_factory=lambda: _env("FAL_QUEUE_URL", "https://queue.fal.run"))
    run_url: str = field(default_factory=lambda: _env("FAL_RUN_URL", "https://fal.run"))
    storage_url: str = field(default_factory=lambda: _env("FAL_STORAGE_URL", "https://rest.alpha.fal.ai"))
    training_endpoint: str = field(default_factory=lambda: _env("FAL_TRAINING_ENDPOINT", "fal-ai/flux-lora-fast-training"))
    image_endpoint: str = field(default_factory=lambda: _env("FAL_IMAGE_ENDPOINT", "fal-ai/flux-lora"))
    # flux-lora only returns images; video requests need FAL_VIDEO_ENDPOINT pointed at a
    # LoRA-capable video model that answers with `video.url`, or they fail as no-result.
    video_endpoint: str = field(default_factory=lambda: _env("FAL_VIDEO_ENDPOINT", "fal-ai/flux-lora"))
    request_timeout: float = field(default_factory=lambda: float(_env("REQUEST_TIMEOUT", "60")))

    poll_interval: float = field(default_factory=lambda: float(_env("POLL_INTERVAL", "5.0")))
    seconds_per_step: float = field(default_factory=lambda: float(_env("SECONDS_PER_STEP", "2.0")))
    max_progress: float = field(default_factory=lambda: float(_env("MAX_PROGRESS", "95")))

    min_examples: int = field(default_factory=lambda: int(_env("MIN_TRAINING_EXAMPLES", "10")))
    min_description_length: int = field(default_factory=lambda: int(_env("MIN_DESCRIPTION_LENGTH", "10")))
    max_description_length: int = field(default_factory=lambda: int(_env("MAX_DESCRIPTION_LENGTH", "500")))

    lora_scale: float = field(default_factory=lambda: float(_env("LORA_SCALE", "0.8")))
    storage_namespace: str = field(default_factory=lambda: _env("STORAGE_NAMESPACE", "book-vision"))
    max_job_dirs: int = field(default_factory=lambda: int(_env("MAX_JOB_DIRS", "6")))
    # 0 disables the startup sweep of old uploads
    asset_max_age_days: float = field(default_factory=lambda: float(_env("ASSET_MAX_AGE_DAYS", "0")))

    def __post_init__(self):
        logger.info("Data dir: %s", self.data_dir)
        logger.info("Training endpoint: %s", self.training_endpoint)
        if not self.fal_key:
            logger.warning("FAL_KEY is not set; remote calls will fail")
        if self.video_endpoint == self.image_endpoint:
            logger.warning("FAL_VIDEO_ENDPOINT is the image model %s; video requests will fail", self.video_endpoint)
