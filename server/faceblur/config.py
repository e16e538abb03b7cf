"""
Configuration loaded from environment variables.

Every tunable of the pipeline lives here so the components can be built
from one `Settings` instance (tests build their own with short delays).
"""

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FingerprintKind(str, Enum):
    """Fingerprint strategy, chosen once per deployment."""
    HASH = "hash"            # 64-bit landmark hash + normalized landmarks
    EMBEDDING = "embedding"  # dense identity vector from the detector


class DistanceMetric(str, Enum):
    """Supported distance metrics for embedding comparison."""
    EUCLIDEAN = "euclidean"  # L2 norm - dlib default, recommended
    MANHATTAN = "manhattan"  # L1 norm - robust to outliers
    COSINE = "cosine"        # Angular similarity


class CensorMethod(str, Enum):
    """How a suppressed image is rendered."""
    GAUSSIAN_BLUR = "blur"
    PIXELATE = "pixelate"
    BLACK_BAR = "black_bar"


class Settings(BaseSettings):
    """
    All pipeline settings. Durations are in seconds.

    Tunables are read from `FACEBLUR_<FIELD>` variables; the storage and
    logging settings keep their unprefixed names.
    """
    model_config = SettingsConfigDict(
        frozen=True,
        env_prefix="FACEBLUR_",
        populate_by_name=True,
        case_sensitive=False,
        extra="ignore",
    )

    database_url: str = Field(default="sqlite:///./faceblur.db", validation_alias="DATABASE_URL")
    encryption_key: Optional[str] = Field(default=None, validation_alias="ENCRYPTION_KEY")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    reference_dir: str = "./known_faces"

    fingerprint_kind: FingerprintKind = Field(default=FingerprintKind.HASH, validation_alias="FACEBLUR_FINGERPRINT")
    distance_metric: DistanceMetric = DistanceMetric.EUCLIDEAN
    match_threshold: Optional[float] = Field(None, gt=0.0)
    hash_gate: float = Field(0.3, gt=0.0, le=1.0)
    landmark_threshold: float = Field(0.15, gt=0.0)

    max_concurrent: int = Field(5, ge=1)
    batch_delay: float = Field(0.05, ge=0.0)
    min_image_size: int = Field(80, ge=0)
    debounce: float = Field(0.3, ge=0.0)
    load_poll_interval: float = Field(0.5, gt=0.0)
    load_max_attempts: int = Field(10, ge=1)
    settle_delay: float = Field(0.5, ge=0.0)
    startup_delay: float = Field(1.0, ge=0.0)

    detector_model: str = "hog"
    censor_method: CensorMethod = CensorMethod.GAUSSIAN_BLUR
    blur_radius: int = Field(20, ge=1)
    strict_contracts: bool = False


@lru_cache
def get_settings() -> Settings:
    """Return the cached settings instance."""
    return Settings()
