"""
Environment-driven configuration

Entry points call ``load_dotenv()`` first; everything here reads plain
``os.getenv`` values. Unparsable numbers fall back to the defaults with a warning.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Optional

from bucket_partitioner import BucketThresholds

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r}, using default {default}")
        return default
    if value < minimum:
        logger.warning(f"{name}={value} below minimum {minimum}, using default {default}")
        return default
    return value


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r}, using default {default}")
        return default
    if value < minimum:
        logger.warning(f"{name}={value} below minimum {minimum}, using default {default}")
        return default
    return value


@dataclass(frozen=True)
class PipelineSettings:
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.5-flash"
    fetch_concurrency: int = 12
    fetch_timeout_seconds: float = 15.0
    batch_timeout_seconds: float = 90.0
    refine_timeout_seconds: float = 45.0
    max_inline_images: int = 12
    max_return_images: int = 24
    thresholds: BucketThresholds = field(default_factory=BucketThresholds)

    @property
    def refinement_configured(self) -> bool:
        return bool(self.gemini_api_key)

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        """Read settings from the environment.

        Raises ValueError when the bucket thresholds contradict each other
        (confident must stay tighter than semiConfident).
        """
        defaults = BucketThresholds()
        thresholds = BucketThresholds(
            confident_max_distance=_env_int("CONFIDENT_MAX_DISTANCE", defaults.confident_max_distance),
            confident_min_composite=_env_float("CONFIDENT_MIN_COMPOSITE", defaults.confident_min_composite),
            packshot_max_distance=_env_int("PACKSHOT_MAX_DISTANCE", defaults.packshot_max_distance),
            semi_max_distance=_env_int("SEMI_MAX_DISTANCE", defaults.semi_max_distance),
            semi_min_composite=_env_float("SEMI_MIN_COMPOSITE", defaults.semi_min_composite),
            promote_count=_env_int("PROMOTE_COUNT", defaults.promote_count, minimum=1),
        )
        return cls(
            gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
            gemini_model=os.getenv("GEMINI_MODEL") or cls.gemini_model,
            fetch_concurrency=_env_int("FETCH_CONCURRENCY", cls.fetch_concurrency, minimum=1),
            fetch_timeout_seconds=_env_float("FETCH_TIMEOUT_SECONDS", cls.fetch_timeout_seconds, minimum=0.1),
            batch_timeout_seconds=_env_float("BATCH_TIMEOUT_SECONDS", cls.batch_timeout_seconds, minimum=0.1),
            refine_timeout_seconds=_env_float("REFINE_TIMEOUT_SECONDS", cls.refine_timeout_seconds, minimum=0.1),
            max_inline_images=_env_int("MAX_INLINE_IMAGES", cls.max_inline_images),
            max_return_images=_env_int("MAX_RETURN_IMAGES", cls.max_return_images, minimum=1),
            thresholds=thresholds,
        )


def log_level() -> str:
    return os.getenv("LOG_LEVEL", "INFO").upper()
