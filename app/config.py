import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_GEMINI_MODEL = "gemini-2.5-pro"
DEFAULT_TOGETHER_BASE_URL = "https://api.together.xyz/v1"
DEFAULT_IMAGE_MODEL = "black-forest-labs/FLUX.1-schnell-Free"
DEFAULT_REMBG_MODEL = "u2net"
DEFAULT_TIMEOUT = 120.0  # seconds


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, read once and passed into the services."""

    gemini_api_key: str | None = None
    gemini_model: str = DEFAULT_GEMINI_MODEL
    together_api_key: str | None = None
    together_base_url: str = DEFAULT_TOGETHER_BASE_URL
    image_model: str = DEFAULT_IMAGE_MODEL
    rembg_model: str = DEFAULT_REMBG_MODEL
    call_timeout: float = DEFAULT_TIMEOUT
    debug_dir: Path | None = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        debug_dir = os.getenv("FLYER_DEBUG_DIR")
        return cls(
            gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
            gemini_model=os.getenv("GEMINI_MODEL", DEFAULT_GEMINI_MODEL),
            together_api_key=os.getenv("TOGETHER_API_KEY") or None,
            together_base_url=os.getenv("TOGETHER_BASE_URL", DEFAULT_TOGETHER_BASE_URL),
            image_model=os.getenv("TOGETHER_IMAGE_MODEL", DEFAULT_IMAGE_MODEL),
            rembg_model=os.getenv("REMBG_MODEL", DEFAULT_REMBG_MODEL),
            call_timeout=float(os.getenv("EXTERNAL_CALL_TIMEOUT", str(DEFAULT_TIMEOUT))),
            debug_dir=Path(debug_dir) if debug_dir else None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@lru_cache
def get_settings() -> Settings:
    """Load `.env` once and return the shared settings."""
    load_dotenv()
    return Settings.from_env()
