"""Application settings and environment loading utilities."""
from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional


def _load_dotenv() -> None:
    env_path = Path(".env")
    if not env_path.exists():
        return
    for line in env_path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())


_load_dotenv()

BACKENDS = ("memory", "redis")
FAIL_MODES = ("closed", "open")


def _validate_non_empty(value: Optional[str], name: str) -> str:
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must be an integer, got {raw!r}") from exc


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, str(default))
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must be a number, got {raw!r}") from exc


def _choice_env(name: str, default: str, choices: tuple[str, ...]) -> str:
    value = os.getenv(name, default).strip().lower()
    if value not in choices:
        raise RuntimeError(f"Environment variable {name} must be one of {', '.join(choices)}")
    return value


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Runtime configuration derived from environment variables."""

    image_api_key: str
    image_api_base_url: str = "https://api.openai.com/v1"
    image_model: str = "gpt-image-1"
    image_size: str = "1024x1024"
    image_variants: int = 3
    image_timeout_seconds: float = 120.0
    max_upload_bytes: int = 10 * 1024 * 1024
    rate_limit_minute_requests: int = 3
    rate_limit_minute_window_seconds: int = 60
    rate_limit_day_requests: int = 20
    rate_limit_day_window_seconds: int = 86400
    rate_limit_backend: str = "memory"
    rate_limit_fail_mode: str = "closed"
    redis_url: str = "redis://localhost:6379/0"
    redis_timeout_seconds: float = 0.5
    trust_forwarded_for: bool = True

    @property
    def images_endpoint(self) -> str:
        return f"{self.image_api_base_url.rstrip('/')}/images/edits"

    @classmethod
    def from_env(cls) -> "Settings":
        api_key = _validate_non_empty(os.getenv("IMAGE_API_KEY"), "IMAGE_API_KEY")
        backend = _choice_env("RATE_LIMIT_BACKEND", "memory", BACKENDS)
        fail_mode = _choice_env("RATE_LIMIT_FAIL_MODE", "closed", FAIL_MODES)
        redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
        if backend == "redis":
            redis_url = _validate_non_empty(redis_url, "REDIS_URL")

        return cls(
            image_api_key=api_key,
            image_api_base_url=os.getenv("IMAGE_API_BASE_URL", "https://api.openai.com/v1"),
            image_model=os.getenv("IMAGE_MODEL", "gpt-image-1"),
            image_size=os.getenv("IMAGE_SIZE", "1024x1024"),
            image_variants=_int_env("IMAGE_VARIANTS", 3),
            image_timeout_seconds=_float_env("IMAGE_TIMEOUT_SECONDS", 120.0),
            max_upload_bytes=_int_env("MAX_UPLOAD_BYTES", 10 * 1024 * 1024),
            rate_limit_minute_requests=_int_env("RATE_LIMIT_MINUTE_REQUESTS", 3),
            rate_limit_minute_window_seconds=_int_env("RATE_LIMIT_MINUTE_WINDOW_SECONDS", 60),
            rate_limit_day_requests=_int_env("RATE_LIMIT_DAY_REQUESTS", 20),
            rate_limit_day_window_seconds=_int_env("RATE_LIMIT_DAY_WINDOW_SECONDS", 86400),
            rate_limit_backend=backend,
            rate_limit_fail_mode=fail_mode,
            redis_url=redis_url,
            redis_timeout_seconds=_float_env("REDIS_TIMEOUT_SECONDS", 0.5),
            trust_forwarded_for=_bool_env("TRUST_FORWARDED_FOR", True),
        )


@lru_cache()
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings.from_env()
