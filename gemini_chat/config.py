from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

BASE_DIR = Path(__file__).resolve().parent

DEFAULT_MAX_ATTACHMENT_BYTES = 10 * 1024 * 1024
DEFAULT_ALLOWED_MIME_TYPES = (
    "image/png",
    "image/jpeg",
    "image/webp",
    "image/heic",
    "image/heif",
)


@dataclass(frozen=True)
class Settings:
    """Configuration container for credentials, storage, and attachment limits."""
    gemini_api_key: str
    default_model: str
    data_dir: Path
    sessions_key: str
    max_attachment_bytes: int
    allowed_mime_types: Tuple[str, ...]
    log_level: str


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables only; nothing is created on disk.
    Dependencies: Uses os.getenv and BASE_DIR for the default data directory.
    Failure Modes: Invalid MAX_ATTACHMENT_BYTES raises ValueError.
    If Removed: App cannot locate credentials or storage and fails at startup.
    Testing Notes: Verify defaults and overrides via environment variables.
    """
    # Resolve data directory and attachment policy, then build Settings.
    data_dir = os.getenv("DATA_DIR")
    data_path = Path(data_dir) if data_dir else (BASE_DIR / "data").resolve()

    allowed = os.getenv("ALLOWED_ATTACHMENT_TYPES")
    if allowed:
        allowed_types = tuple(item.strip() for item in allowed.split(",") if item.strip())
    else:
        allowed_types = DEFAULT_ALLOWED_MIME_TYPES

    return Settings(
        gemini_api_key=os.getenv("GEMINI_API_KEY") or os.getenv("API_KEY", ""),
        default_model=os.getenv("GEMINI_MODEL", "gemini-3-flash-preview"),
        data_dir=data_path,
        sessions_key=os.getenv("SESSIONS_KEY", "gemini_chat_sessions"),
        max_attachment_bytes=int(os.getenv("MAX_ATTACHMENT_BYTES", str(DEFAULT_MAX_ATTACHMENT_BYTES))),
        allowed_mime_types=allowed_types,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
