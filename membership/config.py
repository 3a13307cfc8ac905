"""Runtime configuration.

Every setting is a module constant with an environment override so the
dashboard starts without extra configuration. An optional ``.env`` next to
the working directory is loaded first.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parents[1]


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


# --- Record store ---
MEMBERS_PATH: Path = Path(os.getenv("MEMBERS_PATH", str(BASE_DIR / "data" / "members.csv")))
ANNOTATIONS_PATH: Path = Path(os.getenv("ANNOTATIONS_PATH", str(BASE_DIR / "data" / "member_annotations.csv")))

SPREADSHEET_ID: str = os.getenv("SPREADSHEET_ID", "")
MEMBERS_SHEET: str = os.getenv("MEMBERS_SHEET", "Expirations")
ANNOTATIONS_SHEET: str = os.getenv("ANNOTATIONS_SHEET", "Member_Annotations")
GOOGLE_CLIENT_ID: str = os.getenv("GOOGLE_CLIENT_ID", "")
GOOGLE_CLIENT_SECRET: str = os.getenv("GOOGLE_CLIENT_SECRET", "")
GOOGLE_REFRESH_TOKEN: str = os.getenv("GOOGLE_REFRESH_TOKEN", "")
GOOGLE_TOKEN_URI: str = "https://oauth2.googleapis.com/token"

# --- Annotation queue ---
ANNOTATION_BATCH_DELAY: float = float(os.getenv("ANNOTATION_BATCH_DELAY", "2.0"))
ANNOTATION_RETRY_DELAY: float = float(os.getenv("ANNOTATION_RETRY_DELAY", "5.0"))
ANNOTATION_MAX_RETRIES: int = int(os.getenv("ANNOTATION_MAX_RETRIES", "3"))

# --- AI classification ---
GEMINI_API_KEY: str = os.getenv("GEMINI_API_KEY", "")
GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
GEMINI_FALLBACK_MODELS: List[str] = _env_list("GEMINI_FALLBACK_MODELS", "gemini-1.5-flash,gemini-1.5-pro")
AI_DEMO_MODE: bool = _env_flag("AI_DEMO_MODE")
AI_RATE_LIMIT_DELAY: float = float(os.getenv("AI_RATE_LIMIT_DELAY", "1.0"))
AI_TIMEOUT_SECONDS: float = float(os.getenv("AI_TIMEOUT_SECONDS", "30"))
AI_TEMPERATURE: float = 0.3
AI_MAX_OUTPUT_TOKENS: int = 500

# --- API / UI ---
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS: List[str] = _env_list("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or LOG_LEVEL), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
