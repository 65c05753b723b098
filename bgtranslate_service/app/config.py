# bgtranslate_service/app/config.py
import os
from pathlib import Path
from dotenv import load_dotenv

# Resolve BASE_DIR as the bgtranslate_service/ root (one level above app/)
BASE_DIR = Path(__file__).resolve().parents[1]

# Always load .env from the project root so settings work no matter
# which working directory uvicorn is started from.
load_dotenv(BASE_DIR / ".env")


def _get_env_boolean(var_name: str, default: bool) -> bool:
    """Helper to read boolean env vars."""
    return os.getenv(var_name, str(default)).lower() in ("true", "1", "t")


def _resolve_path(var_name: str, default: Path) -> Path:
    """Resolve env path; treat relative paths as BASE_DIR / value."""

    raw = os.getenv(var_name)
    if raw:
        p = Path(raw)
        return p if p.is_absolute() else BASE_DIR / p
    return default


# --- Core settings ---
LOG_DIR = _resolve_path("LOG_DIR", BASE_DIR / "logs")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
DB_URL = os.getenv("DB_URL", "sqlite:///bgtranslate.sqlite")

# Language the base content tables (cms_items, training_modules, ...) are written in
BASE_LANGUAGE = os.getenv("BASE_LANGUAGE", "pl")

# --- Store / pagination ---
FETCH_PAGE_SIZE = int(os.getenv("FETCH_PAGE_SIZE", 1000))
# Server-side cap on rows returned by a single select, like the hosted store
STORE_MAX_ROWS = int(os.getenv("STORE_MAX_ROWS", 1000))

# --- Job processing ---
BATCH_SIZE = int(os.getenv("BATCH_SIZE", 20))
BATCH_DELAY_SECONDS = float(os.getenv("BATCH_DELAY_SECONDS", 0.1))
# Must stay below the hosting platform's hard limit
JOB_TIME_BUDGET_SECONDS = float(os.getenv("JOB_TIME_BUDGET_SECONDS", 25))
JOB_WATCHDOG_SECONDS = float(os.getenv("JOB_WATCHDOG_SECONDS", 150))

# --- AI translation service (OpenAI-compatible chat completions) ---
AI_BASE_URL = os.getenv("AI_BASE_URL", "https://ai.gateway.lovable.dev/v1")
AI_API_KEY = os.getenv("AI_API_KEY")
AI_MODEL = os.getenv("AI_MODEL", "google/gemini-2.5-flash")
AI_TEMPERATURE = float(os.getenv("AI_TEMPERATURE", 0.3))
AI_TIMEOUT_SECONDS = float(os.getenv("AI_TIMEOUT_SECONDS", 60))
AI_MAX_RETRIES = int(os.getenv("AI_MAX_RETRIES", 2))
AI_BACKOFF_SECONDS = float(os.getenv("AI_BACKOFF_SECONDS", 2.0))

# --- Resume sweeper ---
RESUME_SWEEP_ENABLED = _get_env_boolean("RESUME_SWEEP_ENABLED", True)
RESUME_SWEEP_INTERVAL_SECONDS = float(os.getenv("RESUME_SWEEP_INTERVAL_SECONDS", 30))
STALE_JOB_SECONDS = float(os.getenv("STALE_JOB_SECONDS", 60))
