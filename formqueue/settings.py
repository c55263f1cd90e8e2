"""Configuration for the offline form queue."""
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Base paths (the checkout by default; set DATA_DIR and LOGS_DIR for an installed package)
BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data"))).expanduser()
LOGS_DIR = Path(os.getenv("LOGS_DIR", str(BASE_DIR / "logs"))).expanduser()
LOGS_DIR.mkdir(parents=True, exist_ok=True)

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
BETTERSTACK_SOURCE_TOKEN = os.getenv("BETTERSTACK_SOURCE_TOKEN")
BETTERSTACK_INGEST_HOST = os.getenv("BETTERSTACK_INGEST_HOST")

# Database connection (sqlite:///path or postgresql://...)
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DATA_DIR / 'queue.sqlite3'}")

# Remote endpoint
API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:3001")
REQUEST_TIMEOUT = int(os.getenv("REQUEST_TIMEOUT", "30"))
PING_TIMEOUT = int(os.getenv("PING_TIMEOUT", "5"))

# Sync settings
SYNC_INTERVAL = int(os.getenv("SYNC_INTERVAL", "30"))  # seconds between timer-driven passes
CONNECTIVITY_CHECK_INTERVAL = int(os.getenv("CONNECTIVITY_CHECK_INTERVAL", "5"))
MAX_RETRIES = int(os.getenv("MAX_RETRIES", "3"))
SWEEP_ORPHAN_BLOBS = os.getenv("SWEEP_ORPHAN_BLOBS", "true").lower() in ("1", "true", "yes")

# Form fields that must be present on every submission
REQUIRED_FIELDS = [f.strip() for f in os.getenv("REQUIRED_FIELDS", "title").split(",") if f.strip()]


def validate_config():
    """Validate required configuration."""
    errors = []

    if not DATABASE_URL:
        errors.append("DATABASE_URL is required")
    elif not DATABASE_URL.startswith(("sqlite:///", "postgres://", "postgresql://")):
        errors.append(f"DATABASE_URL must be a sqlite:/// or postgresql:// URL: {DATABASE_URL}")

    if not API_BASE_URL:
        errors.append("API_BASE_URL is required")
    elif not API_BASE_URL.startswith(("http://", "https://")):
        errors.append(f"API_BASE_URL must be an http(s) URL: {API_BASE_URL}")

    if MAX_RETRIES < 1:
        errors.append(f"MAX_RETRIES must be at least 1: {MAX_RETRIES}")

    if SYNC_INTERVAL < 1:
        errors.append(f"SYNC_INTERVAL must be at least 1: {SYNC_INTERVAL}")

    if errors:
        raise ValueError("Config errors:\n  " + "\n  ".join(errors))
