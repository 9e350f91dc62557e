"""Configuration for the license scrape queue."""
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent
LOGS_DIR = BASE_DIR / "logs"
LOGS_DIR.mkdir(exist_ok=True)

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
BETTERSTACK_SOURCE_TOKEN = os.getenv("BETTERSTACK_SOURCE_TOKEN")
BETTERSTACK_INGEST_HOST = os.getenv("BETTERSTACK_INGEST_HOST")

# Database connection
DATABASE_URL = os.getenv("DATABASE_URL")

# Fast rate-limit tier (falls back to in-process memory when unset)
REDIS_URL = os.getenv("REDIS_URL")

# Spool queue and checkpoints
SPOOL_DIR = Path(os.getenv("SPOOL_DIR", str(BASE_DIR / "spool")))
CHECKPOINT_DIR = Path(os.getenv("CHECKPOINT_DIR", str(BASE_DIR / "checkpoints")))
INFLIGHT_VISIBILITY_SECONDS = int(os.getenv("INFLIGHT_VISIBILITY_SECONDS", "600"))

# Scrape collaborator
SCRAPER_BASE_URL = os.getenv("SCRAPER_BASE_URL")
SCRAPER_API_TOKEN = os.getenv("SCRAPER_API_TOKEN")
SCRAPER_TIMEOUT_SECONDS = float(os.getenv("SCRAPER_TIMEOUT_SECONDS", "45"))
SCRAPER_RESULT_LIMIT = int(os.getenv("SCRAPER_RESULT_LIMIT", "50"))

# Consumer settings
POLL_INTERVAL = int(os.getenv("POLL_INTERVAL", "5"))  # seconds between empty polls
BATCH_SIZE = int(os.getenv("BATCH_SIZE", "10"))
BATCH_TIMEOUT_SECONDS = float(os.getenv("BATCH_TIMEOUT_SECONDS", "300"))
MAX_RETRIES = int(os.getenv("MAX_RETRIES", "3"))
RETRY_BASE_DELAY_SECONDS = float(os.getenv("RETRY_BASE_DELAY_SECONDS", "3600"))
RETRY_MAX_DELAY_SECONDS = float(os.getenv("RETRY_MAX_DELAY_SECONDS", str(32 * 3600)))
STORAGE_RETRY_ATTEMPTS = int(os.getenv("STORAGE_RETRY_ATTEMPTS", "3"))
STORAGE_RETRY_DELAY_SECONDS = float(os.getenv("STORAGE_RETRY_DELAY_SECONDS", "0.5"))
STUCK_PROCESSING_MINUTES = int(os.getenv("STUCK_PROCESSING_MINUTES", "30"))
CONSUMER_VERSION = os.getenv("CONSUMER_VERSION", "1.0.0")

# Rate limiting
DEFAULT_REQUESTS_PER_SECOND = float(os.getenv("DEFAULT_REQUESTS_PER_SECOND", "1.0"))
MAX_RATE_LIMIT_WAIT_SECONDS = float(os.getenv("MAX_RATE_LIMIT_WAIT_SECONDS", "30"))
RATE_LIMIT_CONFIG_TTL_SECONDS = float(os.getenv("RATE_LIMIT_CONFIG_TTL_SECONDS", "5"))
SITE_UNAVAILABLE_THROTTLE_SECONDS = int(os.getenv("SITE_UNAVAILABLE_THROTTLE_SECONDS", "300"))

# Seeder
SEED_MODE = os.getenv("SEED_MODE", "production")
SEED_TARGETS_FILE = os.getenv("SEED_TARGETS_FILE")
SEED_FRESHNESS_HOURS = float(os.getenv("SEED_FRESHNESS_HOURS", "24"))
SEED_PUBLISH_BATCH_SIZE = int(os.getenv("SEED_PUBLISH_BATCH_SIZE", "100"))
SEED_BATCH_PAUSE_SECONDS = float(os.getenv("SEED_BATCH_PAUSE_SECONDS", "1"))
SEED_SCHEDULE_ENABLED = os.getenv("SEED_SCHEDULE_ENABLED", "false").lower() in ("1", "true", "yes")
SEED_INTERVAL_HOURS = float(os.getenv("SEED_INTERVAL_HOURS", "24"))
DEFAULT_PRIORITY = int(os.getenv("DEFAULT_PRIORITY", "5"))
DEFAULT_CATEGORY = os.getenv("DEFAULT_CATEGORY", "real_estate")

# Monitoring endpoints
HEALTH_HOST = os.getenv("HEALTH_HOST", "0.0.0.0")
HEALTH_PORT = int(os.getenv("HEALTH_PORT", "8080"))
STATS_LOG_LIMIT = int(os.getenv("STATS_LOG_LIMIT", "20"))


def validate_config():
    """Validate required configuration."""
    errors = []

    if not DATABASE_URL:
        errors.append("DATABASE_URL is required")

    if not SCRAPER_BASE_URL:
        errors.append("SCRAPER_BASE_URL is required")
    elif not SCRAPER_BASE_URL.startswith(("http://", "https://")):
        errors.append(f"SCRAPER_BASE_URL must be an http(s) URL: {SCRAPER_BASE_URL}")

    if MAX_RETRIES < 0:
        errors.append(f"MAX_RETRIES must be non-negative: {MAX_RETRIES}")

    if DEFAULT_REQUESTS_PER_SECOND <= 0:
        errors.append(f"DEFAULT_REQUESTS_PER_SECOND must be positive: {DEFAULT_REQUESTS_PER_SECOND}")

    if SEED_TARGETS_FILE and not Path(SEED_TARGETS_FILE).is_file():
        errors.append(f"SEED_TARGETS_FILE does not exist: {SEED_TARGETS_FILE}")

    for path in (SPOOL_DIR, CHECKPOINT_DIR):
        try:
            path.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            errors.append(f"Cannot create {path}: {e}")

    if errors:
        raise ValueError("Config errors:\n  " + "\n  ".join(errors))
