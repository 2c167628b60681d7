import os
from dotenv import load_dotenv
import logging

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Load .env file if it exists (for local development)
env_path = os.path.join(os.path.dirname(__file__), "..", ".env")
if os.path.exists(env_path):
    load_dotenv(env_path)
    logger.info("Loaded .env file for local development")
else:
    logger.info("No .env file found, using environment variables")

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

STABILITY_API_KEY = os.getenv("STABILITY_API_KEY", "")
STABILITY_API_HOST = os.getenv("STABILITY_API_HOST", "https://api.stability.ai").rstrip("/")
STABILITY_ENGINE = os.getenv("STABILITY_ENGINE", "stable-diffusion-xl-1024-v1-0")

# Generated panels land in GENERATED_DIR/<job_id>/panel_NN.<ext>
GENERATED_DIR = os.getenv(
    "GENERATED_DIR",
    os.path.join(os.path.dirname(__file__), "..", "public", "generated"),
)
GENERATED_URL_PREFIX = os.getenv("GENERATED_URL_PREFIX", "/generated")

# Pause between panels to stay under upstream rate limits
PANEL_DELAY_S = float(os.getenv("PANEL_DELAY_S", "1.0"))
# Upper bound on any single text/image generation call
EXTERNAL_CALL_TIMEOUT_S = float(os.getenv("EXTERNAL_CALL_TIMEOUT_S", "120"))
# A job whose record has not been updated for this long is treated as orphaned.
# Between two progress updates a panel makes two external calls plus the delay.
STALE_JOB_AFTER_S = float(os.getenv(
    "STALE_JOB_AFTER_S", str(2 * EXTERNAL_CALL_TIMEOUT_S + PANEL_DELAY_S + 60)
))

MAX_PANELS = int(os.getenv("MAX_PANELS", "12"))

KV_REST_API_URL = os.getenv("KV_REST_API_URL", "").rstrip("/")
KV_REST_API_TOKEN = os.getenv("KV_REST_API_TOKEN", "")

# Comma-separated list of allowed origins for CORS (e.g., "https://app.vercel.app,https://www.example.com").
_allowed_origins_env = os.getenv("ALLOWED_ORIGINS", "").strip()
if _allowed_origins_env:
    ALLOWED_ORIGINS = [o.strip() for o in _allowed_origins_env.split(",") if o.strip()]
else:
    ALLOWED_ORIGINS = ["*"]

def has_all_keys() -> bool:
    keys_present = all([OPENAI_API_KEY, STABILITY_API_KEY])
    if not keys_present:
        missing = []
        if not OPENAI_API_KEY: missing.append("OPENAI_API_KEY")
        if not STABILITY_API_KEY: missing.append("STABILITY_API_KEY")
        logger.warning(f"Missing API keys: {', '.join(missing)}")
    return keys_present
