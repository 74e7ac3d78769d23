import os
import logging
from pathlib import Path

from dotenv import load_dotenv

# ────────────────────────────────────────────────────────────────────────────
# Env & Config
# ────────────────────────────────────────────────────────────────────────────
load_dotenv()

BASE_DIR = Path(__file__).resolve().parent

APP_VERSION     = os.getenv("BLAZE_APP_VERSION", "4.20")
APP_NAME        = "Blaze Restaurant"
SITE_ORIGIN     = os.getenv("SITE_ORIGIN", "http://localhost:8000").rstrip("/")

PAGE_CACHE_MAX  = int(os.getenv("PAGE_CACHE_MAX", "15"))
FETCH_TIMEOUT_S = float(os.getenv("FETCH_TIMEOUT_S", "8"))

# Offline cache namespaces are "<CACHE_PREFIX>v<version>"
CACHE_PREFIX    = os.getenv("CACHE_PREFIX", "blaze-restaurant-cache-")

CLIENT_STATE_DB  = os.getenv("CLIENT_STATE_DB", str(BASE_DIR / "data" / "client_state.db"))
OFFLINE_CACHE_DB = os.getenv("OFFLINE_CACHE_DB", str(BASE_DIR / "data" / "offline_cache.db"))
CONTACTS_DB_PATH = os.getenv("CONTACTS_DB_PATH", str(BASE_DIR / "data" / "contacts.db"))
PAGES_DIR        = Path(os.getenv("PAGES_DIR", str(BASE_DIR / "pages")))

ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "")

ALLOWED_ORIGINS    = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "*").split(",")]
RATE_LIMIT_PER_MIN = int(os.getenv("RATE_LIMIT_PER_MIN", "60"))
ADMIN_PAGE_SIZE    = int(os.getenv("ADMIN_PAGE_SIZE", "10"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Assets the offline worker stores on install
CORE_ASSETS = [
    "./",
    "./index.html",
    "./styles/main.css",
    "./scripts/main.js",
    "./version.js",
    "./styles.css",
    "./script.js",
    "./assets/Blaze PNG 3.svg",
    "./manifest.json",
]

# Logging
log = logging.getLogger("uvicorn.error")


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Attach a basic handler when running outside uvicorn (scripts, tests)."""
    if not log.handlers and not logging.getLogger().handlers:
        logging.basicConfig(format="%(asctime)s %(levelname)s %(message)s")
    log.setLevel(level)
