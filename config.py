import os
import logging
from dotenv import load_dotenv

load_dotenv()

# Base directory of project (absolute path of current script)
BASE_DIR = os.path.abspath(os.path.dirname(__file__))

# Ensure 'instance' folder exists in the project root
INSTANCE_FOLDER_PATH = os.path.join(BASE_DIR, "instance")
os.makedirs(INSTANCE_FOLDER_PATH, exist_ok=True)

# Full absolute path for the default SQLite database file
DB_PATH = os.path.join(INSTANCE_FOLDER_PATH, "marketplace.db")


def _flag(name, default):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# Flask secret key (USE A STRONG, RANDOM ONE!)
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-me-before-deploying")

# Signing key for the session token; falls back to SECRET_KEY
JWT_SECRET = os.getenv("JWT_SECRET", SECRET_KEY)

# Google OAuth Credentials (ID tokens are verified against GOOGLE_CLIENT_ID)
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID", "")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET", "")
GOOGLE_DISCOVERY_URL = "https://accounts.google.com/.well-known/openid-configuration"

# Any SQLAlchemy URL; SQLite under instance/ when unset
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DB_PATH}")

# For upload folder
UPLOAD_FOLDER = os.getenv("UPLOAD_FOLDER", os.path.join(BASE_DIR, "uploads"))
os.makedirs(UPLOAD_FOLDER, exist_ok=True)  # Ensure uploads folder also exists

MAX_IMAGE_SIZE = 5 * 1024 * 1024  # per file
MAX_IMAGES_PER_REQUEST = 10

# Session cookie / token
SESSION_COOKIE = "session"
SESSION_MAX_AGE = int(os.getenv("SESSION_MAX_AGE", 7 * 24 * 60 * 60))
COOKIE_SECURE = _flag("COOKIE_SECURE", os.getenv("FLASK_ENV") == "production")

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS",
        "http://localhost:5500,http://localhost:5000,http://localhost:5173",
    ).split(",")
    if origin.strip()
]

DEFAULT_PAGE_LIMIT = 10
MAX_PAGE_LIMIT = int(os.getenv("MAX_PAGE_LIMIT", 100))

# Echo raw exception messages in 500 responses
EXPOSE_ERRORS = _flag("EXPOSE_ERRORS", True)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PORT = int(os.getenv("PORT", 5000))


def setup_logging(level=LOG_LEVEL):
    """Configure root logging once for the process."""
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s"))
        root.addHandler(handler)
    root.setLevel(level)
