import os
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DB_PATH = Path(os.environ.get("FEEDSYNC_DB_PATH", PROJECT_ROOT / "data" / "feedsync.db"))
DB_URL = f"sqlite:///{DB_PATH}"

# Encrypted OAuth credentials (AES-256-GCM envelope, chmod 600)
TOKENS_PATH = Path(os.environ.get("FEEDSYNC_TOKENS_PATH", Path.home() / ".feedsync" / "tokens.json"))
TOKEN_ENCRYPTION_KEY = os.environ.get("TOKEN_ENCRYPTION_KEY", "")

CLIENT_ID = os.environ.get("INOREADER_CLIENT_ID", "")
CLIENT_SECRET = os.environ.get("INOREADER_CLIENT_SECRET", "")
REDIRECT_URI = os.environ.get("INOREADER_OAUTH_REDIRECT_URI", "http://localhost:8080/auth/callback")

PROVIDER_SERVICE = "inoreader"
PROVIDER_BASE_URL = os.environ.get("PROVIDER_BASE_URL", "https://www.inoreader.com/reader/api/0")
TOKEN_URL = os.environ.get("PROVIDER_TOKEN_URL", "https://www.inoreader.com/oauth2/token")

SYNC_MAX_ARTICLES = int(os.environ.get("SYNC_MAX_ARTICLES", "100"))
SYNC_BATCH_SIZE = int(os.environ.get("SYNC_BATCH_SIZE", "50"))
SYNC_BUDGET_SECONDS = int(os.environ.get("SYNC_BUDGET_SECONDS", "120"))
FULL_SYNC_INTERVAL_DAYS = 7
STATUS_TTL_HOURS = 24

ZONE1_LIMIT = int(os.environ.get("ZONE1_LIMIT", "5000"))
ZONE2_LIMIT = int(os.environ.get("ZONE2_LIMIT", "100"))

QUEUE_MAX_ATTEMPTS = int(os.environ.get("SYNC_MAX_RETRIES", "3"))
QUEUE_RETENTION_DAYS = 7
QUEUE_BATCH_SIZE = int(os.environ.get("SYNC_QUEUE_BATCH_SIZE", "100"))

API_TOKEN_ENV = "FEEDSYNC_API_TOKEN"

# Ensure data directory exists
DB_PATH.parent.mkdir(parents=True, exist_ok=True)
