import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

APP_ENV = os.environ.get("APP_ENV") or os.environ.get("ENV") or "development"
IS_PROD = APP_ENV.lower() in {"prod", "production"}

# JWT Settings
_DEFAULT_JWT_SECRET = "habitcircle-dev-secret"
_jwt_secret_env = os.environ.get("JWT_SECRET")
JWT_SECRET = _jwt_secret_env or _DEFAULT_JWT_SECRET
JWT_SECRET_SOURCE = "env" if _jwt_secret_env else "default"
JWT_ALGORITHM = "HS256"
JWT_EXPIRATION_HOURS = int(os.environ.get("JWT_EXPIRATION_HOURS", "168"))  # 7 days

GOOGLE_CLIENT_ID: Optional[str] = os.environ.get("GOOGLE_CLIENT_ID")

# Storage
MONGO_URL: Optional[str] = os.environ.get("MONGO_URL")
DB_NAME = os.environ.get("DB_NAME", "habit_tracker")
DATA_FILE: Optional[str] = os.environ.get("DATA_FILE")
DEFAULT_DATA_FILE = ROOT_DIR / "data" / "db.json"

FEED_LIMIT = int(os.environ.get("FEED_LIMIT", "50"))
SEARCH_LIMIT = int(os.environ.get("SEARCH_LIMIT", "10"))


def cors_origins() -> List[str]:
    raw = os.environ.get('CORS_ORIGINS', '*')
    origins = [o.strip() for o in raw.split(',') if o.strip()]
    return origins or ['*']
