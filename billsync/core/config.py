import os
from dataclasses import dataclass


def _flag(name: str, default: str = "") -> bool:
    return (os.getenv(name) or default).lower() in {"1", "true", "yes"}


@dataclass
class Settings:
    APP_NAME: str = os.getenv("APP_NAME", "BillSync")
    ENV: str = os.getenv("BILLSYNC_ENV", "dev").lower()  # dev|stage|prod
    DEBUG: bool = _flag("DEBUG") or os.getenv("BILLSYNC_ENV", "dev").lower() != "prod"
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Sessions
    SESSION_DURATION_MS: int = int(os.getenv("SESSION_DURATION_MS") or "86400000")  # 24h
    SESSION_SECRET: str = os.getenv("SESSION_SECRET", "client-secret-key-change-in-production")
    OFFLINE_LOGIN_ENABLED: bool = _flag("OFFLINE_LOGIN_ENABLED")

    # "local" keeps every write in the embedded store first, "remote" pushes
    # owner writes straight through when a remote session is live.
    DB_MODE: str = os.getenv("BILLSYNC_DB_MODE", "local").lower()

    # Remote store (PostgREST style)
    REMOTE_URL: str = os.getenv("REMOTE_URL", "")
    REMOTE_API_KEY: str = os.getenv("REMOTE_API_KEY", "")
    REMOTE_TIMEOUT: float = float(os.getenv("REMOTE_TIMEOUT") or "30")

    # Reconciler
    SYNC_INTERVAL: float = float(os.getenv("SYNC_INTERVAL") or "30")
    SYNC_MAX_RETRIES: int = int(os.getenv("SYNC_MAX_RETRIES") or "5")
    SYNC_BACKOFF_BASE: float = float(os.getenv("SYNC_BACKOFF_BASE") or "2")
    SYNC_BACKOFF_MAX: float = float(os.getenv("SYNC_BACKOFF_MAX") or "300")
    SYNC_WORKERS: int = int(os.getenv("SYNC_WORKERS") or "1")

    # Document collaborators
    RENDERER_URL: str = os.getenv("RENDERER_URL", "")
    STORAGE_URL: str = os.getenv("STORAGE_URL", "")
    STORAGE_BUCKET: str = os.getenv("STORAGE_BUCKET", "invoices")

    def __post_init__(self):
        base_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
        data_dir = os.path.join(base_dir, "data")
        db_name = f"billsync_{self.ENV}.sqlite3"
        self.DATA_DIR = data_dir
        self.DB_PATH = os.path.join(data_dir, db_name)
        override = os.getenv("BILLSYNC_DATABASE_URL")
        if override:
            self.DATABASE_URL = override
        else:
            os.makedirs(data_dir, exist_ok=True)
            self.DATABASE_URL = f"sqlite:///{self.DB_PATH}"


# singleton settings
settings = Settings()

# Back-compat for modules importing DATABASE_URL directly
DATABASE_URL = settings.DATABASE_URL
