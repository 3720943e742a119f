import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        receipt_ttl_days: int,
        sync_page_size: int,
        sync_max_limit: int,
        scheduler_enabled: bool,
        api_base_url: str,
        client_database_url: str,
    ) -> None:
        self.database_url = database_url
        self.receipt_ttl_days = receipt_ttl_days
        self.sync_page_size = sync_page_size
        self.sync_max_limit = sync_max_limit
        self.scheduler_enabled = scheduler_enabled
        self.api_base_url = api_base_url
        self.client_database_url = client_database_url


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    default_client_db = data_dir / "ledger-client.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    receipt_ttl_days = int(os.getenv("LEDGER_RECEIPT_TTL_DAYS", "7"))
    sync_page_size = int(os.getenv("LEDGER_SYNC_PAGE_SIZE", "200"))
    sync_max_limit = int(os.getenv("LEDGER_SYNC_MAX_LIMIT", "500"))
    scheduler_enabled = _env_flag("LEDGER_SCHEDULER_ENABLED", "true")
    api_base_url = os.getenv("LEDGER_API_BASE_URL", "http://127.0.0.1:8000")
    client_database_url = os.getenv(
        "LEDGER_CLIENT_DATABASE_URL", f"sqlite:///{default_client_db}"
    )
    return Settings(
        database_url=database_url,
        receipt_ttl_days=receipt_ttl_days,
        sync_page_size=sync_page_size,
        sync_max_limit=sync_max_limit,
        scheduler_enabled=scheduler_enabled,
        api_base_url=api_base_url,
        client_database_url=client_database_url,
    )
