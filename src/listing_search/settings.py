from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    realtor_api_key: Optional[str] = None
    realtor_base_url: str = "https://realtor16.p.rapidapi.com"
    realtor_ttl_hours: float = 24
    realtor_max_calls_per_min: int = 30
    realtor_max_retries: int = 5
    realtor_initial_backoff_ms: int = 500
    realtor_timeout_s: float = 10.0
    realtor_max_pages: int = 50

    cache_db_path: Path = Path("./data/listing_cache.duckdb")


def get_settings() -> Settings:
    return Settings()
