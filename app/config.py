from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "file-transfer-service"
    app_env: str = "dev"
    storage_dir: str = "storage"
    metadata_path: str = "data/transfers.json"
    ttl_seconds: int = Field(default=72 * 60 * 60, ge=0)
    sweep_interval_seconds: float = Field(default=60, gt=0)
    max_upload_size_bytes: int = 512 * 1024 * 1024
    max_files: int = Field(default=20, gt=0)
    public_base_url: str = ""
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_prefix="FTS_")


@lru_cache
def get_settings() -> Settings:
    return Settings()
