"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "HealthSync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- User ---
    user_timezone: str = "America/New_York"  # IANA name, used for local calendar days
    default_user_age: int = 35

    # --- Reconciliation policy ---
    reconcile_config_path: str | None = None  # overrides the bundled reconcile_config.yaml

    # --- Google Drive ---
    google_drive_api_url: str = "https://www.googleapis.com/drive/v3"
    google_drive_upload_url: str = "https://www.googleapis.com/upload/drive/v3"
    google_drive_access_token: str = ""
    google_drive_folder_id: str = ""

    # --- Mi Fitness ---
    mi_fitness_api_url: str = "https://api-mifit-de2.huami.com"
    mi_fitness_app_token: str = ""  # extracted token; skips credential login
    mi_fitness_email: str = ""
    mi_fitness_password: str = ""
    mi_fitness_window_days: int = 30

    # --- I/O limits ---
    http_timeout_seconds: float = 30.0
    max_download_bytes: int = 200 * 1024 * 1024  # 200 MB
    max_archive_bytes: int = 500 * 1024 * 1024  # uncompressed .db inside an export

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
