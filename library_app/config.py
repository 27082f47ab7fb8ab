import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # Storage selection: "file" (default) or "relational"
    data_source: str = os.getenv("LIBRARY_DATA_SOURCE", "file")
    data_dir: str = os.getenv("LIBRARY_DATA_DIR", "data")
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///library.db")

    # Lending rules
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))

    # Bootstrap admin, created only when the user table is empty and a password is set
    admin_username: str = os.getenv("LIBRARY_ADMIN_USERNAME", "admin")
    admin_password: str = os.getenv("LIBRARY_ADMIN_PASSWORD", "")
    create_default_admin: bool = _env_bool("LIBRARY_CREATE_DEFAULT_ADMIN", "True")

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Catalog")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    debug: bool = _env_bool("DEBUG")


settings = Settings()
