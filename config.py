import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _env_optional_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return float(raw)


@dataclass
class Settings:
    # Database
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")

    # Lending policy
    max_loans: int = int(os.getenv("MAX_LOANS", "4"))
    loan_days: int = int(os.getenv("LOAN_DAYS", "5"))
    renewal_days: int = int(os.getenv("RENEWAL_DAYS", "3"))
    fine_per_day: float = float(os.getenv("FINE_PER_DAY", "10.0"))
    max_fine: Optional[float] = _env_optional_float("MAX_FINE")  # None = no cap
    allow_overdue_renewal: bool = _env_flag("ALLOW_OVERDUE_RENEWAL", "True")
    currency: str = os.getenv("CURRENCY", "Rs.")

    # API
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Application
    app_name: str = os.getenv("APP_NAME", "Library Lending System")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    debug: bool = _env_flag("DEBUG", "False")


settings = Settings()
