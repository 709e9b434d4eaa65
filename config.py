import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    data_file: str = (
        os.getenv("LIBRARY_DB_FILE")
        or os.getenv("LIBRARY_DATA_FILE", "library.db")
    )
    database_timeout: float = float(os.getenv("DATABASE_TIMEOUT", "10"))

    # Circulation policy
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "14"))
    fine_daily_rate: Decimal = Decimal(os.getenv("FINE_DAILY_RATE", "5.00"))
    fine_grace_days: int = int(os.getenv("FINE_GRACE_DAYS", "30"))
    staff_roles: list = field(
        default_factory=lambda: [
            r.strip() for r in os.getenv("STAFF_ROLES", "Librarian,Admin").split(",") if r.strip()
        ]
    )

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Circulation Service")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_flag("DEBUG")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Optional currency label used by the CLI
    currency_symbol: Optional[str] = os.getenv("CURRENCY_SYMBOL", "Q")


settings = Settings()
