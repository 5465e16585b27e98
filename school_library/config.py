import os
from dataclasses import dataclass, field
from typing import List, Optional
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _env_int_list(name: str, default: str) -> List[int]:
    raw = os.getenv(name, default)
    return [int(part) for part in raw.split(",") if part.strip()]


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "school_library.db")

    # Loan policy
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "7"))  # also used for waitlist promotions
    allowed_loan_days: List[int] = field(default_factory=lambda: _env_int_list("ALLOWED_LOAN_DAYS", "7,15,30"))
    max_loan_days: int = int(os.getenv("MAX_LOAN_DAYS", "30"))
    default_staff_name: str = os.getenv("DEFAULT_STAFF_NAME", "System")

    # Reminder windows
    due_soon_days: int = int(os.getenv("DUE_SOON_DAYS", "3"))
    rate_prompt_days: int = int(os.getenv("RATE_PROMPT_DAYS", "14"))

    # Pagination
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "12"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "School Library")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_bool("DEBUG", "False")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Optional CORS override, comma separated
    cors_origins: Optional[str] = os.getenv("CORS_ORIGINS")

    def cors_origin_list(self) -> List[str]:
        if not self.cors_origins:
            return ["*"]
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


settings = Settings()
