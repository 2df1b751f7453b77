import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()

@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "lendingdesk.db")
    database_busy_timeout: float = float(os.getenv("DATABASE_BUSY_TIMEOUT", "30"))

    # Lending policy
    staff_loan_days: int = int(os.getenv("STAFF_LOAN_DAYS", "30"))
    self_service_loan_days: int = int(os.getenv("SELF_SERVICE_LOAN_DAYS", "14"))
    extension_days: int = int(os.getenv("EXTENSION_DAYS", "14"))
    max_extensions: int = int(os.getenv("MAX_EXTENSIONS", "2"))
    fine_daily_rate: int = int(os.getenv("FINE_DAILY_RATE", "2"))

    # Notification settings
    notify_webhook_url: Optional[str] = os.getenv("NOTIFY_WEBHOOK_URL")
    notify_timeout: float = float(os.getenv("NOTIFY_TIMEOUT", "5"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Lending Desk")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
