import os
from dataclasses import dataclass, field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API Ayarları
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Veritabanı Ayarları
    database_file: Optional[str] = os.getenv("LIBRARY_DB_FILE")
    db_timeout: float = float(os.getenv("DB_TIMEOUT", "5"))  # yazma kilidi için beklenecek saniye
    seed_file: Optional[str] = os.getenv("SEED_FILE")

    # Ödünç Kuralları
    max_active_loans: int = int(os.getenv("MAX_ACTIVE_LOANS", "5"))
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))

    # Güvenlik Ayarları
    session_expiration_minutes: int = int(os.getenv("SESSION_EXPIRATION_MINUTES", "10080"))  # 7 gün
    admin_username: str = os.getenv("ADMIN_USERNAME", "admin")
    admin_password: str = os.getenv("ADMIN_PASSWORD", "admin123")
    admin_email: str = os.getenv("ADMIN_EMAIL", "admin@library.local")

    # Yükleme Ayarları
    upload_dir: str = os.getenv("UPLOAD_DIR", "covers")
    max_upload_size: int = int(os.getenv("MAX_UPLOAD_SIZE", "10485760"))  # 10MB
    allowed_image_extensions: list = field(default_factory=lambda: [".jpg", ".jpeg", ".png", ".gif", ".webp"])

    # Uygulama Ayarları
    app_name: str = os.getenv("APP_NAME", "Library Catalog")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_bool("DEBUG")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    environment: str = os.getenv("ENVIRONMENT", "development")


settings = Settings()
