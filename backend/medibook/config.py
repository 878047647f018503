from typing import List, Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str
    SECRET_KEY: str
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    SESSION_INACTIVITY_MINUTES: int = 30
    BACKEND_CORS_ORIGINS: List[str] = ["http://localhost:3000"]
    FRONTEND_URL: str = "http://localhost:3000"

    SQL_ECHO: bool = False
    LOG_LEVEL: str = "INFO"

    # Account lockout
    LOCKOUT_THRESHOLD: int = 5
    LOCKOUT_MINUTES: int = 30

    # Rate limiting ("memory" or "database")
    RATE_LIMIT_BACKEND: str = "memory"
    LOGIN_RATE_LIMIT_ATTEMPTS: int = 20
    LOGIN_RATE_LIMIT_WINDOW_SECONDS: int = 15 * 60
    PASSWORD_RESET_RATE_LIMIT_ATTEMPTS: int = 3
    PASSWORD_RESET_RATE_LIMIT_WINDOW_SECONDS: int = 60 * 60

    # Wall-clock zone appointment dates and times are given in
    CLINIC_TIMEZONE: str = "UTC"

    # Email settings
    SENDGRID_API_KEY: Optional[str] = None
    SENDGRID_FROM_EMAIL: str = "noreply@medibook.health"

    # SMS settings
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_PHONE_NUMBER: Optional[str] = None

    # Test mode settings
    TWILIO_TEST_MODE: str = "false"
    MAILTRAP_MODE: str = "false"

    # Reminder scheduling
    JOBSTORE_URL: Optional[str] = None
    REMINDER_HOURS_BEFORE: int = 24

    class Config:
        env_file = ".env"


settings = Settings()
