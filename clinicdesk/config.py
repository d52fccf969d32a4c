# clinicdesk/config.py - Configuration management
from dotenv import load_dotenv

load_dotenv()
from datetime import time
from typing import Union
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator


class Settings(BaseSettings):
    """Application settings with validation and environment variable support (Pydantic V2 Syntax)"""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="allow",
        case_sensitive=False,
        populate_by_name=True,
    )

    # Application
    app_name: str = "ClinicDesk Scheduling & Billing"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    # Database
    database_url: str = Field(default="sqlite:///./clinicdesk.db", alias="DATABASE_URL")
    database_pool_size: int = Field(default=20, alias="DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(default=30, alias="DATABASE_MAX_OVERFLOW")
    sqlite_busy_timeout: float = Field(default=30.0, gt=0, alias="SQLITE_BUSY_TIMEOUT")  # seconds to wait for the write lock

    # CORS
    cors_origins: Union[str, list[str]] = Field(default=["http://localhost:3000", "http://localhost:5173"], alias="CORS_ORIGINS")

    # Calendar policy
    clinic_timezone: str = Field(default="Asia/Kuwait", alias="CLINIC_TIMEZONE")
    business_open: time = Field(default=time(9, 0), alias="BUSINESS_OPEN")
    business_close: time = Field(default=time(21, 0), alias="BUSINESS_CLOSE")
    closed_weekday: int = Field(default=4, ge=0, le=6, alias="CLOSED_WEEKDAY")  # Monday=0 ... Friday=4
    slot_minutes: int = Field(default=30, gt=0, alias="SLOT_MINUTES")
    enforce_business_hours: bool = Field(default=True, alias="ENFORCE_BUSINESS_HOURS")
    # Longest bookable interval; also bounds the overlap scan
    max_appointment_minutes: int = Field(default=720, gt=0, alias="MAX_APPOINTMENT_MINUTES")

    # Billing
    invoice_due_days: int = Field(default=30, ge=0, alias="INVOICE_DUE_DAYS")
    invoice_number_retries: int = Field(default=5, gt=0, alias="INVOICE_NUMBER_RETRIES")
    ledger_update_retries: int = Field(default=3, gt=0, alias="LEDGER_UPDATE_RETRIES")

    # Rate limiting
    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")
    booking_rate_limit: str = Field(default="30/minute", alias="BOOKING_RATE_LIMIT")
    payment_rate_limit: str = Field(default="30/minute", alias="PAYMENT_RATE_LIMIT")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    # --- Pydantic V2 Validators ---
    @field_validator("cors_origins", mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            if not v.strip():
                return ["http://localhost:3000", "http://localhost:5173"]
            return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        if not v.startswith(("postgresql://", "postgresql+psycopg2://", "sqlite://")):
            raise ValueError("DATABASE_URL must be a valid PostgreSQL or SQLite URL")
        return v

    @field_validator("business_close")
    @classmethod
    def validate_business_hours(cls, v, info):
        opening = info.data.get("business_open")
        if opening is not None and v <= opening:
            raise ValueError("BUSINESS_CLOSE must be later than BUSINESS_OPEN")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()

