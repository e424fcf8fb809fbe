"""Application Settings - Central Configuration"""
from functools import lru_cache
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""
    
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )
    
    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "docflow_dev"
    
    # Logging
    logs_path: str = "./logs"
    log_level: str = "INFO"
    log_to_file: bool = True
    
    # Approval gating
    default_approval_due_minutes: int = 2880  # 48 hours
    approval_reminder_minutes_before_due: str = "60"
    expiration_sweep_interval_seconds: int = 60
    
    # Automation dispatch
    automation_max_retries: int = 3
    
    # Environment
    environment: str = "development"
    
    @property
    def approval_reminder_minutes_list(self) -> List[int]:
        """Parse default reminder offsets string to list"""
        return [
            int(value.strip())
            for value in self.approval_reminder_minutes_before_due.split(",")
            if value.strip()
        ]
    
    @property
    def is_development(self) -> bool:
        """Check if running in development"""
        return self.environment.lower() == "development"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
