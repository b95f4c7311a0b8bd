from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Backend collaborators
    RULES_API_URL: str = "http://localhost:8000"
    FILE_API_URL: str = "http://localhost:8000"
    DATABASE_API_URL: str = "http://localhost:8000"
    HTTP_TIMEOUT_SECONDS: float = 30.0

    # Governance limits
    EXECUTION_TIMEOUT_SECONDS: Optional[float] = 30.0
    HISTORY_LIMIT: int = 100
    RULES_MAX_BYTES: int = 50_000
    MAX_SESSIONS: int = 1000

    LOG_LEVEL: str = "INFO"

    # This tells Pydantic to read from the .env file
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Create a single instance of the settings to use everywhere
settings = Settings()
