from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    MONGO_URI: str = "mongodb://localhost:27017"
    DB_NAME: str = "intake_forms"
    DYNAMIC_DATA_TIMEOUT: float = 10.0  # seconds, custom endpoint fetches
    DYNAMIC_DATA_BASE_URL: Optional[str] = None
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: List[str] = ["*"]

    class Config:
        env_file = ".env"


settings = Settings()
