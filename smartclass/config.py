from typing import Optional
from pydantic_settings import BaseSettings
import os
from dotenv import load_dotenv
load_dotenv()

class Settings(BaseSettings):
    API_URL: str = "http://localhost:8000"
    ACCESS_TOKEN: Optional[str] = os.getenv("ACCESS_TOKEN")
    REQUEST_TIMEOUT_SECONDS: float = 30.0
    # Backend recomputes final grades and predictions after the bulk write ack
    RECOMPUTE_BACKOFF_SECONDS: float = 3.0
    TIMEZONE: str = "America/La_Paz"
    LOG_LEVEL: str = "INFO"
    
    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True

settings = Settings()
