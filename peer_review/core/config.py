import os
from typing import Optional
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    env: str = os.getenv("ENV", "unit-test")
    postgres_url: str
    rabbitmq_url: str
    exchange_name: str = "elearning.peer_review"

    # LMS (submission registry + grade passback)
    lms_api_url: str = "http://localhost:3000"
    lms_api_key: str = ""
    passback_url: str = "http://localhost:3000/api/lti/v1/outcomes"
    passback_score: Optional[float] = 1.0
    passback_timeout: float = 10.0

    # retry / fan-out
    retry_attempts: int = 3
    retry_delay: float = 0.5
    fetch_concurrency: int = 8

    class Config:
        env_file = None

settings = Settings()
