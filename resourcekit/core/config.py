from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    APP_ENV: str = "local"
    APP_NAME: str = "resourcekit"
    API_PREFIX: str = "/api"

    CORS_ORIGINS: str = "http://localhost:3000"

    DATABASE_URL: str = "sqlite+pysqlite:///./resourcekit.db"

    # Past this many matches the index total is reported as the ceiling itself.
    RESOURCE_COUNT_CEILING: int = 5000
    # Candidate window pushed ahead of pipelines that sort or filter on their own.
    RESOURCE_PIPELINE_MIN_LIMIT: int = 1000
    RESOURCE_DEFAULT_LIMIT: int = 10

    @property
    def cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

settings = Settings()
