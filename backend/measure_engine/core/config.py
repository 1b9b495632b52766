from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
from pathlib import Path

# Find the backend directory (where .env is located)
BACKEND_DIR = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(BACKEND_DIR / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    # API Settings
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "Measure Logic Engine"
    LOG_LEVEL: str = "INFO"

    # CORS
    FRONTEND_URL: str = "http://localhost:3000"
    ALLOWED_ORIGINS: Optional[str] = None

    # Expression-language output
    CQL_DATA_MODEL: str = "FHIR"
    CQL_DATA_MODEL_VERSION: str = "4.0.1"
    FHIR_HELPERS_VERSION: str = "4.0.1"

    # SQL output - "hdi" or "synapse"
    DEFAULT_SQL_DIALECT: str = "hdi"

    # Evaluation - calendar year used when a measure has no measurement period.
    # None means "current year".
    DEFAULT_MEASUREMENT_YEAR: Optional[int] = None

    # Batch generation / cohort evaluation
    BATCH_MAX_WORKERS: int = 4


settings = Settings()
