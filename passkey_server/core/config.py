import os
from dotenv import load_dotenv
from typing import List, Optional, Any
from pydantic_settings import BaseSettings
from pydantic import AnyHttpUrl, Field, field_validator

# Explicitly load the .env file from the project root.
# This ensures that environment variables are available for run.py and other CLI tools.
dotenv_path = os.path.join(os.path.dirname(__file__), '..', '..', '.env')
if os.path.exists(dotenv_path):
    load_dotenv(dotenv_path=dotenv_path)


class Settings(BaseSettings):
    # API Configuration
    PROJECT_NAME: str = "Passkey Server"
    VERSION: str = "1.0.0"
    API_V1_STR: str = "/api/v1"

    # CORS Configuration
    BACKEND_CORS_ORIGINS: List[AnyHttpUrl] = []

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    def assemble_cors_origins(cls, v: str | List[str]) -> List[str] | str:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",") if i.strip()]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    # Relying Party Configuration
    RP_ID: str = "localhost"
    RP_NAME: str = "Passkey Server"
    ORIGIN: str = "https://localhost"
    # Extra comma separated origins accepted in clientDataJSON
    # (e.g. android:apk-key-hash:...)
    ALLOWED_ORIGINS: str = ""

    # Database Configuration
    POSTGRES_SERVER: str = "localhost"
    POSTGRES_USER: str = "passkeys"
    POSTGRES_PASSWORD: str = "passkeys"
    POSTGRES_DB: str = "passkeys"
    DATABASE_URL: Optional[str] = Field(default=None, validate_default=True)

    @field_validator("DATABASE_URL", mode="before")
    def assemble_db_connection(cls, v: Optional[str], values) -> Any:
        if isinstance(v, str):
            return v
        return (
            f"postgresql+asyncpg://{values.data.get('POSTGRES_USER')}:"
            f"{values.data.get('POSTGRES_PASSWORD')}@{values.data.get('POSTGRES_SERVER')}/"
            f"{values.data.get('POSTGRES_DB') or ''}"
        )

    # Redis Configuration (optional; when set, pending challenges live in Redis)
    REDIS_URL: Optional[str] = None

    # Challenge Ledger
    CHALLENGE_TTL_SECONDS: int = 300
    CHALLENGE_SWEEP_INTERVAL_SECONDS: int = 60

    # Identity
    ANONYMOUS_USERNAME_PREFIX: str = "anon_"
    ANONYMOUS_DISPLAY_NAME: str = "Anonymous User"

    # Report unknown credentials as a plain verification failure
    UNIFORM_AUTH_FAILURES: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    class Config:
        case_sensitive = True
        env_file = ".env"

    @property
    def expected_origins(self) -> List[str]:
        extra = [i.strip() for i in self.ALLOWED_ORIGINS.split(",") if i.strip()]
        return [self.ORIGIN, *extra]


settings = Settings()
