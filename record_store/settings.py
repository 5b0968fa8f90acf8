from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StoreSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore", populate_by_name=True)

    # Table
    table_name: str | None = Field(default=None, validation_alias="RECORD_STORE_TABLE_NAME")
    environment: str = Field(default="development", validation_alias="RECORD_STORE_ENV")

    # AWS / DynamoDB backend
    aws_region: str = Field(default="us-east-1", validation_alias="AWS_REGION")
    # Optional: point at DynamoDB Local or another compatible endpoint.
    dynamodb_endpoint_url: str | None = Field(default=None, validation_alias="DYNAMODB_ENDPOINT_URL")
    # App-layer retry attempts for throttling-class failures (botocore retries separately).
    ddb_max_attempts: int = Field(default=6, ge=1, validation_alias="DDB_MAX_ATTEMPTS")
    ddb_connect_timeout: float = Field(default=2, gt=0, validation_alias="DDB_CONNECT_TIMEOUT")
    ddb_read_timeout: float = Field(default=10, gt=0, validation_alias="DDB_READ_TIMEOUT")

    # Observability
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    # ---- helpers / derived flags ----
    @property
    def normalized_environment(self) -> str:
        v = (self.environment or "").strip().lower()
        if v in ("prod", "production"):
            return "production"
        if v in ("stage", "staging"):
            return "staging"
        if v in ("dev", "development"):
            return "development"
        return v or "development"

    @property
    def is_production(self) -> bool:
        return self.normalized_environment == "production"

    def require_table_name(self) -> str:
        name = str(self.table_name or "").strip()
        if not name:
            raise RuntimeError("RECORD_STORE_TABLE_NAME is not set")
        return name

    def to_log_safe_dict(self) -> dict[str, object]:
        """
        A representation safe for structured logs / diagnostics.
        """
        return {
            "environment": self.normalized_environment,
            "table_name": self.table_name,
            "aws_region": self.aws_region,
            "dynamodb_endpoint_url": self.dynamodb_endpoint_url,
            "ddb": {
                "max_attempts": self.ddb_max_attempts,
                "connect_timeout": self.ddb_connect_timeout,
                "read_timeout": self.ddb_read_timeout,
            },
        }


@lru_cache(maxsize=1)
def get_settings() -> StoreSettings:
    return StoreSettings()
