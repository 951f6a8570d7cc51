"""Engine configuration loaded from environment variables.

Settings for the account balance database, the quality gate and the
reservation ledger. Uses pydantic-settings for validation and .env file
support. Provider credentials live in ``jobengine.providers.config``.
"""

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Known insecure default password that must not be used in production
_INSECURE_DEFAULT_PASSWORD = "jobengine_dev_password"  # nosec B105


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database (account balance store)
    database_host: str = "localhost"
    database_port: int = 5432
    database_name: str = "jobengine"
    database_user: str = "jobengine_user"
    database_password: str = _INSECURE_DEFAULT_PASSWORD

    # Application
    environment: str = "development"

    # Quality gate
    quality_threshold: float = 70.0

    # Reservation ledger
    # "memory" keeps balances in-process (single worker); "sql" uses row locks
    ledger_backend: str = "memory"

    # Rate limiting fallback quota for models without a published entry
    default_tokens_per_minute: int = 100_000
    default_requests_per_minute: int = 60

    @property
    def database_url(self) -> str:
        """Async database URL for SQLAlchemy."""
        return (
            f"postgresql+asyncpg://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @model_validator(mode="after")
    def check_settings(self) -> "Settings":
        """Validate cross-field invariants.

        Checks:
        - Quality threshold must be within [0, 100]
        - Default quotas must be positive
        - Ledger backend must be a known store
        - Database password must not be the default in production
        """
        if not 0 <= self.quality_threshold <= 100:
            msg = (
                "QUALITY_THRESHOLD must be between 0 and 100. "
                f"Got: {self.quality_threshold}"
            )
            raise ValueError(msg)

        if self.default_tokens_per_minute <= 0 or self.default_requests_per_minute <= 0:
            msg = (
                "DEFAULT_TOKENS_PER_MINUTE and DEFAULT_REQUESTS_PER_MINUTE "
                "must be positive."
            )
            raise ValueError(msg)

        if self.ledger_backend not in ("memory", "sql"):
            msg = f"LEDGER_BACKEND must be 'memory' or 'sql'. Got: {self.ledger_backend}"
            raise ValueError(msg)

        if (
            self.environment == "production"
            and self.ledger_backend == "sql"
            and self.database_password == _INSECURE_DEFAULT_PASSWORD
        ):
            msg = (
                "Cannot use default database password in production. "
                "Set DATABASE_PASSWORD environment variable to a secure value."
            )
            raise ValueError(msg)

        return self


settings = Settings()
