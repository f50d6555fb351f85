"""Application configuration for AppReader.

Reads runtime settings from environment variables with sensible defaults.
All configuration is centralised here; no other module reads os.environ directly.
"""

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings


class AppConfig(BaseSettings):
    """Application-wide configuration loaded from environment variables.

    Attributes:
        data_dir: Directory holding the SQLite databases.
        assignments_db_path: Path to the status ledger / claim table database.
        reviews_db_path: Path to the review-content database.
        claim_expiry_hours: Age in hours after which an unfinished claim is
            treated as abandoned.
        max_claim_retries: Number of selection attempts made when a claim
            insert loses a uniqueness race.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """

    data_dir: Path = Path("data")
    assignments_db_path: Path = Path("data/assignments.db")
    reviews_db_path: Path = Path("data/reviews.db")
    claim_expiry_hours: float = 12.0
    max_claim_retries: int = 3
    log_level: str = "INFO"

    model_config = {"env_prefix": "", "case_sensitive": False}

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate that log_level is one of the accepted Python logging levels.

        Args:
            v: The raw log level string from the environment.

        Returns:
            The uppercased log level string if valid.

        Raises:
            ValueError: If the value is not a recognised logging level.
        """
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid:
            raise ValueError(f"log_level must be one of {valid}; got {v!r}")
        return upper

    @field_validator("claim_expiry_hours")
    @classmethod
    def validate_claim_expiry_hours(cls, v: float) -> float:
        """Reject a non-positive claim expiry window."""
        if v <= 0:
            raise ValueError(f"claim_expiry_hours must be positive; got {v!r}")
        return v

    @field_validator("max_claim_retries")
    @classmethod
    def validate_max_claim_retries(cls, v: int) -> int:
        """Require at least one selection attempt."""
        if v < 1:
            raise ValueError(f"max_claim_retries must be at least 1; got {v!r}")
        return v


def get_config() -> AppConfig:
    """Return the application configuration, resolved from environment variables.

    Environment variables read (case-insensitive):
        DATA_DIR: Path to the data directory (default: ``data/``).
        ASSIGNMENTS_DB_PATH: Path to the assignments SQLite database
            (default: ``data/assignments.db``).
        REVIEWS_DB_PATH: Path to the reviews SQLite database
            (default: ``data/reviews.db``).
        CLAIM_EXPIRY_HOURS: Claim expiry window in hours (default: ``12``).
        MAX_CLAIM_RETRIES: Selection attempts on claim conflicts (default: ``3``).
        LOG_LEVEL: Logging verbosity level (default: ``INFO``).

    Returns:
        An :class:`AppConfig` instance populated from the environment.
    """
    return AppConfig(
        _env_file=".env",
        _env_file_encoding="utf-8",
    )
