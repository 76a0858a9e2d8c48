import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Gmail batch HTTP requests accept at most 100 calls.
MAX_PAGE_SIZE = 100


def _positive_int(name: str, default: str) -> int:
    value = int(os.getenv(name, default))
    if value <= 0:
        raise ValueError(f"{name} must be a positive integer.")
    return value


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Application configuration loaded from environment variables."""

    # --- Required Variables ---
    service_name: str
    environment: str
    sender_table: str

    # --- Source ---
    source_query: str
    required_label: str
    page_size: int
    source_timeout_seconds: int
    source_max_retries: int
    gmail_secret_prefix: str

    # --- Checkpointing & Time Budget ---
    checkpoint_threads: int
    checkpoint_interval_seconds: int
    runtime_hard_limit_seconds: int
    timeout_guard_threshold_seconds: int
    lease_ttl_seconds: int

    # --- Report Projection ---
    report_bucket: str | None
    report_kms_key_id: str | None

    log_level: str

    # --- Derived Properties ---
    @property
    def checkpoint_interval_ms(self) -> int:
        return self.checkpoint_interval_seconds * 1000

    @property
    def runtime_hard_limit_ms(self) -> int:
        return self.runtime_hard_limit_seconds * 1000

    @property
    def timeout_guard_threshold_ms(self) -> int:
        return self.timeout_guard_threshold_seconds * 1000

    @property
    def report_enabled(self) -> bool:
        return bool(self.report_bucket)

    def gmail_secret_name(self, owner_id: str) -> str:
        return f"{self.gmail_secret_prefix.rstrip('/')}/{owner_id}"

    @classmethod
    def load_from_env(cls) -> "AppConfig":
        """
        Loads configuration from environment variables, performing validation and type casting.
        Fails fast with a ConfigurationError if anything is invalid.
        """
        try:
            # --- Handle required string variables ---
            service_name = os.environ["SERVICE_NAME"]
            environment = os.environ["ENVIRONMENT"]
            sender_table = os.environ["SENDER_TABLE_NAME"]

            # --- Source settings ---
            source_query = os.getenv("SOURCE_QUERY", "in:inbox").strip()
            if not source_query:
                raise ValueError("SOURCE_QUERY must not be empty.")
            required_label = os.getenv("REQUIRED_LABEL", "INBOX").strip()

            page_size = _positive_int("PAGE_SIZE", "50")
            if page_size > MAX_PAGE_SIZE:
                raise ValueError(f"PAGE_SIZE must not exceed {MAX_PAGE_SIZE}.")

            source_timeout_seconds = _positive_int("SOURCE_TIMEOUT_SECONDS", "30")

            source_max_retries = int(os.getenv("SOURCE_MAX_RETRIES", "3"))
            if source_max_retries < 0:
                raise ValueError("SOURCE_MAX_RETRIES must be a non-negative integer.")

            gmail_secret_prefix = os.getenv(
                "GMAIL_SECRET_PREFIX", "sender-aggregator/gmail"
            )

            # --- Checkpoint triggers and the hard budget ---
            checkpoint_threads = _positive_int("CHECKPOINT_THREADS", "100")
            checkpoint_interval_seconds = _positive_int(
                "CHECKPOINT_INTERVAL_SECONDS", "60"
            )
            runtime_hard_limit_seconds = _positive_int(
                "RUNTIME_HARD_LIMIT_SECONDS", "300"
            )
            timeout_guard_threshold_seconds = _positive_int(
                "TIMEOUT_GUARD_THRESHOLD_SECONDS", "10"
            )
            lease_ttl_seconds = _positive_int("LEASE_TTL_SECONDS", "360")
            if lease_ttl_seconds < runtime_hard_limit_seconds:
                raise ValueError(
                    "LEASE_TTL_SECONDS must be at least RUNTIME_HARD_LIMIT_SECONDS."
                )

            # --- Optional report projection ---
            report_bucket = os.getenv("REPORT_BUCKET_NAME") or None
            report_kms_key_id = os.getenv("REPORT_KMS_KEY_ID") or None

            # --- Handle special-case variables like log level ---
            log_level = os.getenv("LOG_LEVEL", "INFO").upper()
            allowed_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
            if log_level not in allowed_log_levels:
                raise ValueError(
                    f"LOG_LEVEL must be one of {allowed_log_levels}, not '{log_level}'"
                )

        except KeyError as e:
            raise ConfigurationError(
                f"Missing required environment variable: {e.args[0]}"
            ) from e
        except (ValueError, TypeError) as e:
            raise ConfigurationError(
                f"Invalid value for an environment variable: {e}"
            ) from e

        return cls(
            service_name=service_name,
            environment=environment,
            sender_table=sender_table,
            source_query=source_query,
            required_label=required_label,
            page_size=page_size,
            source_timeout_seconds=source_timeout_seconds,
            source_max_retries=source_max_retries,
            gmail_secret_prefix=gmail_secret_prefix,
            checkpoint_threads=checkpoint_threads,
            checkpoint_interval_seconds=checkpoint_interval_seconds,
            runtime_hard_limit_seconds=runtime_hard_limit_seconds,
            timeout_guard_threshold_seconds=timeout_guard_threshold_seconds,
            lease_ttl_seconds=lease_ttl_seconds,
            report_bucket=report_bucket,
            report_kms_key_id=report_kms_key_id,
            log_level=log_level,
        )


# --- Singleton Factory Function (Lazy-loaded and Cached) ---
@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """
    Loads the application configuration from environment variables.
    The result is cached using lru_cache, so the environment is only read once
    on the first call. This avoids import-time side effects.
    """
    logger.info("Loading application configuration from environment...")
    return AppConfig.load_from_env()
