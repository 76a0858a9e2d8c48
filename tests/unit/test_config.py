# tests/unit/test_config.py

import pytest

from sender_aggregator.config import ConfigurationError, get_config

OPTIONAL_VARS = [
    "SOURCE_QUERY",
    "REQUIRED_LABEL",
    "PAGE_SIZE",
    "SOURCE_TIMEOUT_SECONDS",
    "SOURCE_MAX_RETRIES",
    "GMAIL_SECRET_PREFIX",
    "CHECKPOINT_THREADS",
    "CHECKPOINT_INTERVAL_SECONDS",
    "RUNTIME_HARD_LIMIT_SECONDS",
    "TIMEOUT_GUARD_THRESHOLD_SECONDS",
    "LEASE_TTL_SECONDS",
    "REPORT_BUCKET_NAME",
    "REPORT_KMS_KEY_ID",
    "LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def clear_config_cache():
    """
    Fixture to automatically clear the lru_cache for get_config before each test.
    This ensures that each test gets a fresh configuration object based on its
    own monkeypatched environment.
    """
    get_config.cache_clear()
    yield
    get_config.cache_clear()


@pytest.fixture
def required_env(monkeypatch):
    """Sets only the required variables and clears every optional one."""
    monkeypatch.setenv("SERVICE_NAME", "test-service")
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setenv("SENDER_TABLE_NAME", "test-senders")
    for name in OPTIONAL_VARS:
        monkeypatch.delenv(name, raising=False)


def test_get_config_uses_defaults(required_env):
    """Tests that optional variables fall back to their default values."""
    # ACT
    config = get_config()

    # ASSERT
    assert config.service_name == "test-service"
    assert config.environment == "test"
    assert config.sender_table == "test-senders"
    assert config.source_query == "in:inbox"
    assert config.required_label == "INBOX"
    assert config.page_size == 50
    assert config.checkpoint_threads == 100
    assert config.checkpoint_interval_seconds == 60
    assert config.runtime_hard_limit_seconds == 300
    assert config.timeout_guard_threshold_seconds == 10
    assert config.lease_ttl_seconds == 360
    assert config.source_timeout_seconds == 30
    assert config.source_max_retries == 3
    assert config.report_bucket is None
    assert config.report_enabled is False
    assert config.log_level == "INFO"
    # Derived properties
    assert config.checkpoint_interval_ms == 60_000
    assert config.runtime_hard_limit_ms == 300_000
    assert config.timeout_guard_threshold_ms == 10_000


def test_get_config_happy_path(required_env, monkeypatch):
    """Tests that configuration loads correctly when all env vars are set."""
    # ARRANGE
    monkeypatch.setenv("SOURCE_QUERY", "label:newsletters")
    monkeypatch.setenv("REQUIRED_LABEL", "")
    monkeypatch.setenv("PAGE_SIZE", "100")
    monkeypatch.setenv("CHECKPOINT_THREADS", "25")
    monkeypatch.setenv("CHECKPOINT_INTERVAL_SECONDS", "30")
    monkeypatch.setenv("RUNTIME_HARD_LIMIT_SECONDS", "600")
    monkeypatch.setenv("LEASE_TTL_SECONDS", "900")
    monkeypatch.setenv("SOURCE_MAX_RETRIES", "0")
    monkeypatch.setenv("GMAIL_SECRET_PREFIX", "prod/gmail/")
    monkeypatch.setenv("REPORT_BUCKET_NAME", "reports")
    monkeypatch.setenv("REPORT_KMS_KEY_ID", "kms-key")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    # ACT
    config = get_config()

    # ASSERT
    assert config.source_query == "label:newsletters"
    assert config.required_label == ""
    assert config.page_size == 100
    assert config.checkpoint_threads == 25
    assert config.checkpoint_interval_ms == 30_000
    assert config.runtime_hard_limit_ms == 600_000
    assert config.source_max_retries == 0
    assert config.report_enabled is True
    assert config.report_kms_key_id == "kms-key"
    assert config.log_level == "DEBUG"
    assert config.gmail_secret_name("alice") == "prod/gmail/alice"


def test_get_config_is_cached(required_env):
    """The configuration is loaded once and reused."""
    assert get_config() is get_config()


@pytest.mark.parametrize("missing", ["SERVICE_NAME", "ENVIRONMENT", "SENDER_TABLE_NAME"])
def test_get_config_missing_required_variable(required_env, monkeypatch, missing):
    """Tests that a ConfigurationError is raised if a required variable is missing."""
    monkeypatch.delenv(missing)

    with pytest.raises(ConfigurationError, match=missing):
        get_config()


@pytest.mark.parametrize(
    "name, value",
    [
        ("PAGE_SIZE", "0"),
        ("PAGE_SIZE", "101"),
        ("PAGE_SIZE", "fifty"),
        ("CHECKPOINT_THREADS", "-1"),
        ("SOURCE_MAX_RETRIES", "-1"),
        ("SOURCE_QUERY", "   "),
        ("LOG_LEVEL", "VERBOSE"),
        ("LEASE_TTL_SECONDS", "60"),
    ],
)
def test_get_config_invalid_values(required_env, monkeypatch, name, value):
    """Tests that invalid values fail fast with a ConfigurationError."""
    monkeypatch.setenv(name, value)

    with pytest.raises(ConfigurationError):
        get_config()
