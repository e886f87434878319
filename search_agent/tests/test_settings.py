import pytest

from search_agent.domain.errors import AuthenticationError, ConfigurationError
from search_agent.infrastructure.config.settings import REQUIRED_SETTINGS, load_settings
from search_agent.infrastructure.security.token_validator import extract_bearer_token, verify_token


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for env_name in REQUIRED_SETTINGS.values():
        monkeypatch.delenv(env_name, raising=False)
    monkeypatch.delenv("LOG_FORMAT", raising=False)
    monkeypatch.delenv("MAX_TOOL_STEPS", raising=False)


def set_required(monkeypatch, skip=()):
    values = {
        "MODEL_API_KEY": "model-key",
        "SEARCH_API_KEY": "search-key",
        "SEARCH_ENGINE_ID": "engine",
        "CHECKPOINT_STORE_URL": "memory://",
        "ADMIN_API_KEY": "secret",
    }
    for name, value in values.items():
        if name not in skip:
            monkeypatch.setenv(name, value)


def test_all_missing_names_reported_together():
    with pytest.raises(ConfigurationError) as excinfo:
        load_settings(_env_file=None)

    assert excinfo.value.missing == [
        "MODEL_API_KEY", "SEARCH_API_KEY", "SEARCH_ENGINE_ID", "CHECKPOINT_STORE_URL", "ADMIN_API_KEY"
    ]
    assert excinfo.value.to_dict()["missing"] == excinfo.value.missing
    assert excinfo.value.http_status == 500


def test_only_absent_names_reported(monkeypatch):
    set_required(monkeypatch, skip=("SEARCH_ENGINE_ID", "ADMIN_API_KEY"))

    with pytest.raises(ConfigurationError) as excinfo:
        load_settings(_env_file=None)

    assert excinfo.value.missing == ["SEARCH_ENGINE_ID", "ADMIN_API_KEY"]


def test_blank_values_count_as_missing(monkeypatch):
    set_required(monkeypatch)
    monkeypatch.setenv("ADMIN_API_KEY", "   ")

    with pytest.raises(ConfigurationError) as excinfo:
        load_settings(_env_file=None)

    assert excinfo.value.missing == ["ADMIN_API_KEY"]


def test_complete_configuration_with_defaults(monkeypatch):
    set_required(monkeypatch)
    monkeypatch.setenv("MAX_TOOL_STEPS", "3")

    settings = load_settings(_env_file=None)

    assert settings.max_tool_steps == 3
    assert settings.tool_timeout_seconds == 8.0
    assert settings.checkpoint_ttl_seconds == 604800
    assert settings.stream_queue_size == 32


def test_invalid_values_are_configuration_errors(monkeypatch):
    set_required(monkeypatch)
    monkeypatch.setenv("LOG_FORMAT", "xml")

    with pytest.raises(ConfigurationError) as excinfo:
        load_settings(_env_file=None)

    assert excinfo.value.missing == ["LOG_FORMAT"]


def test_bearer_token_extraction():
    assert extract_bearer_token("Bearer abc") == "abc"
    assert extract_bearer_token("bearer   abc  ") == "abc"

    for header in (None, "", "Basic abc", "Bearer ", "abc"):
        with pytest.raises(AuthenticationError):
            extract_bearer_token(header)


def test_verify_token():
    verify_token("Bearer secret", "secret")

    with pytest.raises(AuthenticationError) as excinfo:
        verify_token("Bearer guess", "secret")
    assert excinfo.value.http_status == 401
