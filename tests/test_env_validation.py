import os

import pytest

from env_validation import ConfigurationError, get_env_float, validate_environment


def test_defaults_are_applied(monkeypatch):
    monkeypatch.delenv("MIRROR_TIMEOUT_SECONDS", raising=False)

    validate_environment()

    assert os.environ["GITHUB_API_URL"] == "https://api.github.com"
    assert os.environ["MIRROR_TIMEOUT_SECONDS"] == "60"
    assert os.environ["SYNC_DEBOUNCE_SECONDS"] == "1.0"


@pytest.mark.parametrize(
    "name,value",
    [
        ("KV_URL", "postgres://db"),
        ("GITHUB_API_URL", "api.github.com"),
        ("API_BASE_URL", "localhost:8000"),
        ("MIRROR_TIMEOUT_SECONDS", "0"),
        ("SYNC_DEBOUNCE_SECONDS", "-1"),
    ],
)
def test_invalid_values_raise(monkeypatch, name, value):
    monkeypatch.setenv(name, value)

    with pytest.raises(ConfigurationError):
        validate_environment()


def test_env_float_helper(monkeypatch):
    monkeypatch.setenv("NUM", "2.5")
    monkeypatch.setenv("BAD_NUM", "abc")

    assert get_env_float("NUM", 1.0) == 2.5
    assert get_env_float("BAD_NUM", 1.0) == 1.0
