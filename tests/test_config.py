import os
from unittest.mock import patch

import pytest

from teamcity_mcp.config import get_mcp_mode, load_config


def test_load_config_reads_environment():
    env = {
        "TEAMCITY_URL": "https://tc.example.com/",
        "TEAMCITY_TOKEN": "mock-token",
        "MCP_MODE": "full",
        "TEAMCITY_TIMEOUT": "12.5",
        "TEAMCITY_MAX_RETRIES": "0",
        "LOG_LEVEL": "DEBUG",
    }
    with patch.dict(os.environ, env, clear=True):
        config = load_config(load_env_file=False)
    assert config.url == "https://tc.example.com"
    assert config.token == "mock-token"
    assert config.mode == "full"
    assert config.timeout == 12.5
    assert config.max_retries == 0
    assert config.log_level == "debug"


def test_load_config_accepts_aliases():
    env = {"TEAMCITY_SERVER_URL": "https://tc.example.com", "TEAMCITY_API_TOKEN": "t"}
    with patch.dict(os.environ, env, clear=True):
        config = load_config(load_env_file=False)
    assert config.url == "https://tc.example.com"
    assert config.mode == "dev"
    assert config.timeout == 30.0
    assert config.max_retries == 3


def test_load_config_lists_missing_variables():
    with patch.dict(os.environ, {}, clear=True):
        with pytest.raises(ValueError, match="TEAMCITY_URL, TEAMCITY_TOKEN"):
            load_config(load_env_file=False)


@pytest.mark.parametrize("timeout", ["abc", "0", "-3"])
def test_load_config_rejects_bad_timeout(timeout):
    env = {"TEAMCITY_URL": "https://tc", "TEAMCITY_TOKEN": "t", "TEAMCITY_TIMEOUT": timeout}
    with patch.dict(os.environ, env, clear=True):
        with pytest.raises(ValueError, match="TEAMCITY_TIMEOUT"):
            load_config(load_env_file=False)


def test_invalid_mode():
    with patch.dict(os.environ, {"MCP_MODE": "admin"}, clear=True):
        with pytest.raises(ValueError, match="Invalid MCP_MODE"):
            get_mcp_mode()


def test_invalid_log_level():
    env = {"TEAMCITY_URL": "https://tc", "TEAMCITY_TOKEN": "t", "LOG_LEVEL": "verbose"}
    with patch.dict(os.environ, env, clear=True):
        with pytest.raises(ValueError, match="Invalid LOG_LEVEL"):
            load_config(load_env_file=False)


@pytest.mark.parametrize("retries", ["many", "-1", "2.5"])
def test_load_config_rejects_bad_retry_count(retries):
    env = {"TEAMCITY_URL": "https://tc", "TEAMCITY_TOKEN": "t", "TEAMCITY_MAX_RETRIES": retries}
    with patch.dict(os.environ, env, clear=True):
        with pytest.raises(ValueError, match="TEAMCITY_MAX_RETRIES"):
            load_config(load_env_file=False)
