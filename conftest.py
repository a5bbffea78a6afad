"""Pytest configuration and fixtures for azavset tests.

CRITICAL: Tests must never read or write ~/.azavset/config.toml and must
never reach a real Azure subscription.
"""

import os

import pytest


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point ConfigManager at a temporary directory and clear AZAVSET_* overrides.

    Returns:
        Path of the isolated config file (not created)
    """
    from azavset.config_manager import ConfigManager

    config_dir = tmp_path / ".azavset"
    monkeypatch.setattr(ConfigManager, "DEFAULT_CONFIG_DIR", config_dir)
    monkeypatch.setattr(ConfigManager, "DEFAULT_CONFIG_FILE", config_dir / "config.toml")

    for name in list(os.environ):
        if name.startswith("AZAVSET_"):
            monkeypatch.delenv(name)

    return config_dir / "config.toml"

