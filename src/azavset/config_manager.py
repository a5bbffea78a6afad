"""Configuration management module.

This module handles persistent configuration storage using TOML format.
Stores operator preferences: default resource group, where audit templates
go, the size/unresolved-VM policies and per-call Azure CLI timeouts.

Precedence: CLI flag > AZAVSET_* environment variable > config file > default.

Security:
- Config file permissions: 0600 (owner read/write only)
- Atomic writes (temp file + rename)
"""

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

try:
    import tomli  # type: ignore[import]
except ImportError:
    # Fallback for Python versions that ship tomllib
    try:
        import tomllib as tomli  # type: ignore[import]
    except ImportError as e:
        raise ImportError("toml library not available. Install with: pip install tomli") from e

try:
    import tomlkit
except ImportError as e:
    raise ImportError("tomlkit library not available. Install with: pip install tomlkit") from e

from azavset.exceptions import ConfigError
from azavset.template_transformer import SIZE_CHECK_MODES, UNRESOLVED_VM_POLICIES

logger = logging.getLogger(__name__)

ENV_PREFIX = "AZAVSET_"


@dataclass
class Timeouts:
    """Per-call Azure CLI timeouts in seconds."""

    query: int = 60
    export: int = 300
    stop: int = 600
    delete: int = 900
    validate: int = 300
    deploy: int = 3600


@dataclass
class MoverSettings:
    """Explicit error/execution policy for one join or leave run."""

    output_dir: Path = Path(".")
    dry_run: bool = True
    size_check: str = "uniform"
    unresolved_vm_policy: str = "skip"
    validate_before_deploy: bool = True


@dataclass
class AzavsetConfig:
    """azavset configuration data."""

    default_resource_group: str | None = None
    output_dir: str = "."
    size_check: str = "uniform"
    unresolved_vm_policy: str = "skip"
    validate_before_deploy: bool = True
    az_max_attempts: int = 1
    timeouts: Timeouts = field(default_factory=Timeouts)

    def __post_init__(self) -> None:
        if self.size_check not in SIZE_CHECK_MODES:
            raise ConfigError(
                f"Invalid size_check '{self.size_check}', expected one of "
                f"{', '.join(SIZE_CHECK_MODES)}"
            )
        if self.unresolved_vm_policy not in UNRESOLVED_VM_POLICIES:
            raise ConfigError(
                f"Invalid unresolved_vm_policy '{self.unresolved_vm_policy}', expected one of "
                f"{', '.join(UNRESOLVED_VM_POLICIES)}"
            )
        if self.az_max_attempts < 1:
            raise ConfigError("az_max_attempts must be at least 1")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        data = asdict(self)
        # TOML has no null
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AzavsetConfig":
        """Create from dictionary."""
        timeouts = data.get("timeouts") or {}
        known_timeouts = {f.name for f in fields(Timeouts)}
        unknown = set(timeouts) - known_timeouts
        if unknown:
            raise ConfigError(f"Unknown timeout keys: {', '.join(sorted(unknown))}")

        return cls(
            default_resource_group=data.get("default_resource_group"),
            output_dir=str(data.get("output_dir", ".")),
            size_check=data.get("size_check", "uniform"),
            unresolved_vm_policy=data.get("unresolved_vm_policy", "skip"),
            validate_before_deploy=bool(data.get("validate_before_deploy", True)),
            az_max_attempts=int(data.get("az_max_attempts", 1)),
            timeouts=Timeouts(**{k: int(v) for k, v in timeouts.items()}),
        )

    def mover_settings(self, dry_run: bool) -> MoverSettings:
        """Build the per-run policy passed to the mover."""
        return MoverSettings(
            output_dir=Path(self.output_dir).expanduser(),
            dry_run=dry_run,
            size_check=self.size_check,
            unresolved_vm_policy=self.unresolved_vm_policy,
            validate_before_deploy=self.validate_before_deploy,
        )


def _coerce(key: str, raw: str) -> Any:
    """Convert a string value (env var or CLI) to the type of config key."""
    if key.startswith("timeouts."):
        return int(raw)
    if key == "validate_before_deploy":
        lowered = raw.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"expected a boolean, got '{raw}'")
    if key == "az_max_attempts":
        return int(raw)
    return raw


class ConfigManager:
    """Manage azavset configuration file.

    Configuration is stored at ~/.azavset/config.toml with secure permissions.
    """

    DEFAULT_CONFIG_DIR = Path.home() / ".azavset"
    DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.toml"

    SETTABLE_KEYS = (
        "default_resource_group",
        "output_dir",
        "size_check",
        "unresolved_vm_policy",
        "validate_before_deploy",
        "az_max_attempts",
        *(f"timeouts.{f.name}" for f in fields(Timeouts)),
    )

    @classmethod
    def get_config_path(cls, custom_path: str | None = None) -> Path:
        """Get configuration file path.

        Raises:
            ConfigError: If a custom path is given and does not exist
        """
        if custom_path:
            path = Path(custom_path).expanduser().resolve()
            if not path.exists():
                raise ConfigError(f"Config file not found: {path}")
            return path

        return cls.DEFAULT_CONFIG_FILE

    @classmethod
    def _read_file(cls, config_path: Path) -> dict[str, Any]:
        if not config_path.exists():
            logger.debug("Config file not found, using defaults")
            return {}

        try:
            mode = config_path.stat().st_mode & 0o777
            if mode & 0o077:
                logger.warning(
                    f"Config file has insecure permissions: {oct(mode)}. Fixing to 0600..."
                )
                os.chmod(config_path, 0o600)

            with open(config_path, "rb") as f:
                data = tomli.load(f)  # type: ignore[attr-defined]

            logger.debug(f"Loaded config from: {config_path}")
            return dict(data)

        except Exception as e:
            raise ConfigError(f"Failed to load config: {e}") from e

    @classmethod
    def _apply_environment(cls, data: dict[str, Any]) -> dict[str, Any]:
        """Overlay AZAVSET_* environment variables onto file data."""
        for key in cls.SETTABLE_KEYS:
            env_name = ENV_PREFIX + key.replace("timeouts.", "timeout_").upper()
            raw = os.getenv(env_name)
            if raw is None:
                continue
            try:
                value = _coerce(key, raw)
            except ValueError as e:
                raise ConfigError(f"Invalid {env_name}: {e}") from e

            if key.startswith("timeouts."):
                timeouts = dict(data.get("timeouts") or {})
                timeouts[key.split(".", 1)[1]] = value
                data["timeouts"] = timeouts
            else:
                data[key] = value
            logger.debug(f"Config {key} overridden by {env_name}")
        return data

    @classmethod
    def load_config(cls, custom_path: str | None = None) -> AzavsetConfig:
        """Load configuration from file and environment.

        Raises:
            ConfigError: If loading or validation fails
        """
        data = cls._read_file(cls.get_config_path(custom_path))
        data = cls._apply_environment(data)
        try:
            return AzavsetConfig.from_dict(data)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    @classmethod
    def save_config(cls, config: AzavsetConfig, custom_path: str | None = None) -> Path:
        """Save configuration to file, preserving comments in an existing file.

        Returns:
            Path written

        Raises:
            ConfigError: If saving fails
        """
        temp_path: Path | None = None
        try:
            if custom_path:
                config_path = Path(custom_path).expanduser().resolve()
                config_path.parent.mkdir(parents=True, exist_ok=True)
            else:
                cls.DEFAULT_CONFIG_DIR.mkdir(parents=True, exist_ok=True)
                os.chmod(cls.DEFAULT_CONFIG_DIR, 0o700)
                config_path = cls.DEFAULT_CONFIG_FILE

            temp_path = config_path.with_suffix(".tmp")

            if config_path.exists():
                with open(config_path) as f:
                    doc = tomlkit.load(f)
            else:
                doc = tomlkit.document()

            for key, value in config.to_dict().items():
                doc[key] = value

            with open(temp_path, "w") as f:
                tomlkit.dump(doc, f)

            os.chmod(temp_path, 0o600)
            temp_path.replace(config_path)

            logger.debug(f"Saved config to: {config_path}")
            return config_path

        except Exception as e:
            if temp_path and temp_path.exists():
                temp_path.unlink()
            raise ConfigError(f"Failed to save config: {e}") from e

    @classmethod
    def set_value(cls, key: str, raw_value: str, custom_path: str | None = None) -> AzavsetConfig:
        """Set a single config key from its string form (e.g. 'timeouts.deploy' '1800').

        Raises:
            ConfigError: On an unknown key or invalid value
        """
        if key not in cls.SETTABLE_KEYS:
            raise ConfigError(
                f"Unknown config key '{key}'. Valid keys: {', '.join(cls.SETTABLE_KEYS)}"
            )

        try:
            value = _coerce(key, raw_value)
        except ValueError as e:
            raise ConfigError(f"Invalid value for {key}: {e}") from e

        config_path = (
            Path(custom_path).expanduser().resolve() if custom_path else cls.DEFAULT_CONFIG_FILE
        )
        data = cls._read_file(config_path)
        if key.startswith("timeouts."):
            timeouts = dict(data.get("timeouts") or {})
            timeouts[key.split(".", 1)[1]] = value
            data["timeouts"] = timeouts
        else:
            data[key] = value

        try:
            config = AzavsetConfig.from_dict(data)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

        cls.save_config(config, custom_path)
        return config

    @classmethod
    def get_resource_group(
        cls, cli_value: str | None = None, custom_path: str | None = None
    ) -> str | None:
        """Get resource group with CLI override."""
        if cli_value:
            return cli_value

        config = cls.load_config(custom_path)
        return config.default_resource_group


__all__ = ["AzavsetConfig", "ConfigManager", "MoverSettings", "Timeouts"]
