"""
Configuration loader for Backup Autopilot.

This module provides YAML configuration loading, validation using Pydantic,
and convenient dot-notation access to configuration values.
"""

import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from core.repo import Frequency
from lib.utils import expand_path

DEFAULT_CONFIG_PATH = Path("~/.config/backup-autopilot/backups.yml")
DEFAULT_STATE_DIR = Path("~/.local/state/backup-autopilot")
PASSWORD_ENV = "RESTIC_PASSWORD"


class ConfigError(Exception):
    """
    Exception raised for fatal configuration problems.

    Invalid YAML, failed validation and a missing repository password all
    abort the run before any volume is touched.
    """


def _default_volume_backend() -> str:
    return "diskutil" if sys.platform == "darwin" else "lsblk"


class TimeoutsConfig(BaseModel):
    """Timeouts (seconds) for external commands."""

    model_config = ConfigDict(extra="forbid")

    mount: int = Field(60, description="diskutil/udisksctl/lsblk calls")
    backup: int = Field(6 * 3600, description="One restic backup of one unit")
    prune: int = Field(3600, description="restic forget --prune")
    snapshots: int = Field(300, description="restic snapshots")

    @field_validator("mount", "backup", "prune", "snapshots")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate timeouts are positive."""
        if v < 1:
            raise ValueError("Timeouts must be at least 1 second")
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")

    level: str = Field("WARNING", description="Base level before -v flags")
    file: Optional[Path] = Field(None, description="Log file (default: $LOGFILE)")
    rotation: Optional[str] = Field("1 month", description="loguru rotation rule")
    retention: Optional[str] = Field(None, description="loguru retention rule")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()


class NotificationConfig(BaseModel):
    """Notification configuration."""

    model_config = ConfigDict(extra="forbid")

    title: str = Field("Backup Autopilot", description="Notification title")
    desktop: bool = Field(True, description="Show a desktop notification")
    webhook_url: Optional[str] = Field(None, description="Push monitor URL")
    webhook_timeout: int = Field(10, description="Push request timeout")

    @field_validator("webhook_url")
    @classmethod
    def validate_url(cls, v: Optional[str]) -> Optional[str]:
        """Ensure webhook URL is http(s)."""
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError("Webhook URL must start with http:// or https://")
        return v


class RepoConfig(BaseModel):
    """Individual backup job configuration."""

    model_config = ConfigDict(extra="forbid")

    volume: str = Field(..., description="Name of the volume holding the repository")
    freq: Frequency = Field(Frequency.DAILY, description="Frequency class")
    base: Path = Field(..., description="Directory the dirs are relative to")
    dirs: List[str] = Field(..., description="Directories backed up independently")

    @field_validator("freq", mode="before")
    @classmethod
    def parse_frequency(cls, v: Any) -> Frequency:
        """Unknown or missing frequencies fall back to daily."""
        if isinstance(v, Frequency):
            return v
        return Frequency.parse(v)

    @field_validator("base")
    @classmethod
    def expand_base(cls, v: Path) -> Path:
        """Expand ~ and require an absolute base."""
        v = v.expanduser()
        if not v.is_absolute():
            raise ValueError("Repo base must be an absolute path")
        return v

    @field_validator("dirs")
    @classmethod
    def validate_dirs(cls, v: List[str]) -> List[str]:
        """Units must be non-empty, unique, relative paths inside base."""
        if not v:
            raise ValueError("At least one directory is required")
        for unit in v:
            if not unit or not unit.strip():
                raise ValueError("Directory names cannot be empty")
            if Path(unit).is_absolute() or ".." in Path(unit).parts:
                raise ValueError(f"Directory '{unit}' must be relative to base")
        if len(set(v)) != len(v):
            raise ValueError("Directory names must be unique")
        return v


class BackupAutopilotConfig(BaseModel):
    """Root configuration model for Backup Autopilot."""

    model_config = ConfigDict(extra="forbid")

    host: str = Field(..., description="Host name recorded in snapshots")
    restic_password: Optional[str] = Field(None, description="Repository password")
    passfile: Optional[Path] = Field(None, description="YAML file holding the password")
    passkey: Optional[str] = Field(None, description="Key of the password in passfile")
    restic_binary: str = Field("restic", description="restic executable")
    state_dir: Path = Field(DEFAULT_STATE_DIR, description="Lock files and ledger")
    exclude_file: Optional[Path] = Field(
        Path("excludes.txt"), description="Exclude file applied to every job"
    )
    volume_backend: str = Field(
        default_factory=_default_volume_backend,
        description="Volume plugin (diskutil or lsblk)",
    )
    settle_seconds: float = Field(1.0, description="Pause after mount/unmount")
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    notification: NotificationConfig = Field(default_factory=NotificationConfig)
    volumes: Dict[str, str] = Field(default_factory=dict)
    repos: Dict[str, RepoConfig] = Field(default_factory=dict)

    @field_validator("host")
    @classmethod
    def validate_host(cls, v: str) -> str:
        """Host cannot be blank."""
        if not v.strip():
            raise ValueError("Host cannot be empty")
        return v.strip()

    @field_validator("volume_backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate volume backend."""
        allowed = ["diskutil", "lsblk"]
        if v.lower() not in allowed:
            raise ValueError(f"Volume backend must be one of {allowed}")
        return v.lower()

    @field_validator("settle_seconds")
    @classmethod
    def validate_settle(cls, v: float) -> float:
        """Settle delay cannot be negative."""
        if v < 0:
            raise ValueError("settle_seconds cannot be negative")
        return v

    @model_validator(mode="after")
    def validate_passfile(self) -> "BackupAutopilotConfig":
        """A passfile needs a passkey."""
        if self.passfile is not None and not self.passkey:
            raise ValueError("'passkey' is required when 'passfile' is set")
        return self

    @model_validator(mode="after")
    def validate_repo_volumes(self) -> "BackupAutopilotConfig":
        """Every repo must point at a configured volume."""
        for name, repo in self.repos.items():
            if repo.volume not in self.volumes:
                raise ValueError(
                    f"Repo '{name}' uses unknown volume '{repo.volume}'. "
                    f"Configured volumes: {', '.join(self.volumes) or 'none'}"
                )
        return self


class ConfigLoader:
    """
    Configuration loader with YAML parsing, Pydantic validation, and dot-notation access.

    Relative paths in the file (state_dir, exclude_file, passfile, logging.file)
    are resolved against the directory holding the configuration file.

    Example:
        >>> loader = ConfigLoader(Path("backups.yml"))
        >>> loader.get("host")
        'laptop'
        >>> loader.get("timeouts.backup")
        21600
    """

    MAX_DOT_DEPTH = 5

    def __init__(self, config_path: Path):
        """
        Initialize ConfigLoader.

        Args:
            config_path: Path to the YAML configuration file

        Raises:
            FileNotFoundError: If config file doesn't exist
            ConfigError: If YAML parsing or validation fails
        """
        self.config_path = Path(config_path).expanduser()
        self.config_dir = self.config_path.parent
        self._raw_config: Dict[str, Any] = {}
        self._validated_config: Optional[BackupAutopilotConfig] = None

        self._load_and_validate()

    def _load_yaml(self, path: Path) -> Dict[str, Any]:
        """
        Load a YAML file and return parsed content.

        Raises:
            FileNotFoundError: If file doesn't exist
            ConfigError: If YAML parsing fails or the document is not a mapping
        """
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        try:
            with open(path, "r", encoding="utf-8") as f:
                content = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML file {path}: {e}") from e

        if content is None:
            return {}
        if not isinstance(content, dict):
            raise ConfigError(
                f"Configuration must be a YAML dictionary, got {type(content).__name__}"
            )
        return content

    def _load_and_validate(self) -> None:
        self._raw_config = self._load_yaml(self.config_path)

        try:
            self._validated_config = BackupAutopilotConfig.model_validate(
                self._raw_config
            )
        except ValidationError as e:
            error_msg = (
                f"Configuration validation failed with {len(e.errors())} error(s):\n"
            )
            for error in e.errors():
                loc = ".".join(str(part) for part in error["loc"])
                error_msg += f"  - {loc}: {error['msg']}\n"
            raise ConfigError(error_msg.rstrip()) from e

    def _get_nested_value(
        self,
        data: Union[Dict[str, Any], BaseModel],
        keys: List[str],
        default: Any = None,
    ) -> Any:
        current = data

        for key in keys:
            if isinstance(current, BaseModel):
                if not hasattr(current, key):
                    return default
                current = getattr(current, key)
            elif isinstance(current, dict):
                if key not in current:
                    return default
                current = current[key]
            else:
                return default

        return current

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Dot-separated key path (e.g., "timeouts.mount")
            default: Default value if key doesn't exist

        Raises:
            ValueError: If key depth exceeds MAX_DOT_DEPTH
        """
        if not self._validated_config:
            return default

        keys = key.split(".")

        if len(keys) > self.MAX_DOT_DEPTH:
            raise ValueError(
                f"Dot notation depth exceeds maximum of {self.MAX_DOT_DEPTH} levels: {key}"
            )

        return self._get_nested_value(self._validated_config, keys, default)

    @property
    def config(self) -> BackupAutopilotConfig:
        return self._validated_config

    def get_volumes(self) -> Dict[str, str]:
        """Volume name -> UUID mapping."""
        return dict(self._validated_config.volumes)

    def get_repos(self) -> Dict[str, RepoConfig]:
        """Repo name -> RepoConfig mapping, in file order."""
        return dict(self._validated_config.repos)

    def resolve_path(self, path: Optional[Path]) -> Optional[Path]:
        """Expand ~ and resolve relative paths against the config directory."""
        if path is None:
            return None
        return expand_path(path, relative_to=self.config_dir)

    @property
    def state_dir(self) -> Path:
        return self.resolve_path(self._validated_config.state_dir)

    @property
    def exclude_file(self) -> Optional[Path]:
        return self.resolve_path(self._validated_config.exclude_file)

    def log_file(self, environ: Optional[Mapping[str, str]] = None) -> Optional[Path]:
        """Configured log file, else $LOGFILE, else None."""
        environ = os.environ if environ is None else environ
        if self._validated_config.logging.file is not None:
            return self.resolve_path(self._validated_config.logging.file)
        if environ.get("LOGFILE"):
            return Path(environ["LOGFILE"]).expanduser()
        return None

    def resolve_password(self, environ: Optional[Mapping[str, str]] = None) -> str:
        """
        Determine the restic repository password.

        The RESTIC_PASSWORD environment variable has precedence over the
        configuration file; then restic_password; then passfile[passkey].

        Raises:
            ConfigError: If no non-empty password can be found
        """
        environ = os.environ if environ is None else environ
        if environ.get(PASSWORD_ENV):
            return environ[PASSWORD_ENV]

        cfg = self._validated_config
        if cfg.restic_password:
            return cfg.restic_password

        if cfg.passfile is not None:
            passfile = self.resolve_path(cfg.passfile)
            try:
                secrets = self._load_yaml(passfile)
            except FileNotFoundError as e:
                raise ConfigError(f"Password file not found: {passfile}") from e
            password = secrets.get(cfg.passkey)
            if password:
                return str(password)

        raise ConfigError("Could not determine a password for restic")
