"""Configuration management for cloudsync.

Settings are read from ``config.json`` and accounts from ``accounts.json``,
both inside the config directory (``~/.config/cloudsync`` unless
``CLOUDSYNC_CONFIG_DIR`` is set). Environment variables override the
numeric settings.
"""

import json
import logging
import os
import time
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

from .exceptions import ConfigError
from .utils import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_WORKERS,
    DEFAULT_MTIME_TOLERANCE,
    DEFAULT_RETRY_DELAY,
    DEFAULT_TOMBSTONE_TTL,
)

logger = logging.getLogger(__name__)


@dataclass
class SyncSettings:
    """Tunables for the sync engine."""

    max_workers: int = DEFAULT_MAX_WORKERS
    """Number of parallel transfers"""

    max_retries: int = DEFAULT_MAX_RETRIES
    """Retries for transient provider errors"""

    retry_delay: float = DEFAULT_RETRY_DELAY
    """Initial backoff delay in seconds"""

    mtime_tolerance: float = DEFAULT_MTIME_TOLERANCE
    """Timestamps closer than this many seconds are treated as equal"""

    keep_conflict_copies: bool = False
    """Keep the losing side of a conflict under a renamed path"""

    tombstone_ttl: float = DEFAULT_TOMBSTONE_TTL
    """Seconds after which tombstones are dropped from the manifest"""

    max_manifest_age: Optional[float] = None
    """Seconds after which the manifest is no longer trusted (None: always)"""

    ignore_patterns: list[str] = field(default_factory=list)
    """Glob patterns excluded from sync"""

    exclude_dot_files: bool = False
    """Exclude files and folders starting with a dot"""

    @classmethod
    def from_dict(cls, data: dict) -> "SyncSettings":
        """Create settings from a dictionary, ignoring unknown keys.

        Raises:
            ConfigError: If a known setting has the wrong type or range
        """
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown settings: {', '.join(sorted(unknown))}")
        settings = cls(**{k: v for k, v in data.items() if k in known})
        settings.validate()
        return settings

    def validate(self) -> None:
        """Check setting types and ranges.

        Raises:
            ConfigError: If a setting is invalid
        """
        for name in ("max_workers", "max_retries"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"Setting '{name}' must be an integer, got {value!r}")
        for name in ("retry_delay", "mtime_tolerance", "tombstone_ttl"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"Setting '{name}' must be a number, got {value!r}")
        if self.max_manifest_age is not None and (
            isinstance(self.max_manifest_age, bool)
            or not isinstance(self.max_manifest_age, (int, float))
        ):
            raise ConfigError(
                f"Setting 'max_manifest_age' must be a number, "
                f"got {self.max_manifest_age!r}"
            )
        for name in ("keep_conflict_copies", "exclude_dot_files"):
            if not isinstance(getattr(self, name), bool):
                raise ConfigError(f"Setting '{name}' must be true or false")
        if not isinstance(self.ignore_patterns, list) or not all(
            isinstance(p, str) for p in self.ignore_patterns
        ):
            raise ConfigError("Setting 'ignore_patterns' must be a list of strings")
        if self.max_workers < 1:
            raise ConfigError("Setting 'max_workers' must be at least 1")
        if self.max_retries < 0:
            raise ConfigError("Setting 'max_retries' must not be negative")


@dataclass
class Account:
    """A configured cloud account."""

    name: str
    service: str
    access_token: str
    valid_till: Optional[float] = None
    """Unix timestamp after which the token is expired (None: unknown)"""

    remote_root: str = ""
    """Remote folder that mirrors the local root"""

    options: dict[str, Any] = field(default_factory=dict)
    """Provider specific backend options"""

    @property
    def is_expired(self) -> bool:
        return self.valid_till is not None and time.time() >= self.valid_till

    @classmethod
    def from_dict(cls, name: str, data: dict) -> "Account":
        token = data.get("token", {})
        access_token = data.get("access_token") or token.get("access_token")
        service = data.get("service")
        if not service:
            raise ConfigError(f"Account '{name}' has no service")
        if not access_token:
            raise ConfigError(f"Account '{name}' has no access token")
        valid_till = data.get("valid_till", token.get("valid_till"))
        return cls(
            name=name,
            service=str(service).lower(),
            access_token=access_token,
            valid_till=float(valid_till) if valid_till is not None else None,
            remote_root=data.get("remote_root", ""),
            options=dict(data.get("options", {})),
        )


class Config:
    """Resolves configuration paths, settings and accounts."""

    def __init__(self, config_dir: Optional[Path] = None):
        self._config_dir = config_dir

    @property
    def config_dir(self) -> Path:
        if self._config_dir is not None:
            return self._config_dir
        env_dir = os.environ.get("CLOUDSYNC_CONFIG_DIR")
        if env_dir:
            return Path(env_dir).expanduser()
        return Path.home() / ".config" / "cloudsync"

    @property
    def config_file(self) -> Path:
        return self.config_dir / "config.json"

    @property
    def accounts_file(self) -> Path:
        return self.config_dir / "accounts.json"

    @property
    def state_dir(self) -> Path:
        """Directory holding the sync manifests."""
        return self.config_dir / "manifests"

    def _read_json(self, path: Path) -> dict:
        if not path.exists():
            return {}
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Cannot read {path}: expected a JSON object")
        return data

    def load_settings(self) -> SyncSettings:
        """Load sync settings, applying environment overrides.

        Returns:
            SyncSettings with defaults for anything not configured
        """
        data = self._read_json(self.config_file).get("settings", {})
        if not isinstance(data, dict):
            raise ConfigError(
                f"Cannot read {self.config_file}: settings must be an object"
            )
        settings = SyncSettings.from_dict(data)

        env_workers = os.environ.get("CLOUDSYNC_MAX_WORKERS")
        if env_workers:
            settings.max_workers = self._env_int("CLOUDSYNC_MAX_WORKERS", env_workers)
        env_retries = os.environ.get("CLOUDSYNC_MAX_RETRIES")
        if env_retries:
            settings.max_retries = self._env_int("CLOUDSYNC_MAX_RETRIES", env_retries)

        settings.validate()
        return settings

    @staticmethod
    def _env_int(name: str, value: str) -> int:
        try:
            return int(value)
        except ValueError as e:
            raise ConfigError(f"{name} must be an integer, got {value!r}") from e

    def load_accounts(self) -> dict[str, Account]:
        data = self._read_json(self.accounts_file)
        # Accept both {"accounts": {...}} and a bare mapping
        accounts = data.get("accounts", data)
        return {
            name: Account.from_dict(name, value) for name, value in accounts.items()
        }

    def get_account(self, name: str) -> Account:
        """Look up an account by name.

        Raises:
            ConfigError: If the account is unknown
        """
        accounts = self.load_accounts()
        if name not in accounts:
            raise ConfigError(f"Unknown account '{name}', please log in first")
        return accounts[name]


# Global config instance
config = Config()
