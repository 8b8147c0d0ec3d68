"""Configuration management module.

Persistent team cache settings in TOML format: which object store backs the
cache, lease and timeout tuning, audit retention, the cost fetcher, and the
tracked teams.

Security:
- Config file permissions: 0600 (owner read/write only)
- Path validation for custom config paths
- Storage secrets are never stored here; connection strings come from the
  AZURE_STORAGE_CONNECTION_STRING environment variable
"""

import logging
import os
import re
import tempfile
from dataclasses import asdict, dataclass, field, fields, replace
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

from teamcache.errors import ConfigError

logger = logging.getLogger(__name__)

BACKENDS = ("memory", "local", "azure")
TEAM_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]{1,64}$")
CONFIG_ENV_VAR = "TEAMCACHE_CONFIG"


@dataclass
class TeamCacheConfig:
    """Team cache configuration data."""

    enabled: bool = False
    backend: str = "azure"
    account_url: str | None = None  # https://<account>.blob.core.windows.net
    container_name: str | None = None
    local_root: str | None = None  # directory for the local backend
    cache_prefix: str = "team-cache"
    ttl_override: float | None = None  # entry TTL in seconds (default 24h)
    lease_ttl: float = 120.0
    operation_timeout: float = 15.0
    enable_audit_logging: bool = True
    audit_retention_days: int = 365
    display_name: str | None = None
    fetcher: str | None = None  # "package.module:callable"
    teams: dict[str, str] = field(default_factory=dict)  # team_id -> account_id

    @property
    def is_valid(self) -> bool:
        """Enabled and pointing at a usable store location."""
        if not self.enabled or self.backend not in BACKENDS:
            return False
        if self.backend == "azure":
            has_location = bool(self.account_url) or bool(os.getenv("AZURE_STORAGE_CONNECTION_STRING"))
            return has_location and bool(self.container_name)
        if self.backend == "local":
            return bool(self.local_root)
        return True

    @property
    def effective_operation_timeout(self) -> float:
        """Operation timeout clamped to the 10-30s window."""
        return min(30.0, max(10.0, self.operation_timeout))

    @property
    def entry_ttl_seconds(self) -> float:
        return self.ttl_override if self.ttl_override is not None else 24 * 60 * 60

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, excluding None values."""
        data = asdict(self)
        # TOML has no null
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TeamCacheConfig":
        """Create from dictionary."""
        defaults = cls()
        teams = data.get("teams") or {}
        if not isinstance(teams, dict):
            raise ConfigError("'teams' must be a table of team_id = account_id")
        return cls(
            enabled=bool(data.get("enabled", defaults.enabled)),
            backend=str(data.get("backend", defaults.backend)),
            account_url=data.get("account_url"),
            container_name=data.get("container_name"),
            local_root=data.get("local_root"),
            cache_prefix=str(data.get("cache_prefix", defaults.cache_prefix)),
            ttl_override=data.get("ttl_override"),
            lease_ttl=float(data.get("lease_ttl", defaults.lease_ttl)),
            operation_timeout=float(data.get("operation_timeout", defaults.operation_timeout)),
            enable_audit_logging=bool(data.get("enable_audit_logging", defaults.enable_audit_logging)),
            audit_retention_days=int(data.get("audit_retention_days", defaults.audit_retention_days)),
            display_name=data.get("display_name"),
            fetcher=data.get("fetcher"),
            teams={str(k): str(v) for k, v in teams.items()},
        )


class ConfigManager:
    """Read and write the team cache configuration file.

    The file lives at ~/.teamcache/config.toml unless TEAMCACHE_CONFIG (or an
    explicit path) points elsewhere. Writes are atomic and leave the file
    readable by its owner only.
    """

    DEFAULT_CONFIG_DIR = Path.home() / ".teamcache"
    DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.toml"

    @classmethod
    def _allowed_roots(cls) -> list[Path]:
        return [
            cls.DEFAULT_CONFIG_DIR.resolve(),
            Path.cwd().resolve(),
            Path(tempfile.gettempdir()).resolve(),
        ]

    @classmethod
    def _checked_custom_path(cls, raw: str) -> Path:
        """Resolve a user-supplied config path and confine it to the allowed roots.

        Raises:
            ConfigError: If the resolved path escapes ~/.teamcache, the working
                directory and the temp directory
        """
        candidate = Path(raw).expanduser().resolve()
        if any(candidate.is_relative_to(root) for root in cls._allowed_roots()):
            return candidate

        roots = "\n".join(f"  - {root}" for root in cls._allowed_roots())
        raise ConfigError(f"Config path outside allowed directories: {candidate}\nAllowed:\n{roots}")

    @classmethod
    def get_config_path(cls, custom_path: str | None = None) -> Path:
        """Path of the config file to read.

        Raises:
            ConfigError: If an explicit or TEAMCACHE_CONFIG path is not allowed
                or does not exist
        """
        requested = custom_path or os.getenv(CONFIG_ENV_VAR)
        if not requested:
            return cls.DEFAULT_CONFIG_FILE

        path = cls._checked_custom_path(requested)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        return path

    @classmethod
    def _writable_config_path(cls, custom_path: str | None) -> Path:
        requested = custom_path or os.getenv(CONFIG_ENV_VAR)
        if requested:
            path = cls._checked_custom_path(requested)
            path.parent.mkdir(parents=True, exist_ok=True)
            return path

        cls.DEFAULT_CONFIG_DIR.mkdir(parents=True, exist_ok=True)
        cls.DEFAULT_CONFIG_DIR.chmod(0o700)
        return cls.DEFAULT_CONFIG_FILE

    @staticmethod
    def _restrict_permissions(path: Path) -> None:
        mode = path.stat().st_mode & 0o777
        if mode & 0o077:
            logger.warning(f"Config file {path} is accessible by others ({oct(mode)}), setting 0600")
            path.chmod(0o600)

    @classmethod
    def load_config(cls, custom_path: str | None = None) -> TeamCacheConfig:
        """Load configuration, falling back to defaults when no file exists.

        Raises:
            ConfigError: If the file cannot be read or parsed
        """
        path = cls.get_config_path(custom_path)
        if not path.exists():
            logger.debug(f"No config at {path}, using defaults")
            return TeamCacheConfig()

        try:
            cls._restrict_permissions(path)
            with path.open("rb") as f:
                data = tomli.load(f)  # type: ignore[attr-defined]
            config = TeamCacheConfig.from_dict(data)
        except (OSError, TypeError, ValueError) as e:
            raise ConfigError(f"Failed to load config from {path}: {e}") from e

        logger.debug(f"Loaded config from {path}")
        return config

    @classmethod
    def save_config(cls, config: TeamCacheConfig, custom_path: str | None = None) -> Path:
        """Write ``config``, keeping comments and layout of an existing file.

        Returns:
            Path written

        Raises:
            ConfigError: If the path is not allowed or the write fails
        """
        try:
            path = cls._writable_config_path(custom_path)
        except OSError as e:
            raise ConfigError(f"Failed to create config directory: {e}") from e

        staging = path.with_name(f".{path.name}.tmp")
        try:
            document = tomlkit.parse(path.read_text()) if path.exists() else tomlkit.document()
            values = config.to_dict()
            for stale_key in [key for key in document if key not in values]:
                del document[stale_key]
            document.update(values)

            staging.write_text(tomlkit.dumps(document))
            staging.chmod(0o600)
            staging.replace(path)
        except (OSError, ValueError) as e:
            staging.unlink(missing_ok=True)
            raise ConfigError(f"Failed to save config to {path}: {e}") from e

        logger.debug(f"Saved config to {path}")
        return path

    @classmethod
    def update_config(cls, custom_path: str | None = None, **updates: Any) -> TeamCacheConfig:
        """Apply ``updates`` to the stored configuration and save it.

        Raises:
            ConfigError: If a key is unknown, the backend is not supported, or
                the write fails
        """
        config = cls.load_config(custom_path)
        known = {f.name for f in fields(TeamCacheConfig)}
        unknown = sorted(set(updates) - known)
        if unknown:
            raise ConfigError(f"Unknown config key: {', '.join(unknown)}")

        config = replace(config, **updates)
        if config.backend not in BACKENDS:
            raise ConfigError(f"Unknown backend '{config.backend}'. Choose from: {', '.join(BACKENDS)}")

        cls.save_config(config, custom_path)
        return config

    @classmethod
    def add_team(cls, team_id: str, account_id: str, custom_path: str | None = None) -> TeamCacheConfig:
        """Track a team, mapping it to its billing account.

        Raises:
            ConfigError: If the team id has an invalid format
        """
        if not TEAM_ID_PATTERN.match(team_id):
            raise ConfigError(
                f"Invalid team id: {team_id}\n"
                "Team ids are 1-64 letters, digits, dots, hyphens or underscores."
            )
        config = cls.load_config(custom_path)
        config.teams[team_id] = account_id
        cls.save_config(config, custom_path)
        return config

    @classmethod
    def remove_team(cls, team_id: str, custom_path: str | None = None) -> bool:
        """Stop tracking a team. Returns False if it was not tracked."""
        config = cls.load_config(custom_path)
        if config.teams.pop(team_id, None) is None:
            return False
        cls.save_config(config, custom_path)
        return True


__all__ = ["BACKENDS", "ConfigManager", "TeamCacheConfig"]
