"""
Configuration management for meshdeploy.

Handles:
- AWS region and lock table
- Location of the environments table
- Health gate polling policy
- Default capability flags for deployment runs
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
import logging

logger = logging.getLogger(__name__)

# Default paths
DEFAULT_DATA_DIR = Path.home() / ".meshdeploy"

DEFAULT_LOCK_TABLE = "appmesh-grpc-service-deploy"
DEFAULT_POLL_INTERVAL = 5.0


@dataclass
class PollConfig:
    """Polling policy for the health gate."""
    interval: float = DEFAULT_POLL_INTERVAL
    backoff: float = 1.5
    max_interval: float = 30.0
    timeout: Optional[float] = 1800.0  # None waits forever
    max_polls: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "interval": self.interval,
            "backoff": self.backoff,
            "max_interval": self.max_interval,
            "timeout": self.timeout,
            "max_polls": self.max_polls,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PollConfig":
        known_fields = {"interval", "backoff", "max_interval", "timeout", "max_polls"}
        filtered = {k: v for k, v in data.items() if k in known_fields}
        return cls(**filtered)


@dataclass
class CapabilityConfig:
    """Default capability flags; the CLI can override them per run."""
    use_lock: bool = True
    publish_parameter: bool = True
    discover_network: bool = False
    release_lock_on_failure: bool = False

    def to_dict(self) -> dict:
        return {
            "use_lock": self.use_lock,
            "publish_parameter": self.publish_parameter,
            "discover_network": self.discover_network,
            "release_lock_on_failure": self.release_lock_on_failure,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CapabilityConfig":
        known_fields = {"use_lock", "publish_parameter", "discover_network", "release_lock_on_failure"}
        return cls(**{k: v for k, v in data.items() if k in known_fields})


@dataclass
class Config:
    """
    Main meshdeploy configuration.

    Stored at ~/.meshdeploy/config.json
    """
    data_dir: Path = field(default_factory=lambda: DEFAULT_DATA_DIR)

    # AWS
    region: Optional[str] = None
    profile: Optional[str] = None
    lock_table: str = DEFAULT_LOCK_TABLE

    # Environments table; relative paths resolve against data_dir
    environments_file: str = "environments.yaml"

    poll: PollConfig = field(default_factory=PollConfig)
    capabilities: CapabilityConfig = field(default_factory=CapabilityConfig)

    @property
    def config_path(self) -> Path:
        return self.data_dir / "config.json"

    @property
    def environments_path(self) -> Path:
        path = Path(self.environments_file).expanduser()
        if path.is_absolute():
            return path
        return self.data_dir / path

    def ensure_data_dir(self) -> None:
        """Create data directory if it doesn't exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def to_dict(self) -> dict:
        return {
            "region": self.region,
            "profile": self.profile,
            "lock_table": self.lock_table,
            "environments_file": self.environments_file,
            "poll": self.poll.to_dict(),
            "capabilities": self.capabilities.to_dict(),
        }

    def save(self) -> None:
        """Save configuration to disk."""
        self.ensure_data_dir()

        with open(self.config_path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

        logger.debug(f"Configuration saved to {self.config_path}")

    @classmethod
    def load(cls, data_dir: Optional[Path] = None) -> "Config":
        """Load configuration from disk."""
        data_dir = data_dir or DEFAULT_DATA_DIR
        config_path = data_dir / "config.json"

        if not config_path.exists():
            return cls(data_dir=data_dir)

        with open(config_path, 'r') as f:
            data = json.load(f)

        config = cls(
            data_dir=data_dir,
            region=data.get("region"),
            profile=data.get("profile"),
            lock_table=data.get("lock_table", DEFAULT_LOCK_TABLE),
            environments_file=data.get("environments_file", "environments.yaml"),
        )

        if "poll" in data:
            config.poll = PollConfig.from_dict(data["poll"])

        if "capabilities" in data:
            config.capabilities = CapabilityConfig.from_dict(data["capabilities"])

        return config


# Global config instance
_config: Optional[Config] = None


def get_config(data_dir: Optional[Path] = None) -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load(data_dir)
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration instance."""
    global _config
    _config = None
