"""
Store configuration.

Lives in .apiver/config.json next to the catalog. Written once by
``initialize`` with defaults; users may edit it afterwards. The secret
itself normally comes from the environment (APIVER_KEY), never from this
file, but a ``secret`` entry is honoured as a fallback for throwaway
setups.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.json"
CONFIG_FORMAT = 1

DEFAULT_SECRET_ENV = "APIVER_KEY"
DEFAULT_FULL_SNAPSHOT_INTERVAL = 5


@dataclass
class StoreConfig:
    full_snapshot_interval: int = DEFAULT_FULL_SNAPSHOT_INTERVAL
    exclude: list[str] = field(default_factory=list)
    secret_env: str = DEFAULT_SECRET_ENV
    secret: str | None = None

    def __post_init__(self):
        if not isinstance(self.full_snapshot_interval, int) or self.full_snapshot_interval < 0:
            raise ConfigurationError(
                f"Invalid config: full_snapshot_interval must be an integer >= 0, "
                f"got {self.full_snapshot_interval!r}\n"
                f"  Use 0 to disable periodic full snapshots."
            )
        if not isinstance(self.exclude, list) or not all(isinstance(e, str) for e in self.exclude):
            raise ConfigurationError(f"Invalid config: exclude must be a list of names, got {self.exclude!r}")

    def to_dict(self) -> dict:
        d = {
            "format": CONFIG_FORMAT,
            "full_snapshot_interval": self.full_snapshot_interval,
            "exclude": self.exclude,
            "secret_env": self.secret_env,
        }
        if self.secret is not None:
            d["secret"] = self.secret
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "StoreConfig":
        return cls(
            full_snapshot_interval=d.get("full_snapshot_interval", DEFAULT_FULL_SNAPSHOT_INTERVAL),
            exclude=d.get("exclude", []),
            secret_env=d.get("secret_env", DEFAULT_SECRET_ENV),
            secret=d.get("secret"),
        )

    @classmethod
    def load(cls, meta_dir: Path) -> "StoreConfig":
        """Read config.json from the metadata directory, defaults if absent."""
        config_path = meta_dir / CONFIG_FILE
        if not config_path.exists():
            return cls()
        try:
            data = json.loads(config_path.read_text())
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid config file {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Invalid config file {config_path}: expected an object")
        return cls.from_dict(data)

    def write_default(self, meta_dir: Path) -> bool:
        """Write config.json if it does not exist yet. Returns True if written."""
        config_path = meta_dir / CONFIG_FILE
        if config_path.exists():
            return False
        data = self.to_dict()
        data["created_at"] = time.time()
        config_path.write_text(json.dumps(data, indent=2))
        logger.debug("Wrote default config to %s", config_path)
        return True
