"""
Pointer store configuration.

One StoreConfig is handed to each ContentLifecycle; nothing here is
process-global.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from btpk.core.identity import DEFAULT_NAMESPACE


@dataclass
class StoreConfig:
    """Filesystem layout, time budgets and keep-alive pacing of one store."""

    folder: Path = Path("./btpk_data")
    storage: str = "storage"
    index_file: str = "index.db"
    seed_file: str = "seed"
    timeout: Optional[float] = 60.0  # Default caller budget (seconds)
    keepalive_interval: float = 3600.0
    keepalive_delay: float = 4.0  # Pause between reaffirmed items
    identity_namespace: bytes = DEFAULT_NAMESPACE

    def __post_init__(self):
        self.folder = Path(self.folder)

    @property
    def storage_dir(self) -> Path:
        return self.folder / self.storage

    @property
    def index_path(self) -> Path:
        return self.folder / self.index_file

    @property
    def seed_path(self) -> Path:
        return self.folder / self.seed_file

    @classmethod
    def from_env(cls, **overrides) -> "StoreConfig":
        """Build a config from BTPK_* environment variables plus overrides."""
        values = {
            "folder": Path(os.getenv("BTPK_FOLDER", "./btpk_data")),
            "timeout": float(os.getenv("BTPK_TIMEOUT", "60")),
            "keepalive_interval": float(os.getenv("BTPK_KEEPALIVE_INTERVAL", "3600")),
            "keepalive_delay": float(os.getenv("BTPK_KEEPALIVE_DELAY", "4")),
        }
        values.update(overrides)
        return cls(**values)
