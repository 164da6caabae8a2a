from typing import Any, Dict, Optional
import json
import os
from pydantic import BaseModel, Field
from loguru import logger


# --- Settings Models ---
class DatabaseSettings(BaseModel):
    """Connection settings for one named database configuration."""
    server: str = "mongodb://localhost:27017"
    database: str = "mongodoc"
    options: Dict[str, Any] = Field(default_factory=dict)
    profiling: bool = False


class MongoConfig(BaseModel):
    databases: Dict[str, DatabaseSettings] = Field(
        default_factory=lambda: {"default": DatabaseSettings()}
    )
    debug_mode: bool = False

    def get(self, name: str = "default") -> Optional[DatabaseSettings]:
        return self.databases.get(name)


def load_config(filepath: str = "mongodoc.toml") -> MongoConfig:
    """Load settings from a JSON or TOML file if present; otherwise return defaults.

    The file holds a ``databases`` table keyed by configuration name::

        [databases.default]
        server = "mongodb://localhost:27017"
        database = "app"
        profiling = true
    """
    if not os.path.isfile(filepath):
        logger.debug(f"Config file {filepath} not found, using defaults")
        return MongoConfig()

    if filepath.endswith('.toml'):
        import tomllib
        with open(filepath, "rb") as f:
            raw = tomllib.load(f)
    else:
        with open(filepath, "r", encoding="utf-8") as f:
            raw = json.load(f)

    config = MongoConfig.model_validate(raw)
    logger.info(f"Loaded mongo config from {filepath}: {', '.join(config.databases)}")
    return config


def save_config(config: MongoConfig, filepath: str):
    """Persist a config to a JSON file."""
    dirname = os.path.dirname(filepath)
    if dirname:
        os.makedirs(dirname, exist_ok=True)
    with open(filepath, "w", encoding="utf-8") as f:
        json.dump(config.model_dump(), f, indent=4)
