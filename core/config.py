import logging
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.errors import ConfigError

# --- Base Path ---
BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_BACKENDS_FILE = BASE_DIR / 'configs' / 'backends.yml'
logger = logging.getLogger("docdistill.config")

# --- Environment-based Settings ---

class AppSettings(BaseSettings):
    """
    Main application settings loaded from environment variables.
    The .env file is loaded automatically by pydantic-settings.
    """
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8', extra='ignore')

    # --- General & Core ---
    LOG_LEVEL: str = Field("INFO", description="Log level for the application (e.g., DEBUG, INFO, WARNING, ERROR)")
    DOCDISTILL_CONFIG_PATH: Optional[str] = Field(None, description="Optional: Path to a backends YAML configuration file.")
    DOCDISTILL_HOME: Path = Field(Path.home() / ".docdistill", description="Root directory for caches, logs and indexes.")

    # --- Generation ---
    DEFAULT_MODEL: str = Field("sonnet", description="Model used when a request does not name one.")
    BASELINE_MODEL: str = Field("sonnet", description="Model retried once when the requested model fails.")
    GENERATION_TIMEOUT_SEC: float = Field(180.0, gt=0, description="Wall-clock budget for one backend process.")
    CACHE_TTL_DAYS: float = Field(7.0, ge=0, description="Maximum age of a cached generation result.")

    # --- Indexing ---
    INDEXER: str = Field("indexing.sqlite_index:build_index", description="Dotted path 'module:callable' of the indexer run by the worker.")
    WORKER_SHUTDOWN_GRACE_SEC: float = Field(5.0, ge=0, description="Grace period before a worker is terminated on shutdown.")

    @property
    def cache_dir(self) -> Path:
        return self.DOCDISTILL_HOME / "llm-cache"

    @property
    def cache_ttl_sec(self) -> float:
        return self.CACHE_TTL_DAYS * 24 * 60 * 60

# --- YAML-based Configuration Models ---

class BackendOverride(BaseModel):
    command: Optional[str] = None
    extra_args: List[str] = Field(default_factory=list)
    enabled: bool = True

class BackendsConfig(BaseModel):
    backends: Dict[str, BackendOverride] = Field(default_factory=dict)

    def for_backend(self, backend_id: str) -> BackendOverride:
        return self.backends.get(backend_id) or BackendOverride()

# --- Main Config Object ---

class Config:
    """
    A unified configuration object.
    """
    def __init__(self, app: Optional[AppSettings] = None, backends_path: Optional[Path] = None):
        try:
            self.app = app or AppSettings()
        except ValidationError as e:
            raise ConfigError(f"Configuration validation error: {e}") from e

        if backends_path is None and self.app.DOCDISTILL_CONFIG_PATH:
            backends_path = Path(self.app.DOCDISTILL_CONFIG_PATH)
            if not backends_path.exists():
                raise ConfigError(f"Configuration file not found: {backends_path}")
        self.backends: BackendsConfig = self._load_yaml(backends_path or DEFAULT_BACKENDS_FILE, BackendsConfig)

    def _load_yaml(self, config_path: Path, model: type) -> BaseModel:
        """Loads a YAML file and validates it with the given Pydantic model."""
        if not config_path.exists():
            logger.debug(f"No configuration file at {config_path}, using defaults")
            return model()
        with open(config_path, 'r', encoding='utf-8') as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in '{config_path}': {e}") from e
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration in '{config_path}': {e}") from e

# --- Global Config Instance ---
_settings_instance = None

def get_settings() -> Config:
    """
    Returns a singleton instance of the Config object.
    This function controls when the settings are loaded and validated,
    making the application more testable.
    """
    global _settings_instance
    if _settings_instance is None:
        try:
            _settings_instance = Config()
        except ConfigError as e:
            logger.critical(f"FATAL: Could not load configuration. {e}")
            raise
    return _settings_instance

def reset_settings() -> None:
    """Drops the cached Config so the next get_settings() reloads it."""
    global _settings_instance
    _settings_instance = None
