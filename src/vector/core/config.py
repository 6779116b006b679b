"""
Configuration loader for the chat vector store.

Resolution order: built-in defaults, then an optional YAML file, then
environment variables (after loading a ``.env`` file if present).
"""

import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import find_dotenv, load_dotenv

from ..hnsw import HNSWConfig
from .exceptions import ConfigError
from .logging import parse_log_level


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".rag-terminal"
DEFAULT_BASE_DIR = Path.home() / ".rag-chat" / "db"
CONFIG_FILE_NAME = "config.yaml"

_TRUE_VALUES = ("1", "true", "yes", "on")
_FALSE_VALUES = ("0", "false", "no", "off")


@dataclass
class StoreConfig:
    """
    Configuration for ChatStore.
    
    Attributes:
        base_dir: Root directory holding one subdirectory per chat
        config_dir: Directory for config.yaml and logs/
        busy_timeout_seconds: How long a handle waits on a database locked by
            another handle before failing
        ann_enabled: Maintain in-memory ANN indexes for the open chat
        ann_threshold: Eligible vectors in a pool before searches switch from
            the exact scan to the ANN index
        hnsw: Index parameters
        backfill_delay_seconds: Delay before a background embedding write
        log_level: Logging level, None = logging disabled
    """
    base_dir: Path = DEFAULT_BASE_DIR
    config_dir: Path = DEFAULT_CONFIG_DIR
    busy_timeout_seconds: float = 5.0
    ann_enabled: bool = True
    ann_threshold: int = 256
    hnsw: HNSWConfig = field(default_factory=HNSWConfig)
    backfill_delay_seconds: float = 0.5
    log_level: Optional[int] = None
    
    def __post_init__(self):
        self.base_dir = Path(self.base_dir).expanduser()
        self.config_dir = Path(self.config_dir).expanduser()
        self.validate()
    
    def validate(self) -> None:
        """Raise ConfigError on out-of-range values."""
        if self.busy_timeout_seconds < 0:
            raise ConfigError(f"busy_timeout_seconds must be >= 0, got {self.busy_timeout_seconds}")
        if self.ann_threshold < 0:
            raise ConfigError(f"ann_threshold must be >= 0, got {self.ann_threshold}")
        if self.backfill_delay_seconds < 0:
            raise ConfigError(f"backfill_delay_seconds must be >= 0, got {self.backfill_delay_seconds}")
        if self.hnsw.m < 1:
            raise ConfigError(f"hnsw.m must be >= 1, got {self.hnsw.m}")
        if self.hnsw.ef_construction < 1 or self.hnsw.ef_search < 1:
            raise ConfigError("hnsw ef_construction and ef_search must be >= 1")
        if self.hnsw.max_level < 0:
            raise ConfigError(f"hnsw.max_level must be >= 0, got {self.hnsw.max_level}")
    
    @property
    def config_path(self) -> Path:
        return self.config_dir / CONFIG_FILE_NAME
    
    @classmethod
    def load(
        cls,
        config_path: Optional[Union[str, Path]] = None,
        env: Optional[Dict[str, str]] = None,
        load_env_file: bool = True,
    ) -> "StoreConfig":
        """
        Load configuration.
        
        Args:
            config_path: Explicit YAML file; must exist if given. When omitted,
                ``<config_dir>/config.yaml`` is read if it exists.
            env: Environment mapping (defaults to ``os.environ``)
            load_env_file: Load a ``.env`` file into the process environment first
            
        Returns:
            Validated StoreConfig
        """
        if load_env_file and env is None:
            load_dotenv(find_dotenv(usecwd=True))
        env = os.environ if env is None else env
        
        config_dir = Path(env.get("RAG_STORE_CONFIG_DIR", DEFAULT_CONFIG_DIR)).expanduser()
        
        if config_path is not None:
            path = Path(config_path).expanduser()
            if not path.exists():
                raise ConfigError(f"Config file not found: {path}")
        else:
            path = config_dir / CONFIG_FILE_NAME
        
        data: Dict[str, Any] = {}
        if path.exists():
            data = _read_yaml(path)
        
        try:
            values = _from_mapping(data)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value in {path}: {e}") from e
        values.setdefault("config_dir", config_dir)
        _apply_env_overrides(values, env)
        
        try:
            return cls(**values)
        except TypeError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e


def _read_yaml(path: Path) -> Dict[str, Any]:
    logger.info(f"Loading config from: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read config file {path}: {e}") from e
    
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    return data


def _from_mapping(data: Dict[str, Any]) -> Dict[str, Any]:
    """Translate the YAML layout into StoreConfig keyword arguments."""
    values: Dict[str, Any] = {}
    storage = data.get("storage") or {}
    ann = data.get("ann") or {}
    
    if "base_dir" in storage:
        values["base_dir"] = storage["base_dir"]
    if "busy_timeout_seconds" in storage:
        values["busy_timeout_seconds"] = float(storage["busy_timeout_seconds"])
    if "config_dir" in data:
        values["config_dir"] = data["config_dir"]
    if "enabled" in ann:
        values["ann_enabled"] = bool(ann["enabled"])
    if "threshold" in ann:
        values["ann_threshold"] = int(ann["threshold"])
    
    hnsw = HNSWConfig()
    for key in ("m", "ef_construction", "ef_search", "max_level", "seed"):
        if key in ann:
            setattr(hnsw, key, int(ann[key]))
    if "ml" in ann:
        hnsw.ml = float(ann["ml"])
    values["hnsw"] = hnsw
    
    backfill = data.get("backfill") or {}
    if "delay_seconds" in backfill:
        values["backfill_delay_seconds"] = float(backfill["delay_seconds"])
    
    logging_cfg = data.get("logging") or {}
    if "level" in logging_cfg:
        values["log_level"] = parse_log_level(str(logging_cfg["level"]))
    
    return values


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


def _parse_number(name: str, raw: str, cast):
    try:
        value = cast(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e
    if isinstance(value, float) and not math.isfinite(value):
        raise ConfigError(f"{name} must be finite, got {raw!r}")
    return value


def _apply_env_overrides(values: Dict[str, Any], env) -> None:
    """Apply environment variable overrides to loaded config."""
    if env.get("RAG_STORE_BASE_DIR"):
        values["base_dir"] = env["RAG_STORE_BASE_DIR"]
    if env.get("RAG_STORE_ANN_THRESHOLD"):
        values["ann_threshold"] = _parse_number(
            "RAG_STORE_ANN_THRESHOLD", env["RAG_STORE_ANN_THRESHOLD"], int
        )
    if env.get("RAG_STORE_ANN_ENABLED"):
        values["ann_enabled"] = _parse_bool("RAG_STORE_ANN_ENABLED", env["RAG_STORE_ANN_ENABLED"])
    if env.get("RAG_STORE_BUSY_TIMEOUT"):
        values["busy_timeout_seconds"] = _parse_number(
            "RAG_STORE_BUSY_TIMEOUT", env["RAG_STORE_BUSY_TIMEOUT"], float
        )
    if "RAG_LOGS" in env:
        values["log_level"] = parse_log_level(env["RAG_LOGS"])
