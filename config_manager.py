"""
Configuration manager for the Story Wizard sync engine.
Settings are dataclass sections validated on construction; the manager
merges the JSON file and environment overrides over the defaults.
"""

import copy
import json
import os
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union
from dataclasses import dataclass, field, asdict
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)

WIZARD_STAGES = [
    "characters", "story", "design", "preview",
    "dedicatoria-choice", "dedicatoria", "export"
]


@dataclass
class PersistenceConfig:
    """Autosave timings and retry budget"""
    draft_delay: float = 1.5
    review_delay: float = 3.0
    final_delay: float = 6.0
    max_retries: int = 3
    retry_delay: float = 2.0
    pause_duration: float = 8.0
    final_states: List[str] = field(default_factory=lambda: ["completed", "exported"])

    def __post_init__(self):
        """Validate persistence configuration"""
        for name in ("draft_delay", "review_delay", "final_delay", "retry_delay", "pause_duration"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative, got {getattr(self, name)}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries cannot be negative, got {self.max_retries}")
        if not self.final_states:
            raise ValueError("final_states must list at least one status")


@dataclass
class ApiConfig:
    """Generation API configuration with validation"""
    model: str = "gemini-2.0-flash-preview-image-generation"
    timeout: int = 120
    rate_limit_delay: float = 1.0
    max_requests_per_minute: int = 60
    max_concurrent: int = 0
    output_dir: str = "generated_pages"

    def __post_init__(self):
        """Validate configuration values"""
        if self.timeout < 1:
            raise ValueError(f"timeout must be positive, got {self.timeout}")
        if self.rate_limit_delay < 0:
            raise ValueError(f"rate_limit_delay cannot be negative, got {self.rate_limit_delay}")
        if self.max_requests_per_minute < 1:
            raise ValueError(f"max_requests_per_minute must be positive, got {self.max_requests_per_minute}")
        if self.max_concurrent < 0:
            raise ValueError(f"max_concurrent cannot be negative, got {self.max_concurrent}")


@dataclass
class StorageConfig:
    """Where local backups and the record file live"""
    backup_dir: str = ".wizard_backups"
    records_path: str = "wizard_records.json"


@dataclass
class UIConfig:
    """UI configuration"""
    show_progress: bool = True
    color_output: bool = True
    verbose_logging: bool = False


@dataclass
class WorkflowConfig:
    """Wizard stage configuration"""
    stages: List[str] = field(default_factory=lambda: list(WIZARD_STAGES))
    max_characters: int = 3

    def __post_init__(self):
        """Validate workflow stages"""
        if self.stages != WIZARD_STAGES:
            missing = set(WIZARD_STAGES) - set(self.stages)
            extra = set(self.stages) - set(WIZARD_STAGES)
            if missing:
                raise ValueError(f"Missing required stages: {missing}")
            if extra:
                raise ValueError(f"Unknown stages: {extra}")
            raise ValueError(f"Stages must follow the order {WIZARD_STAGES}")
        if self.max_characters < 1:
            raise ValueError(f"max_characters must be positive, got {self.max_characters}")


@dataclass
class AppConfig:
    """Complete application configuration"""
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    ui: UIConfig = field(default_factory=UIConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)


ENV_OVERRIDES = {
    "STORY_WIZARD_RECORDS_PATH": ("storage", "records_path", str),
    "STORY_WIZARD_BACKUP_DIR": ("storage", "backup_dir", str),
    "STORY_WIZARD_MAX_CONCURRENT": ("api", "max_concurrent", int),
    "GEMINI_MODEL": ("api", "model", str),
}

_SECTIONS = (
    ("persistence", PersistenceConfig, "Persistence"),
    ("api", ApiConfig, "API"),
    ("storage", StorageConfig, "Storage"),
    ("ui", UIConfig, "UI"),
    ("workflow", WorkflowConfig, "Workflow"),
)


class ConfigManager:
    """Process-wide access to the wizard configuration file"""

    _instance: Optional['ConfigManager'] = None
    _loaded: Dict[str, Tuple[float, AppConfig]] = {}

    def __new__(cls) -> 'ConfigManager':
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if getattr(self, '_ready', False):
            return
        self._ready = True
        self._current_path: Optional[Path] = None
        self._current: Optional[AppConfig] = None

    @lru_cache(maxsize=1)
    def _defaults(self) -> Dict[str, Any]:
        return asdict(AppConfig())

    @staticmethod
    def _mtime(path: Path) -> float:
        return path.stat().st_mtime if path.exists() else 0.0

    def _read_file(self, path: Path) -> Dict[str, Any]:
        """User settings from `path`; an unreadable file counts as empty"""
        if not path.exists():
            logger.info(f"No config file at {path}, using built-in defaults")
            return {}
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning(f"Config file {path} is not valid JSON ({e}), ignoring it")
            return {}
        except IOError as e:
            logger.warning(f"Config file {path} could not be read ({e}), ignoring it")
            return {}
        logger.info(f"Configuration read from {path}")
        return data

    def _apply_env_overrides(self, config_dict: Dict[str, Any]) -> Dict[str, Any]:
        for variable, (section, key, cast) in ENV_OVERRIDES.items():
            raw = os.getenv(variable)
            if raw is None:
                continue
            try:
                config_dict.setdefault(section, {})[key] = cast(raw)
                logger.debug(f"{section}.{key} overridden by {variable}")
            except ValueError:
                logger.warning(f"Ignoring {variable}={raw!r}: expected {cast.__name__}")
        return config_dict

    def load_config(self, config_path: Union[str, Path] = "wizard_config.json") -> AppConfig:
        """Defaults, then the JSON file, then environment overrides"""
        path = Path(config_path)
        key = str(path.absolute())
        mtime = self._mtime(path)

        cached = self._loaded.get(key)
        if cached is not None and mtime <= cached[0]:
            return cached[1]

        merged = self._deep_merge_config(copy.deepcopy(self._defaults()), self._read_file(path))
        merged = self._apply_env_overrides(merged)

        try:
            config = self._build_config(merged)
        except (ValueError, TypeError) as e:
            logger.error(f"Invalid configuration in {path}: {e}. Falling back to defaults")
            return AppConfig()

        self._loaded[key] = (mtime, config)
        self._current_path = path
        self._current = config
        return config

    def _build_config(self, config_dict: Dict[str, Any]) -> AppConfig:
        return AppConfig(**{
            name: section_cls(**config_dict.get(name, {}))
            for name, section_cls, _ in _SECTIONS
        })

    def _deep_merge_config(self, base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
        merged = dict(base)
        for key, value in overrides.items():
            current = merged.get(key)
            if isinstance(current, dict) and isinstance(value, dict):
                merged[key] = self._deep_merge_config(current, value)
            else:
                merged[key] = value
        return merged

    def save_config(self, config: Optional[AppConfig] = None,
                    config_path: Optional[Union[str, Path]] = None) -> bool:
        """Write `config` as JSON, keeping the previous file as `<name>.backup`"""
        config = config or self._current
        if config is None:
            logger.error("save_config called before any configuration was loaded")
            return False

        path = Path(config_path or self._current_path or "wizard_config.json")
        if path.exists():
            try:
                shutil.copyfile(path, path.with_name(path.name + ".backup"))
            except OSError as e:
                logger.warning(f"Could not back up {path}: {e}")

        temp_path = path.with_suffix(".tmp")
        try:
            temp_path.write_text(json.dumps(asdict(config), indent=2, ensure_ascii=False), encoding='utf-8')
            temp_path.replace(path)
        except OSError as e:
            logger.error(f"Could not write configuration to {path}: {e}")
            return False

        logger.info(f"Configuration written to {path}")
        return True

    def get_config(self) -> AppConfig:
        return self._current if self._current is not None else self.load_config()

    def validate_config(self, config_dict: Dict[str, Any]) -> List[str]:
        """One message per section that fails validation"""
        errors = []
        for name, section_cls, label in _SECTIONS:
            try:
                section_cls(**config_dict.get(name, {}))
            except (ValueError, TypeError) as e:
                errors.append(f"{label} config error: {e}")
        return errors

    def clear_cache(self) -> None:
        self._loaded.clear()
        self._defaults.cache_clear()


config_manager = ConfigManager()


def get_config(config_path: Union[str, Path] = "wizard_config.json") -> AppConfig:
    """Load (or reuse) the configuration at `config_path`"""
    return config_manager.load_config(config_path)
