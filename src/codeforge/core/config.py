"""Configuration loading from .env and YAML."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, Field, ValidationError, model_validator

from codeforge.core.exceptions import ConfigError

log = logging.getLogger(__name__)

#: Location of the per-workspace config file, relative to the workspace root.
CONFIG_RELPATH = Path(".codeforge") / "config.yaml"


class DockerConfigModel(BaseModel):
    """Container runtime section of config."""

    command: str = "docker"
    image: str | None = None
    shell: str = "/bin/bash"
    additional_run_args: list[str] = Field(default_factory=list)
    stop_timeout: float = Field(default=10.0, gt=0)
    image_build_timeout: float = Field(default=600.0, gt=0)


class FuzzingConfigModel(BaseModel):
    """Fuzzing section of config."""

    runs: int = Field(default=16, ge=1, le=1000)
    jobs: int = Field(default=8, ge=1, le=64)
    max_total_time: int = Field(default=300, ge=0)
    max_len: int = Field(default=4096, ge=1, le=1048576)
    ignore_crashes: bool = True
    exit_on_crash: bool = False
    memory_limit: int = Field(default=2048, ge=128, le=16384)
    timeout_per_run: int = Field(default=25, ge=1, le=300)
    output_directory: str = ".codeforge/fuzzing"
    preserve_corpus: bool = True
    build_timeout: float = Field(default=600.0, gt=0)
    max_parallel_builds: int = Field(default=1, ge=1, le=32)
    collect_coverage: bool = False
    cleanup_build_dirs: bool = False

    @model_validator(mode="after")
    def _check_crash_flags(self) -> FuzzingConfigModel:
        if self.ignore_crashes and self.exit_on_crash:
            raise ValueError("ignore_crashes and exit_on_crash cannot both be enabled")
        return self

    def libfuzzer_options(self) -> dict[str, int]:
        """Return libFuzzer flags derived from this section (merged over the runner defaults)."""
        options: dict[str, int] = {}
        if self.max_total_time > 0:
            options["max_total_time"] = self.max_total_time
        options["max_len"] = self.max_len
        options["timeout"] = self.timeout_per_run
        options["rss_limit_mb"] = self.memory_limit
        options["runs"] = self.runs
        options["jobs"] = self.jobs
        if self.exit_on_crash:
            options["ignore_crashes"] = 0
            options["exit_on_first_crash"] = 1
        return options


class TrackingConfigModel(BaseModel):
    """Backoff used when tracking containers launched outside a direct process handle."""

    max_attempts: int = Field(default=10, ge=1, le=100)
    base_delay: float = Field(default=0.5, ge=0)
    multiplier: float = Field(default=1.5, ge=1)


class CacheConfigModel(BaseModel):
    """Fuzzer metadata cache section of config."""

    ttl_seconds: float = Field(default=30.0, ge=0)


class AppConfig(BaseModel):
    """Full application configuration."""

    log_level: str = "INFO"
    docker: DockerConfigModel = Field(default_factory=DockerConfigModel)
    fuzzing: FuzzingConfigModel = Field(default_factory=FuzzingConfigModel)
    tracking: TrackingConfigModel = Field(default_factory=TrackingConfigModel)
    cache: CacheConfigModel = Field(default_factory=CacheConfigModel)


_SECTIONS: dict[str, type[BaseModel]] = {
    "docker": DockerConfigModel,
    "fuzzing": FuzzingConfigModel,
    "tracking": TrackingConfigModel,
    "cache": CacheConfigModel,
}


class ConfigManager:
    """Load and merge configuration from .env and YAML."""

    def __init__(
        self,
        workspace_root: Path | None = None,
        env_path: Path | None = None,
        config_path: Path | None = None,
    ) -> None:
        self._root = Path(workspace_root or Path.cwd()).resolve()
        self._env_path = Path(env_path) if env_path else self._root / ".env"
        self._config_path = Path(config_path) if config_path else self._root / CONFIG_RELPATH
        self._config: AppConfig | None = None
        self._env: dict[str, str] = {}

    def load_env(self) -> dict[str, str]:
        """Load .env file into a dict (without modifying os.environ)."""
        if not self._env_path.exists():
            self._env = {}
            return self._env
        try:
            self._env = {k: v for k, v in dotenv_values(self._env_path).items() if v is not None}
        except OSError as e:
            log.warning("Failed to read .env file %s: %s", self._env_path, e)
            self._env = {}
        return self._env

    def load_yaml(self) -> dict[str, Any]:
        """Load YAML config file if it exists."""
        if not self._config_path.exists():
            return {}
        try:
            with open(self._config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except OSError as e:
            log.warning("Failed to read config file %s: %s", self._config_path, e)
            return {}
        except yaml.YAMLError as e:
            log.warning("Malformed YAML in %s: %s", self._config_path, e)
            return {}
        if not isinstance(data, dict):
            log.warning("Ignoring config file %s: top level is not a mapping", self._config_path)
            return {}
        return data

    def load(self) -> AppConfig:
        """Load .env and YAML, merge with defaults, return AppConfig."""
        env = self.load_env()
        yaml_data = self.load_yaml()

        config_dict: dict[str, Any] = {"log_level": yaml_data.get("log_level", "INFO")}
        for key in _SECTIONS:
            if yaml_data.get(key):
                config_dict[key] = dict(yaml_data[key])

        # Environment variables override YAML values
        env_mapping = {
            "CODEFORGE_DOCKER_COMMAND": ("docker", "command"),
            "CODEFORGE_IMAGE": ("docker", "image"),
            "CODEFORGE_FUZZING_DIR": ("fuzzing", "output_directory"),
            "CODEFORGE_LOG_LEVEL": (None, "log_level"),
        }
        for env_key, (section, config_key) in env_mapping.items():
            if not env.get(env_key):
                continue
            if section is None:
                config_dict[config_key] = env[env_key]
            else:
                config_dict.setdefault(section, {})[config_key] = env[env_key]

        try:
            self._config = AppConfig(**config_dict)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration in {self._config_path}: {e}") from e
        return self._config

    @property
    def config(self) -> AppConfig:
        """Return loaded config; load if not yet loaded."""
        if self._config is None:
            self.load()
        if self._config is None:
            raise RuntimeError("ConfigManager.load() failed to produce a config")
        return self._config

    @property
    def env(self) -> dict[str, str]:
        """Return loaded env dict."""
        if not self._env and self._env_path.exists():
            self.load_env()
        return self._env

    @property
    def workspace_root(self) -> Path:
        return self._root
