"""
Configuration management and validation for the copilot core.

Loads YAML configuration, merges environment overrides and validates
everything with pydantic before any service is constructed.
"""

import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from copilot.models.persona import (
    DEFAULT_MODE_PERSONAS,
    ConversationMode,
    EnsembleConfig,
    PersonaId,
    ScepticThresholds,
)
from copilot.models.policy_decision import AutonomyMode


class ObservabilityConfig(BaseModel):
    """Configuration for observability settings."""
    enabled: bool = False
    service_name: str = "copilot-ensemble"
    service_version: str = "0.1.0"
    environment: str = "development"
    otlp_endpoint: str = "http://localhost:4317"
    trace_sampling_ratio: float = Field(default=1.0, ge=0.0, le=1.0)
    export_timeout: int = Field(default=30, gt=0)
    resource_attributes: Dict[str, str] = Field(default_factory=dict)


class LoggingConfig(BaseModel):
    """Configuration for logging settings."""
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    format: str = Field(default="structured", pattern="^(structured|simple)$")
    directory: str = "~/.copilot/logs"
    max_file_size: int = Field(default=10 * 1024 * 1024, gt=0)  # 10MB
    backup_count: int = Field(default=5, ge=1)
    include_trace: bool = True
    environment: str = "development"


class ServerConfig(BaseModel):
    """Configuration for the development HTTP server."""
    host: str = "localhost"
    port: int = Field(default=8000, ge=1, le=65535)
    request_timeout: int = Field(default=120, gt=0)
    enable_cors: bool = False
    cors_origins: List[str] = Field(default_factory=list)


class SessionConfig(BaseModel):
    """Configuration for conversation sessions."""
    default_autonomy_mode: AutonomyMode = AutonomyMode.ASSISTED
    draft_expiry_seconds: int = Field(default=1800, gt=0)  # 30 minutes
    session_timeout: int = Field(default=86400, gt=0)  # 24 hours
    cleanup_interval_seconds: int = Field(default=3600, gt=0)
    auto_cleanup_enabled: bool = False
    max_active_sessions: int = Field(default=500, ge=1)
    enable_persistence: bool = False
    storage_directory: str = "~/.copilot/sessions"


class EnsembleSettings(BaseModel):
    """Ensemble tuning as it appears in the configuration file."""
    mode_personas: Dict[ConversationMode, List[PersonaId]] = Field(
        default_factory=lambda: {mode: list(personas) for mode, personas in DEFAULT_MODE_PERSONAS.items()}
    )
    per_call_timeout_seconds: float = Field(default=10.0, gt=0)
    max_deliberation_seconds: float = Field(default=30.0, gt=0)
    max_concurrent_calls: int = Field(default=6, ge=1)
    retry_attempts: int = Field(default=2, ge=1, le=5)
    retry_base_delay: float = Field(default=0.25, ge=0.0)
    retry_max_delay: float = Field(default=2.0, ge=0.0)
    challenge_confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    memory_lookup_limit: int = Field(default=5, ge=0)
    history_window: int = Field(default=10, ge=0)
    sceptic_thresholds: ScepticThresholds = Field(default_factory=ScepticThresholds)

    def to_ensemble_config(self) -> EnsembleConfig:
        """Freeze the settings into the runtime EnsembleConfig."""
        return EnsembleConfig(
            mode_personas={mode: tuple(personas) for mode, personas in self.mode_personas.items()},
            per_call_timeout_seconds=self.per_call_timeout_seconds,
            max_deliberation_seconds=self.max_deliberation_seconds,
            max_concurrent_calls=self.max_concurrent_calls,
            retry_attempts=self.retry_attempts,
            retry_base_delay=self.retry_base_delay,
            retry_max_delay=self.retry_max_delay,
            challenge_confidence_threshold=self.challenge_confidence_threshold,
            sceptic_thresholds=self.sceptic_thresholds,
            memory_lookup_limit=self.memory_lookup_limit,
            history_window=self.history_window
        )


class PolicySettings(BaseModel):
    """Autonomy policy switches."""
    hard_deny_tools: List[str] = Field(default_factory=list)
    full_auto_allow_list: List[str] = Field(default_factory=list)

    @field_validator('full_auto_allow_list')
    @classmethod
    def validate_tool_lists(cls, v, info):
        """Ensure a tool is not both hard-denied and allow-listed."""
        denied = set(info.data.get('hard_deny_tools', []))
        overlap = denied.intersection(v)
        if overlap:
            raise ValueError(f"Tools cannot be both hard-denied and allow-listed: {sorted(overlap)}")
        return v


class CopilotConfig(BaseModel):
    """Main copilot configuration."""
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    ensemble: EnsembleSettings = Field(default_factory=EnsembleSettings)
    policy: PolicySettings = Field(default_factory=PolicySettings)

    # Global settings
    debug: bool = False
    config_file_path: Optional[str] = None


class ConfigurationError(Exception):
    """Exception raised for configuration-related errors."""
    pass


def _csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# Environment variable -> (dotted config path, converter)
ENV_OVERRIDES: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "COPILOT_LOG_LEVEL": ("logging.level", str.upper),
    "COPILOT_HOST": ("server.host", str),
    "COPILOT_PORT": ("server.port", int),
    "COPILOT_DEBUG": ("debug", _flag),
    "COPILOT_AUTONOMY_MODE": ("session.default_autonomy_mode", str),
    "COPILOT_HARD_DENY_TOOLS": ("policy.hard_deny_tools", _csv),
    "COPILOT_FULL_AUTO_ALLOW_LIST": ("policy.full_auto_allow_list", _csv),
    "OTEL_EXPORTER_OTLP_ENDPOINT": ("observability.otlp_endpoint", str),
}

CONFIG_SEARCH_PATHS = ("./copilot.yaml", "./config/config.yaml", "~/.copilot/config.yaml")


class ConfigurationManager:
    """Loads CopilotConfig from YAML plus environment overrides.

    The file is looked up from ``COPILOT_CONFIG_PATH`` or the first existing
    entry of CONFIG_SEARCH_PATHS. A missing file is created with the model
    defaults so operators have something to edit.
    """

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or self._discover_path()
        self.config: Optional[CopilotConfig] = None

    @staticmethod
    def _discover_path() -> str:
        if os.environ.get("COPILOT_CONFIG_PATH"):
            return os.environ["COPILOT_CONFIG_PATH"]
        for candidate in CONFIG_SEARCH_PATHS:
            if Path(candidate).expanduser().exists():
                return candidate
        return CONFIG_SEARCH_PATHS[-1]

    def load_config(self, config_path: Optional[str] = None) -> CopilotConfig:
        """Read, override and validate the configuration file.

        Raises:
            ConfigurationError: On unreadable or malformed YAML, a bad
                environment value or a schema violation
        """
        if config_path:
            self.config_path = config_path
        config_file = Path(self.config_path).expanduser()

        try:
            if not config_file.exists():
                self._write_defaults(config_file)
            raw = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            if not isinstance(raw, dict):
                raise ConfigurationError(f"Config file {config_file} must contain a mapping")
            self.config = CopilotConfig(**self._apply_environment(raw))
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file {config_file}: {e}") from e
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed: {e}") from e
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"Error loading configuration from {config_file}: {e}") from e

        self.config.config_file_path = str(config_file)
        return self.config

    @staticmethod
    def _write_defaults(config_file: Path) -> None:
        defaults = CopilotConfig().model_dump(mode="json", exclude={"config_file_path", "debug"})
        config_file.parent.mkdir(parents=True, exist_ok=True)
        config_file.write_text(yaml.safe_dump(defaults, sort_keys=False), encoding="utf-8")

    @staticmethod
    def _apply_environment(raw: Dict[str, Any]) -> Dict[str, Any]:
        for env_var, (dotted, convert) in ENV_OVERRIDES.items():
            value = os.environ.get(env_var)
            if value is None:
                continue
            *parents, leaf = dotted.split(".")
            section = raw
            for key in parents:
                section = section.setdefault(key, {})
            section[leaf] = convert(value)
        return raw

    def get_config(self) -> CopilotConfig:
        if self.config is None:
            raise ConfigurationError("Configuration not loaded. Call load_config() first.")
        return self.config

    def validate_config(self) -> List[str]:
        """Settings that are valid but probably unintended."""
        config = self.get_config()
        ensemble = config.ensemble
        checks = [
            (config.debug and config.observability.environment == "production",
             "Debug mode enabled in production environment"),
            (config.session.default_autonomy_mode == AutonomyMode.FULL_AUTO,
             "Default autonomy mode is full_auto"),
            (ensemble.per_call_timeout_seconds > ensemble.max_deliberation_seconds,
             "Per-call timeout exceeds the deliberation deadline"),
            (bool(config.policy.full_auto_allow_list) and config.session.default_autonomy_mode != AutonomyMode.FULL_AUTO,
             "full_auto_allow_list only applies in full_auto mode"),
        ]
        warnings = [message for triggered, message in checks if triggered]
        warnings.extend(
            f"No personas mapped to mode {mode.value}"
            for mode in ConversationMode if not ensemble.mode_personas.get(mode)
        )
        return warnings


def initialize_config(config_path: Optional[str] = None) -> ConfigurationManager:
    """Create a configuration manager and load its file."""
    config_manager = ConfigurationManager(config_path)
    config_manager.load_config()
    return config_manager
