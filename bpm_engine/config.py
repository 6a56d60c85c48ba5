"""Configuration management for the BPM workflow core."""

import os
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator
from enum import Enum


ENV_PREFIX = "BPM_ENGINE_"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class UnknownRulePolicy(str, Enum):
    """How the validation engine treats rule types it does not recognise."""
    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application settings
    app_name: str = Field(default="BPM Workflow Engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Simulation settings
    simulation_max_steps: int = Field(
        default=1000,
        description="Maximum number of steps a simulation may take before it is halted"
    )
    max_simulation_sessions: int = Field(
        default=100,
        description="Maximum number of simulation sessions held in memory"
    )

    # Expression settings
    max_expression_length: int = Field(
        default=500,
        description="Maximum length of a condition expression"
    )
    max_script_length: int = Field(
        default=5000,
        description="Maximum length of a node script"
    )

    # Validation settings
    unknown_rule_policy: UnknownRulePolicy = Field(
        default=UnknownRulePolicy.FAIL_OPEN,
        description="Treatment of unrecognised validation rule types"
    )
    register_default_rules: bool = Field(
        default=True,
        description="Register the built-in workflow rules (start node, end node) on startup"
    )

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format"
    )
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")
    log_structured: bool = Field(default=False, description="Emit JSON structured log lines")

    # Performance monitoring settings
    slow_request_threshold: float = Field(
        default=5.0,
        description="Slow request threshold in seconds"
    )
    enable_performance_monitoring: bool = Field(
        default=True,
        description="Enable performance monitoring middleware"
    )

    # Security settings
    cors_origins: list = Field(
        default=["*"],
        description="CORS allowed origins"
    )
    cors_methods: list = Field(
        default=["GET", "POST", "PUT", "DELETE"],
        description="CORS allowed methods"
    )

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        """Validate port number."""
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('simulation_max_steps', 'max_simulation_sessions')
    @classmethod
    def validate_positive_limits(cls, v):
        """Validate simulation limits."""
        if v < 1:
            raise ValueError("Simulation limits must be at least 1")
        return v

    @field_validator('max_expression_length', 'max_script_length')
    @classmethod
    def validate_expression_limits(cls, v):
        """Validate expression length limits."""
        if v < 1:
            raise ValueError("Expression length limits must be at least 1 character")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return not self.debug and not self.reload

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Get Uvicorn server configuration."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.value.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """
        Create configuration from ``BPM_ENGINE_*`` environment variables.

        Raises:
            ConfigurationError: If a variable cannot be converted to its setting's type
        """
        from .core.exceptions import ConfigurationError

        def get_env(key: str, default=None, type_func=str):
            """Get environment variable with type conversion."""
            value = os.getenv(f"{ENV_PREFIX}{key}")
            if value is None:
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            elif type_func == list:
                return value.split(',') if value else default
            try:
                return type_func(value)
            except ValueError:
                raise ConfigurationError(
                    f"Invalid value {value!r} for {ENV_PREFIX}{key}",
                    config_key=key
                )

        return cls(
            app_name=get_env("APP_NAME", "BPM Workflow Engine"),
            app_version=get_env("APP_VERSION", "1.0.0"),
            debug=get_env("DEBUG", False, bool),
            host=get_env("HOST", "0.0.0.0"),
            port=get_env("PORT", 8000, int),
            reload=get_env("RELOAD", False, bool),
            simulation_max_steps=get_env("SIMULATION_MAX_STEPS", 1000, int),
            max_simulation_sessions=get_env("MAX_SIMULATION_SESSIONS", 100, int),
            max_expression_length=get_env("MAX_EXPRESSION_LENGTH", 500, int),
            max_script_length=get_env("MAX_SCRIPT_LENGTH", 5000, int),
            unknown_rule_policy=get_env("UNKNOWN_RULE_POLICY", UnknownRulePolicy.FAIL_OPEN, UnknownRulePolicy),
            register_default_rules=get_env("REGISTER_DEFAULT_RULES", True, bool),
            log_level=get_env("LOG_LEVEL", LogLevel.INFO, lambda value: LogLevel(value.upper())),
            log_format=get_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            log_file=get_env("LOG_FILE", None),
            log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
            log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
            log_structured=get_env("LOG_STRUCTURED", False, bool),
            slow_request_threshold=get_env("SLOW_REQUEST_THRESHOLD", 5.0, float),
            enable_performance_monitoring=get_env("ENABLE_PERFORMANCE_MONITORING", True, bool),
            cors_origins=get_env("CORS_ORIGINS", ["*"], list),
            cors_methods=get_env("CORS_METHODS", ["GET", "POST", "PUT", "DELETE"], list)
        )


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from a .env file and environment variables."""
    global _config

    if config_file and os.path.exists(config_file):
        from dotenv import load_dotenv
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        from dotenv import load_dotenv
        load_dotenv('.env')

    _config = AppConfig.from_env()

    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


def validate_config(config: AppConfig) -> None:
    """
    Validate configuration settings that span several fields.

    Raises:
        ConfigurationError: Listing every failed check in ``problems``
    """
    from .core.exceptions import ConfigurationError

    errors = []

    if config.log_file:
        log_dir = os.path.dirname(config.log_file)
        if log_dir and not os.path.exists(log_dir):
            try:
                os.makedirs(log_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create log directory {log_dir}: {e}")

    if config.max_script_length < config.max_expression_length:
        errors.append("max_script_length must not be smaller than max_expression_length")

    if config.simulation_max_steps > 1_000_000:
        errors.append("simulation_max_steps above 1000000 defeats the runaway guard")

    if errors:
        raise ConfigurationError(f"Configuration validation failed: {'; '.join(errors)}", problems=errors)


def get_development_config() -> AppConfig:
    """Get development configuration."""
    return AppConfig(
        debug=True,
        reload=True,
        log_level=LogLevel.DEBUG,
        enable_performance_monitoring=True
    )


def get_production_config() -> AppConfig:
    """Get production configuration."""
    return AppConfig(
        debug=False,
        reload=False,
        log_level=LogLevel.INFO,
        log_structured=True,
        enable_performance_monitoring=True,
        cors_origins=[]  # Restrict CORS in production
    )


def get_testing_config() -> AppConfig:
    """Get testing configuration."""
    return AppConfig(
        debug=True,
        log_level=LogLevel.WARNING,
        simulation_max_steps=50,
        max_simulation_sessions=5
    )
