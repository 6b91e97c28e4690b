"""
Configuration management with environment variable support and validation.

Design principles:
- Environment-specific configs (dev, staging, prod)
- Validation at startup (fail fast)
- Type safety with Pydantic
- Logging is configured from the same validated config
"""

import logging
import os
from functools import lru_cache
from typing import Literal, cast

import structlog
from structlog.types import Processor
from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from aura_core.services.session_controller import SessionControllerConfig

# Load environment variables from .env file
load_dotenv()

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
DeviceScenario = Literal["normal", "fever_tachycardia", "sensor_error", "partial"]


class StoreConfig(BaseModel):
    """Data store backend settings."""

    backend: Literal["memory"] = Field(default="memory", description="Data store implementation")
    simulated_latency_seconds: float = Field(
        default=0.0, ge=0.0, le=10.0, description="Artificial round-trip delay per store call"
    )


class DeviceSimulatorConfig(BaseModel):
    """Simulated bedside device used by the demo."""

    step_delay_seconds: float = Field(
        default=0.5, ge=0.0, description="Pause between monitoring steps"
    )
    scenario: DeviceScenario = Field(default="normal", description="Vital reading to produce")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: LogLevel = Field(default="INFO", description="Logging level")
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    # Component configs
    session: SessionControllerConfig = Field(default_factory=SessionControllerConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    device: DeviceSimulatorConfig = Field(default_factory=DeviceSimulatorConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> LogLevel:
        v = val.strip().upper()
        return cast(
            LogLevel,
            v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO",
        )

    # Detect environment
    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    session_config = SessionControllerConfig(
        channel_max_events=int(os.getenv("SESSION_CHANNEL_MAX_EVENTS", "256")),
    )

    store_config = StoreConfig(
        simulated_latency_seconds=float(os.getenv("STORE_SIMULATED_LATENCY_SECONDS", "0.0")),
    )

    device_config = DeviceSimulatorConfig(
        step_delay_seconds=float(os.getenv("DEVICE_STEP_DELAY_SECONDS", "0.5")),
        scenario=cast(DeviceScenario, os.getenv("DEVICE_SCENARIO", "normal").strip().lower()),
    )

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        session=session_config,
        store=store_config,
        device=device_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


def configure_logging(config: LoggingConfig) -> None:
    """Route structlog through stdlib logging at the configured level and format."""
    logging.basicConfig(format="%(message)s", level=getattr(logging, config.level))

    renderer: Processor = (
        structlog.dev.ConsoleRenderer()
        if config.format == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
