"""
Camcast Configuration
=====================

This module handles configuration loading for the streaming appliance.

Configuration Sources (in order of precedence):
    1. Environment variables (highest priority)
    2. config.yaml file
    3. Default values (lowest priority)

Environment Variable Mapping:
    CAMCAST_SERVER_ADDRESS   -> server.address
    CAMCAST_WAIT_TIMEOUT     -> server.wait_timeout_seconds
    CAMCAST_WRITE_TIMEOUT    -> server.write_timeout_seconds
    CAMCAST_CAPTURE_BACKEND  -> capture.backend
    CAMCAST_CAPTURE_DEVICE   -> capture.device
    CAMCAST_ENCODER_CODEC    -> encoder.codec
    CAMCAST_STILL_OUTPUT     -> still.output
    CAMCAST_API_PORT         -> api.port
    CAMCAST_LOG_LEVEL        -> logging.level
    PORT                     -> api.port (takes precedence over CAMCAST_API_PORT)

Example:
    from camcast.config import settings

    print(settings.server.address)
    print(settings.capture.backend)
"""

import os
import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from camcast.streaming.transitions import DEFAULT_WAIT_TIMEOUT_SEC


logger = logging.getLogger(__name__)


# =============================================================================
# Configuration Models
# =============================================================================

class AppConfig(BaseModel):
    """Appliance identification configuration."""

    name: str = Field(default="camcast", description="Appliance name")
    version: str = Field(default="v0.1.0", description="Appliance version")


class CaptureConfig(BaseModel):
    """Camera capture configuration."""

    backend: str = Field(
        default="synthetic",
        pattern="^(synthetic|opencv)$",
        description="Capture backend: 'synthetic' or 'opencv'",
    )
    device: int = Field(default=0, ge=0, description="OpenCV device index")
    width: int = Field(default=640, ge=16, description="Frame width in pixels")
    height: int = Field(default=480, ge=16, description="Frame height in pixels")
    framerate: float = Field(default=30.0, gt=0, description="Target frames per second")
    buffer_count: int = Field(
        default=4,
        ge=2,
        description="Number of capture buffers cycled between camera and consumers",
    )
    raw_stream: bool = Field(
        default=False,
        description="Also deliver a single-channel raw stream",
    )
    jpeg_colourspace: bool = Field(
        default=False,
        description="Deliver full-range (JPEG) samples instead of 16-235 video range",
    )


class EncoderConfig(BaseModel):
    """Encoder configuration."""

    codec: str = Field(
        default="mjpeg",
        pattern="^(mjpeg|raw)$",
        description="Encoder codec: 'mjpeg' or 'raw'",
    )
    quality: int = Field(default=80, ge=1, le=100, description="JPEG quality for mjpeg")


class ServerConfig(BaseModel):
    """Broadcast server configuration."""

    address: str = Field(
        default="tcp://0.0.0.0:8554",
        description="Listening endpoint as tcp://host:port",
    )
    wait_timeout_seconds: float = Field(
        default=DEFAULT_WAIT_TIMEOUT_SEC,
        gt=0,
        description="How long to wait for a first client before giving up",
    )
    write_timeout_seconds: float = Field(
        default=2.0,
        gt=0,
        description="Max time one client may take to accept a chunk before it is dropped",
    )
    poll_interval_seconds: float = Field(
        default=0.125,
        gt=0,
        le=1.0,
        description="Main loop wait bound per iteration",
    )
    backlog: int = Field(default=5, ge=1, description="listen() backlog")


class StillConfig(BaseModel):
    """Still capture configuration."""

    output: str = Field(
        default="still.jpg",
        description="Output path; %d is replaced by the frame sequence",
    )
    format: str = Field(
        default="jpg",
        pattern="^(jpg|png)$",
        description="Image format: 'jpg' or 'png'",
    )
    quality: int = Field(default=90, ge=1, le=100, description="JPEG quality")


class ControlConfig(BaseModel):
    """Control input configuration."""

    signals: bool = Field(default=True, description="Accept real-time signal commands")
    stdin: bool = Field(default=False, description="Read commands from stdin")


class ApiConfig(BaseModel):
    """HTTP API configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8080, ge=1, le=65535, description="Bind port")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format: json or text")


class Settings(BaseModel):
    """
    Main settings class for camcast.

    Loads configuration from YAML file and environment variables.
    Environment variables take precedence over file values.
    """

    app: AppConfig = Field(default_factory=AppConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    encoder: EncoderConfig = Field(default_factory=EncoderConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    still: StillConfig = Field(default_factory=StillConfig)
    control: ControlConfig = Field(default_factory=ControlConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# =============================================================================
# Configuration Loading
# =============================================================================

def load_config(config_path: Optional[str] = None) -> Settings:
    """
    Load configuration from YAML file and environment variables.

    Priority (highest to lowest):
        1. Environment variables
        2. YAML config file
        3. Default values

    Args:
        config_path: Path to config.yaml. If None, uses CAMCAST_CONFIG or
            searches common locations.

    Returns:
        Settings: Loaded configuration

    Raises:
        pydantic.ValidationError: If a value is out of range
    """
    if config_path is None:
        config_path = os.environ.get("CAMCAST_CONFIG")

    if config_path is None:
        search_paths = [
            Path("config.yaml"),
            Path("config.yml"),
            Path("/etc/camcast/config.yaml"),
            Path(__file__).parent.parent.parent / "config.yaml",
        ]
        for path in search_paths:
            if path.exists():
                config_path = str(path)
                break

    config_data = {}
    if config_path and Path(config_path).exists():
        logger.info(f"Loading config from: {config_path}")
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}
    else:
        logger.warning("No config file found, using defaults and environment variables")

    _apply_env_overrides(config_data)

    return Settings.model_validate(config_data)


def _apply_env_overrides(config_data: dict) -> None:
    """Apply environment variable overrides to config data."""

    # Server settings
    if env_address := os.environ.get("CAMCAST_SERVER_ADDRESS"):
        config_data.setdefault("server", {})["address"] = env_address
    if env_wait := os.environ.get("CAMCAST_WAIT_TIMEOUT"):
        config_data.setdefault("server", {})["wait_timeout_seconds"] = float(env_wait)
    if env_write := os.environ.get("CAMCAST_WRITE_TIMEOUT"):
        config_data.setdefault("server", {})["write_timeout_seconds"] = float(env_write)

    # Capture settings
    if env_backend := os.environ.get("CAMCAST_CAPTURE_BACKEND"):
        config_data.setdefault("capture", {})["backend"] = env_backend
    if env_device := os.environ.get("CAMCAST_CAPTURE_DEVICE"):
        config_data.setdefault("capture", {})["device"] = int(env_device)

    # Encoder settings
    if env_codec := os.environ.get("CAMCAST_ENCODER_CODEC"):
        config_data.setdefault("encoder", {})["codec"] = env_codec

    # Still settings
    if env_still := os.environ.get("CAMCAST_STILL_OUTPUT"):
        config_data.setdefault("still", {})["output"] = env_still

    # API settings (PORT wins, as on hosted runtimes)
    if env_port := os.environ.get("PORT"):
        config_data.setdefault("api", {})["port"] = int(env_port)
    elif env_port := os.environ.get("CAMCAST_API_PORT"):
        config_data.setdefault("api", {})["port"] = int(env_port)

    # Logging settings
    if env_log := os.environ.get("CAMCAST_LOG_LEVEL"):
        config_data.setdefault("logging", {})["level"] = env_log


def setup_logging(settings: Settings) -> None:
    """Configure logging based on settings."""
    log_level = getattr(logging, settings.logging.level.upper(), logging.INFO)

    if settings.logging.format == "json":
        log_format = '{"time": "%(asctime)s", "level": "%(levelname)s", "module": "%(name)s", "message": "%(message)s"}'
    else:
        log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
        datefmt="%Y-%m-%dT%H:%M:%S",
    )


# =============================================================================
# Global Settings Instance
# =============================================================================

# Global settings instance - loaded on import
settings = load_config()
setup_logging(settings)
