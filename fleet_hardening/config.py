"""
Application configuration.

Configuration is read once at startup: built-in defaults, overlaid with the
user's YAML file. Validation happens here so that a bad value stops the run
before any host is contacted.
"""

import logging
from pathlib import Path
from typing import Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .core.exceptions import ConfigError
from .core.models import OSFamily
from .facts.gatherer import DEFAULT_SERVICE_PROBES
from .tasks.loader import format_validation_error

logger = logging.getLogger(__name__)


class AppConfig(BaseModel):
    """Run-wide settings."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    workers: int = Field(5, ge=1, description="Hosts processed concurrently")
    timeout: Optional[float] = Field(None, gt=0, description="Whole-run timeout in seconds")
    command_timeout: Optional[float] = Field(None, gt=0, description="Per-command timeout in seconds")
    retry_backoff: float = Field(1.0, ge=0, description="Base delay between retry attempts")
    strict_templates: bool = Field(True, description="Fail on undefined report placeholders")
    template: Optional[Path] = Field(None, description="Custom HTML report template")
    report_format: Literal["html", "json", "pdf"] = "html"
    task_files: Dict[OSFamily, Path] = Field(default_factory=dict)
    service_probes: Dict[OSFamily, List[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_SERVICE_PROBES.items()}
    )
    ssh_options: List[str] = Field(default_factory=list, description="Extra OpenSSH -o options")

    @field_validator("task_files", "service_probes", mode="before")
    @classmethod
    def parse_families(cls, v):
        if isinstance(v, dict):
            parsed = {}
            for key, value in v.items():
                family = OSFamily.parse(key)
                if family == OSFamily.OTHER and str(key).lower() != "other":
                    raise ValueError(f"unknown OS family {key!r}")
                parsed[family] = value
            return parsed
        return v

    @field_validator("template", mode="after")
    @classmethod
    def expand_template(cls, v: Optional[Path]) -> Optional[Path]:
        return v.expanduser() if v else v


def load_config(config_path: Optional[Union[str, Path]] = None, **overrides) -> AppConfig:
    """
    Load configuration from file, falling back to defaults.

    Args:
        config_path: YAML configuration file (defaults only if None)
        **overrides: Values set on the command line, applied last

    Returns:
        AppConfig: Validated configuration

    Raises:
        ConfigError: If the file cannot be read or holds invalid settings
    """
    user_config: Dict = {}
    if config_path:
        path = Path(config_path).expanduser()
        try:
            with open(path, 'r') as f:
                user_config = yaml.safe_load(f) or {}
        except OSError as e:
            raise ConfigError(f"Cannot read configuration file {path}: {e}")
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in configuration file {path}: {e}")
        if not isinstance(user_config, dict):
            raise ConfigError(f"{path}: configuration must be a mapping")
        logger.debug("Loaded configuration from %s", path)

    merged = dict(user_config)
    merged.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return AppConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {format_validation_error(e)}")
