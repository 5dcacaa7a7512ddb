"""Clock configuration management with validation and YAML persistence.

Cadences are validated with Pydantic and may be supplied either with their
Python field names or with the camelCase keys used by the tool server
(``strategicAnalysisHours`` and friends). Partial overrides only replace
the fields they name.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from .models import JobKind

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".forest" / "config" / "clock.yaml"


class ClockConfig(BaseModel):
    """Background clock cadences.

    Attributes:
        strategic_analysis_hours: Hours between strategic analyses
        risk_detection_hours: Hours between risk detection runs
        opportunity_scans_hours: Hours between opportunity scans
        identity_reflection_days: Days between identity reflections
        archiving_days: Days between archiving checks
        enable_background_ticks: Master switch for all periodic scheduling
    """

    strategic_analysis_hours: float = Field(
        default=24,
        gt=0,
        alias="strategicAnalysisHours",
        description="Hours between strategic analyses",
    )
    risk_detection_hours: float = Field(
        default=12,
        gt=0,
        alias="riskDetectionHours",
        description="Hours between risk detection runs",
    )
    opportunity_scans_hours: float = Field(
        default=6,
        gt=0,
        alias="opportunityScansHours",
        description="Hours between opportunity scans",
    )
    identity_reflection_days: float = Field(
        default=7,
        gt=0,
        alias="identityReflectionDays",
        description="Days between identity reflections",
    )
    archiving_days: float = Field(
        default=30,
        gt=0,
        alias="archivingDays",
        description="Days between archiving checks",
    )
    enable_background_ticks: bool = Field(
        default=True,
        alias="enableBackgroundTicks",
        description="Enable periodic background scheduling",
    )

    model_config = {
        "populate_by_name": True,
        "validate_assignment": True,
        "extra": "forbid",
    }

    @classmethod
    def merged(
        cls,
        overrides: Union["ClockConfig", Mapping[str, Any], None] = None,
        base: Optional["ClockConfig"] = None,
        ignore_unknown: bool = False,
    ) -> "ClockConfig":
        """Overlay caller-supplied values on a base config (defaults if omitted).

        Args:
            overrides: Partial values, by field name or camelCase key
            base: Config to overlay on
            ignore_unknown: Drop unrecognised keys instead of rejecting them

        Raises:
            ConfigurationError: If an override is unknown or out of range
        """
        data = (base or cls()).model_dump()
        if isinstance(overrides, ClockConfig):
            data.update(overrides.model_dump(exclude_unset=True))
        elif overrides:
            normalized = _normalize_keys(overrides)
            if ignore_unknown:
                unknown = sorted(key for key in normalized if key not in cls.model_fields)
                if unknown:
                    logger.debug(f"Ignoring unknown clock config keys: {unknown}")
                normalized = {
                    key: value for key, value in normalized.items() if key in cls.model_fields
                }
            data.update(normalized)
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ConfigurationError(_format_errors(exc)) from exc

    def cadence_for(self, kind: JobKind) -> timedelta:
        """Interval between periodic runs of ``kind``."""
        if kind == JobKind.STRATEGIC_ANALYSIS:
            return timedelta(hours=self.strategic_analysis_hours)
        if kind == JobKind.RISK_DETECTION:
            return timedelta(hours=self.risk_detection_hours)
        if kind == JobKind.OPPORTUNITY_SCANNING:
            return timedelta(hours=self.opportunity_scans_hours)
        if kind == JobKind.IDENTITY_REFLECTION:
            return timedelta(days=self.identity_reflection_days)
        return timedelta(days=self.archiving_days)

    def to_wire(self) -> Dict[str, Any]:
        """Render with camelCase keys for event payloads."""
        return self.model_dump(by_alias=True)


def _normalize_keys(overrides: Mapping[str, Any]) -> Dict[str, Any]:
    aliases = {
        info.alias: name
        for name, info in ClockConfig.model_fields.items()
        if info.alias
    }
    return {aliases.get(key, key): value for key, value in overrides.items()}


def _format_errors(exc: ValidationError) -> str:
    details = [
        f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
        for err in exc.errors()
    ]
    return f"Invalid configuration: {'; '.join(details)}"


class ClockConfigManager:
    """Loads, saves and validates the clock configuration file.

    Attributes:
        config_path: Path to the YAML configuration file
    """

    def __init__(self, config_path: Optional[Path] = None) -> None:
        """Initialize configuration manager.

        Args:
            config_path: Path to config file (default: ~/.forest/config/clock.yaml)
        """
        self._config_path = config_path or DEFAULT_CONFIG_PATH
        self._config: Optional[ClockConfig] = None

    @property
    def config_path(self) -> Path:
        return self._config_path

    def load(self) -> ClockConfig:
        """Load and validate configuration, falling back to defaults.

        Returns:
            Validated clock configuration

        Raises:
            ConfigurationError: If the file exists but is invalid
        """
        if not self._config_path.exists():
            self._config = ClockConfig()
            return self._config

        try:
            with open(self._config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Malformed YAML in {self._config_path}: {exc}") from exc

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Invalid configuration: expected a mapping in {self._config_path}"
            )

        self._config = ClockConfig.merged(data)
        return self._config

    def save(self, config: ClockConfig) -> None:
        """Save configuration to file.

        Args:
            config: Configuration to save
        """
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        data = config.model_dump(mode="json")
        with open(self._config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        self._config = config

    def validate(self, config_path: Optional[Path] = None) -> List[str]:
        """Validate a configuration file without keeping it.

        Returns:
            List of validation errors (empty if valid)
        """
        path = config_path or self._config_path
        errors: List[str] = []

        if not path.exists():
            errors.append(f"Configuration file not found: {path}")
            return errors

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                errors.append("Configuration root must be a mapping")
                return errors
            ClockConfig.model_validate(_normalize_keys(data))
        except ValidationError as exc:
            for error in exc.errors():
                loc = ".".join(str(part) for part in error["loc"])
                errors.append(f"{loc}: {error['msg']}")
        except yaml.YAMLError as exc:
            errors.append(f"Failed to parse configuration: {exc}")

        return errors


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""
    pass


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "ClockConfig",
    "ClockConfigManager",
    "ConfigurationError",
]
