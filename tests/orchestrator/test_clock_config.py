"""Tests for clock configuration management."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from forest.orchestrator.config import ClockConfig, ClockConfigManager, ConfigurationError
from forest.orchestrator.models import JobKind


class TestClockConfig:
    """Tests for ClockConfig validation and merging."""

    def test_default_values(self) -> None:
        config = ClockConfig()
        assert config.strategic_analysis_hours == 24
        assert config.risk_detection_hours == 12
        assert config.opportunity_scans_hours == 6
        assert config.identity_reflection_days == 7
        assert config.archiving_days == 30
        assert config.enable_background_ticks is True

    def test_accepts_field_names_and_aliases(self) -> None:
        assert ClockConfig(strategicAnalysisHours=3).strategic_analysis_hours == 3
        assert ClockConfig(strategic_analysis_hours=3).strategic_analysis_hours == 3

    def test_rejects_non_positive_cadence(self) -> None:
        with pytest.raises(ValidationError):
            ClockConfig(risk_detection_hours=0)

        with pytest.raises(ValidationError):
            ClockConfig(archivingDays=-1)

    def test_rejects_unknown_keys(self) -> None:
        with pytest.raises(ValidationError):
            ClockConfig(weatherHours=1)

    def test_merged_overlays_partial_overrides(self) -> None:
        config = ClockConfig.merged({"riskDetectionHours": 2, "archiving_days": 10})

        assert config.risk_detection_hours == 2
        assert config.archiving_days == 10
        assert config.strategic_analysis_hours == 24

    def test_merged_over_base(self) -> None:
        base = ClockConfig(opportunity_scans_hours=1)
        config = ClockConfig.merged({"enableBackgroundTicks": False}, base=base)

        assert config.opportunity_scans_hours == 1
        assert config.enable_background_ticks is False

    def test_merged_with_config_keeps_only_explicit_fields(self) -> None:
        base = ClockConfig(identity_reflection_days=2)
        config = ClockConfig.merged(ClockConfig(archiving_days=5), base=base)

        assert config.identity_reflection_days == 2
        assert config.archiving_days == 5

    def test_merged_rejects_unknown_keys_by_default(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            ClockConfig.merged({"weatherHours": 1})
        assert "weatherHours" in str(exc_info.value)

    def test_merged_can_ignore_unknown_keys(self) -> None:
        config = ClockConfig.merged({"weatherHours": 1, "archivingDays": 4}, ignore_unknown=True)

        assert config.archiving_days == 4
        assert "weatherHours" not in config.model_dump(by_alias=True)

    def test_ignore_unknown_still_validates_known_keys(self) -> None:
        with pytest.raises(ConfigurationError):
            ClockConfig.merged({"weatherHours": 1, "archivingDays": 0}, ignore_unknown=True)

    def test_merged_none_gives_defaults(self) -> None:
        assert ClockConfig.merged(None).model_dump() == ClockConfig().model_dump()

    def test_merged_invalid_raises_configuration_error(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            ClockConfig.merged({"strategicAnalysisHours": 0})
        message = str(exc_info.value)
        assert "strategic_analysis_hours" in message or "strategicAnalysisHours" in message

    def test_cadence_for_each_job(self) -> None:
        config = ClockConfig()
        assert config.cadence_for(JobKind.STRATEGIC_ANALYSIS) == timedelta(hours=24)
        assert config.cadence_for(JobKind.RISK_DETECTION) == timedelta(hours=12)
        assert config.cadence_for(JobKind.OPPORTUNITY_SCANNING) == timedelta(hours=6)
        assert config.cadence_for(JobKind.IDENTITY_REFLECTION) == timedelta(days=7)
        assert config.cadence_for(JobKind.DATA_ARCHIVING) == timedelta(days=30)

    def test_to_wire_uses_camel_case(self) -> None:
        wire = ClockConfig().to_wire()
        assert set(wire) == {
            "strategicAnalysisHours",
            "riskDetectionHours",
            "opportunityScansHours",
            "identityReflectionDays",
            "archivingDays",
            "enableBackgroundTicks",
        }


class TestClockConfigManager:
    """Tests for YAML persistence of the clock configuration."""

    def test_load_missing_file_returns_defaults(self, tmp_path: Path) -> None:
        manager = ClockConfigManager(config_path=tmp_path / "clock.yaml")
        assert manager.load().model_dump() == ClockConfig().model_dump()

    def test_save_and_load(self, tmp_path: Path) -> None:
        path = tmp_path / "config" / "clock.yaml"
        manager = ClockConfigManager(config_path=path)

        manager.save(ClockConfig(risk_detection_hours=4))

        assert path.exists()
        assert ClockConfigManager(config_path=path).load().risk_detection_hours == 4

    def test_load_accepts_camel_case_file(self, tmp_path: Path) -> None:
        path = tmp_path / "clock.yaml"
        path.write_text(yaml.safe_dump({"opportunityScansHours": 3}))

        config = ClockConfigManager(config_path=path).load()

        assert config.opportunity_scans_hours == 3

    def test_load_invalid_values(self, tmp_path: Path) -> None:
        path = tmp_path / "clock.yaml"
        path.write_text(yaml.safe_dump({"archiving_days": 0}))

        with pytest.raises(ConfigurationError):
            ClockConfigManager(config_path=path).load()

    def test_load_malformed_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "clock.yaml"
        path.write_text("strategic_analysis_hours: [unterminated")

        with pytest.raises(ConfigurationError):
            ClockConfigManager(config_path=path).load()

    def test_load_non_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "clock.yaml"
        path.write_text("- 1\n- 2\n")

        with pytest.raises(ConfigurationError):
            ClockConfigManager(config_path=path).load()

    def test_validate_reports_errors(self, tmp_path: Path) -> None:
        path = tmp_path / "clock.yaml"
        path.write_text(yaml.safe_dump({"riskDetectionHours": -2, "bogus": 1}))

        errors = ClockConfigManager(config_path=path).validate()

        assert any("risk_detection_hours" in error or "riskDetectionHours" in error for error in errors)
        assert any("bogus" in error for error in errors)

    def test_validate_valid_file(self, tmp_path: Path) -> None:
        path = tmp_path / "clock.yaml"
        ClockConfigManager(config_path=path).save(ClockConfig())

        assert ClockConfigManager(config_path=path).validate() == []

    def test_validate_missing_file(self, tmp_path: Path) -> None:
        errors = ClockConfigManager().validate(tmp_path / "absent.yaml")
        assert errors and "not found" in errors[0]
